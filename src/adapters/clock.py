import time
from datetime import UTC, datetime


class SystemClock:
    def now_utc(self) -> datetime:
        return datetime.now(UTC)

    def epoch_seconds(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return int(time.time() * 1000)
