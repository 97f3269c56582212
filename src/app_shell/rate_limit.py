import time
from collections import deque
from collections.abc import Callable
from threading import Lock


class RateLimiter:
    """
    Sliding-window limiter shared by all requests of one process.

    Check and record happen under one lock, so concurrent requests cannot
    both take the last slot. Same interface as SQLiteRateLimitStore, which
    is the choice when several workers must share one count.
    """

    def __init__(self, clock: Callable[[], float] | None = None):
        self._clock = clock or time.time
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def allow_request(self, key: str, window: int, limit: int) -> bool:
        """
        Check if request is allowed.
        If allowed, records the hit and returns True.
        If denied, returns False and records nothing.
        """
        if limit <= 0:
            return False

        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window:
                hits.popleft()

            if len(hits) >= limit:
                return False

            hits.append(now)
            return True

    def purge_expired(self, max_window: int) -> int:
        """Forget hits older than max_window seconds. Returns hits removed."""
        cutoff = self._clock() - max_window
        removed = 0
        with self._lock:
            for key in list(self._hits):
                hits = self._hits[key]
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                    removed += 1
                if not hits:
                    del self._hits[key]
        return removed

    def tracked_keys(self) -> int:
        """Number of keys currently holding hits."""
        with self._lock:
            return len(self._hits)
