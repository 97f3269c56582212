from datetime import UTC, datetime
from pathlib import Path

import pytest

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.app_shell.rate_limit import RateLimiter
from src.components.analytics import InMemoryPageviewStore
from src.components.anonymize import create_anonymization_service
from src.rules.loader import load_rules

ROOT_KEY = b"test-root-key"
FIXED_NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=UTC)


class MockTimePort:
    """Mock time provider."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or FIXED_NOW

    def now_utc(self) -> datetime:
        return self._now

    def set_now(self, now: datetime) -> None:
        self._now = now


@pytest.fixture
def rules():
    """REAL rules from project root (tests run from the project root)."""
    rules_path = Path("rules.yaml").resolve()
    if not rules_path.exists():
        raise FileNotFoundError(f"Rules not found at {rules_path}")
    return load_rules(rules_path)


@pytest.fixture
def time_port() -> MockTimePort:
    return MockTimePort()


@pytest.fixture
def anonymizer(time_port):
    return create_anonymization_service(ROOT_KEY, time_port=time_port)


@pytest.fixture
def store() -> InMemoryPageviewStore:
    return InMemoryPageviewStore()


@pytest.fixture
def rate_limiter(time_port) -> RateLimiter:
    return RateLimiter(clock=lambda: time_port.now_utc().timestamp())


@pytest.fixture
def db_path(tmp_path):
    """Migrated temporary SQLite database."""
    path = str(tmp_path / "zta.db")
    SQLiteMigrator(path, "migrations").run_migrations()
    return path


# --- Collector fakes ---


class FakeTimerHandle:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimer:
    """Deterministic TimerPort; time only moves through advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._handles: list[FakeTimerHandle] = []

    def call_later(self, delay_seconds: float, callback) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.now + delay_seconds, callback)
        self._handles.append(handle)
        return handle

    @property
    def active(self) -> list[FakeTimerHandle]:
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.active if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self._handles.remove(handle)
            self.now = handle.due
            handle.callback()
        self.now = target


@pytest.fixture
def fake_timer() -> FakeTimer:
    return FakeTimer()
