"""
Integration tests for the SQLite pageview and rate limit stores.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, date, datetime, timedelta
from threading import Thread
from uuid import uuid4

import pytest

from src.adapters.sqlite_db import SQLitePageviewStore, SQLiteRateLimitStore
from src.components.analytics import resolve_timestamp
from src.components.analytics.models import EventType, PageviewRecord, StorageError

RECEIVED = datetime(2026, 3, 14, 12, 0, 0, tzinfo=UTC)


def make_record(
    site_id: str = "site-1",
    visitor_id: str = "a1b2c3d4e5f60718",
    occurred_at: datetime = RECEIVED,
    **kwargs,
) -> PageviewRecord:
    return PageviewRecord(
        id=uuid4(),
        site_id=site_id,
        event_type=kwargs.pop("event_type", EventType.PAGEVIEW),
        path=kwargs.pop("path", "/"),
        visitor_id=visitor_id,
        occurred_at=occurred_at,
        received_at=RECEIVED,
        **kwargs,
    )


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# --- Pageview store ---


class TestPageviewStore:
    def test_store_and_read_back(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        record = make_record(
            event_type=EventType.EVENT,
            path="/checkout",
            referrer="https://news.example/story",
            custom_data={"category": "custom", "action": "buy", "amount": 3},
        )

        store.store_many([record])

        [loaded] = store.list_for_site("site-1")
        assert loaded == record

    def test_records_are_site_scoped(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        store.store_many([make_record("site-1"), make_record("site-2"), make_record("site-2")])

        assert len(store.list_for_site("site-1")) == 1
        assert len(store.list_for_site("site-2")) == 2

    def test_batch_is_atomic(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        duplicate = make_record()

        with pytest.raises(StorageError):
            store.store_many([make_record(), duplicate, duplicate])

        assert store.list_for_site("site-1") == []

    def test_missing_table_raises_storage_error(self, tmp_path) -> None:
        store = SQLitePageviewStore(str(tmp_path / "empty.db"))
        with pytest.raises(StorageError):
            store.store_many([make_record()])

    def test_empty_batch_is_noop(self, db_path) -> None:
        SQLitePageviewStore(db_path).store_many([])

    def test_count_unique_visitors(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        day = RECEIVED
        store.store_many(
            [
                make_record(visitor_id="v1", occurred_at=day),
                make_record(visitor_id="v1", occurred_at=day + timedelta(hours=3)),
                make_record(visitor_id="v2", occurred_at=day),
                make_record(visitor_id="v3", occurred_at=day - timedelta(days=1)),
                make_record("site-2", visitor_id="v4", occurred_at=day),
            ]
        )

        assert store.count_unique_visitors("site-1", date(2026, 3, 14)) == 2
        assert store.count_unique_visitors("site-1", date(2026, 3, 13)) == 1

    def test_context_columns_round_trip(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        record = make_record(
            session_id="0b5c3c1e-8d1f-4a57",
            page_count=4,
            utm_source="newsletter",
            utm_campaign="spring",
            context_device="mobile",
            context_browser="safari",
            context_os="ios",
            context_country="NZ",
            context_region="AUK",
        )

        store.store_many([record])

        [loaded] = store.list_for_site("site-1")
        assert loaded == record
        assert loaded.utm_medium is None

    def test_offset_timestamp_counted_on_utc_day(self, db_path) -> None:
        store = SQLitePageviewStore(db_path)
        # 01:00 on the 15th at +14:00 is 11:00 UTC on the 14th
        occurred_at, _ = resolve_timestamp("2026-03-15T01:00:00+14:00", RECEIVED)
        store.store_many([make_record(visitor_id="v1", occurred_at=occurred_at)])

        assert store.count_unique_visitors("site-1", date(2026, 3, 14)) == 1
        assert store.count_unique_visitors("site-1", date(2026, 3, 15)) == 0

    def test_row_without_timestamps_raises_storage_error(self, db_path) -> None:
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            INSERT INTO pageviews (id, site_id, path, visitor_id, occurred_at, received_at)
            VALUES (?, 'site-1', '/', 'v1', '', '')
            """,
            (str(uuid4()),),
        )
        conn.commit()
        conn.close()

        with pytest.raises(StorageError, match="no timestamps"):
            SQLitePageviewStore(db_path).list_for_site("site-1")

    def test_external_connection(self, db_path) -> None:
        conn = sqlite3.connect(db_path)
        try:
            store = SQLitePageviewStore(db_path, connection=conn)
            store.store_many([make_record()])
            assert len(store.list_for_site("site-1")) == 1
            assert store.count_unique_visitors("site-1", date(2026, 3, 14)) == 1
        finally:
            conn.close()


# --- Rate limit store ---


class TestRateLimitStore:
    def test_limit_within_window(self, db_path) -> None:
        clock = FakeClock()
        store = SQLiteRateLimitStore(db_path, clock=clock)

        assert [store.allow_request("k", 60, 2) for _ in range(3)] == [True, True, False]

    def test_window_slides(self, db_path) -> None:
        clock = FakeClock()
        store = SQLiteRateLimitStore(db_path, clock=clock)
        store.allow_request("k", 60, 1)

        clock.now += 30
        assert store.allow_request("k", 60, 1) is False
        clock.now += 31
        assert store.allow_request("k", 60, 1) is True

    def test_keys_are_independent(self, db_path) -> None:
        store = SQLiteRateLimitStore(db_path, clock=FakeClock())
        assert store.allow_request("a", 60, 1) is True
        assert store.allow_request("b", 60, 1) is True
        assert store.allow_request("a", 60, 1) is False

    def test_zero_limit_denies(self, db_path) -> None:
        assert SQLiteRateLimitStore(db_path).allow_request("k", 60, 0) is False

    def test_shared_between_instances(self, db_path) -> None:
        clock = FakeClock()
        first = SQLiteRateLimitStore(db_path, clock=clock)
        second = SQLiteRateLimitStore(db_path, clock=clock)

        assert first.allow_request("k", 60, 1) is True
        assert second.allow_request("k", 60, 1) is False

    def test_concurrent_requests_never_exceed_limit(self, db_path) -> None:
        store = SQLiteRateLimitStore(db_path)
        results: list[bool] = []

        def worker() -> None:
            for _ in range(5):
                results.append(store.allow_request("shared", 60, 10))

        threads = [Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10

    def test_purge_expired(self, db_path) -> None:
        clock = FakeClock()
        store = SQLiteRateLimitStore(db_path, clock=clock)
        store.allow_request("old", 60, 5)
        clock.now += 120
        store.allow_request("new", 60, 5)

        assert store.purge_expired(60) == 1

    def test_missing_table_raises_storage_error(self, tmp_path) -> None:
        store = SQLiteRateLimitStore(str(tmp_path / "empty.db"))
        with pytest.raises(StorageError):
            store.allow_request("k", 60, 1)

    def test_purge_failure_raises_storage_error(self, tmp_path) -> None:
        store = SQLiteRateLimitStore(str(tmp_path / "empty.db"))
        with pytest.raises(StorageError, match="purge"):
            store.purge_expired(60)
