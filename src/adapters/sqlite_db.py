"""
SQLite storage adapters for the collection endpoint.

- SQLitePageviewStore: append-only pageview records (PageviewStorePort)
- SQLiteRateLimitStore: shared sliding-window counter (RateLimiterPort)

Both work against a schema created by SQLiteMigrator from migrations/.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Sequence
from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

from src.components.analytics.models import EventType, PageviewRecord, StorageError

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def parse_dt(s: str | None) -> datetime | None:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s) if s else None


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


class SQLiteRepoBase:
    """Base class for SQLite repositories."""

    def __init__(self, db_path: str, connection: sqlite3.Connection | None = None):
        self.db_path = db_path
        self._external_conn = connection

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection (uses external if provided)."""
        if self._external_conn is not None:
            return self._external_conn

        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = dict_factory
        return conn

    def _should_close(self) -> bool:
        """Whether to close connection after use."""
        return self._external_conn is None


# -----------------------------------------------------------------------------
# Pageview Store
# -----------------------------------------------------------------------------


class SQLitePageviewStore(SQLiteRepoBase):
    """Append-only pageview table."""

    def store_many(self, records: Sequence[PageviewRecord]) -> None:
        """Insert all records in one transaction, or none of them."""
        if not records:
            return

        rows = [self._to_row(r) for r in records]
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open pageview store: {e}") from e

        try:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO pageviews (
                        id, site_id, event_type, path, referrer, visitor_id,
                        occurred_at, received_at, custom_data, session_id,
                        page_count, utm_source, utm_medium, utm_campaign,
                        context_device, context_browser, context_os,
                        context_country, context_region
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            logger.error("Pageview insert failed: %s", e)
            raise StorageError(f"Failed to store {len(rows)} record(s)") from e
        finally:
            if self._should_close():
                conn.close()

    def list_for_site(self, site_id: str, limit: int = 1000) -> list[PageviewRecord]:
        """Records for a site, oldest first."""
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM pageviews WHERE site_id = ?
                ORDER BY occurred_at ASC, rowid ASC LIMIT ?
                """,
                (site_id, limit),
            )
            return [self._row_to_record(self._as_dict(cursor, row)) for row in cursor.fetchall()]
        finally:
            if self._should_close():
                conn.close()

    def count_unique_visitors(self, site_id: str, day: date) -> int:
        """Distinct visitor ids for a site whose events occurred on a UTC day."""
        start = datetime.combine(day, datetime.min.time())
        end = start + timedelta(days=1)
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """
                SELECT COUNT(DISTINCT visitor_id) AS visitors FROM pageviews
                WHERE site_id = ? AND substr(occurred_at, 1, 19) >= ?
                  AND substr(occurred_at, 1, 19) < ?
                """,
                (site_id, start.isoformat(), end.isoformat()),
            )
            row = cursor.fetchone()
            return int(self._as_dict(cursor, row)["visitors"])
        finally:
            if self._should_close():
                conn.close()

    @staticmethod
    def _as_dict(cursor: sqlite3.Cursor, row: Any) -> dict[str, Any]:
        # External connections may not carry dict_factory
        return row if isinstance(row, dict) else dict_factory(cursor, row)

    @staticmethod
    def _to_row(record: PageviewRecord) -> tuple[Any, ...]:
        return (
            str(record.id),
            record.site_id,
            record.event_type.value,
            record.path,
            record.referrer,
            record.visitor_id,
            record.occurred_at.isoformat(),
            record.received_at.isoformat(),
            json.dumps(record.custom_data, separators=(",", ":")),
            record.session_id,
            record.page_count,
            record.utm_source,
            record.utm_medium,
            record.utm_campaign,
            record.context_device,
            record.context_browser,
            record.context_os,
            record.context_country,
            record.context_region,
        )

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> PageviewRecord:
        occurred = parse_dt(row["occurred_at"])
        received = parse_dt(row["received_at"])
        if occurred is None or received is None:
            raise StorageError(f"Pageview {row['id']} has no timestamps")
        return PageviewRecord(
            id=UUID(row["id"]),
            site_id=row["site_id"],
            event_type=EventType(row["event_type"]),
            path=row["path"],
            visitor_id=row["visitor_id"],
            occurred_at=occurred,
            received_at=received,
            referrer=row["referrer"],
            custom_data=json.loads(row["custom_data"] or "{}"),
            session_id=row["session_id"] or "",
            page_count=row["page_count"],
            utm_source=row["utm_source"],
            utm_medium=row["utm_medium"],
            utm_campaign=row["utm_campaign"],
            context_device=row["context_device"],
            context_browser=row["context_browser"],
            context_os=row["context_os"],
            context_country=row["context_country"],
            context_region=row["context_region"],
        )


# -----------------------------------------------------------------------------
# Rate Limit Store
# -----------------------------------------------------------------------------


class SQLiteRateLimitStore(SQLiteRepoBase):
    """
    Sliding-window counter shared by every process using the same database.

    Each check runs in a BEGIN IMMEDIATE transaction so concurrent workers
    cannot both observe a count below the limit and both record a hit.
    """

    def __init__(
        self,
        db_path: str,
        connection: sqlite3.Connection | None = None,
        clock: Callable[[], float] | None = None,
    ):
        super().__init__(db_path, connection)
        self._clock = clock or time.time

    def _get_conn(self) -> sqlite3.Connection:
        if self._external_conn is not None:
            return self._external_conn
        # Autocommit mode so BEGIN IMMEDIATE is issued explicitly
        return sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)

    def allow_request(self, key: str, window: int, limit: int) -> bool:
        """Record a hit for key and return True if within limit per window seconds."""
        if limit <= 0:
            return False

        now = self._clock()
        cutoff = now - window
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM rate_limit_hits WHERE key = ? AND hit_at <= ?",
                    (key, cutoff),
                )
                (count,) = conn.execute(
                    "SELECT COUNT(*) FROM rate_limit_hits WHERE key = ?",
                    (key,),
                ).fetchone()
                allowed = count < limit
                if allowed:
                    conn.execute(
                        "INSERT INTO rate_limit_hits (key, hit_at) VALUES (?, ?)",
                        (key, now),
                    )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            return allowed
        except sqlite3.Error as e:
            raise StorageError(f"Rate limit store unavailable: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    def purge_expired(self, max_window: int) -> int:
        """Delete hits older than the largest window in use. Returns rows removed."""
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "DELETE FROM rate_limit_hits WHERE hit_at <= ?",
                (self._clock() - max_window,),
            )
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Rate limit purge failed: {e}") from e
        finally:
            if self._should_close():
                conn.close()
