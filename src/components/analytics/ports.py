"""
Analytics component port definitions.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from .models import PageviewRecord, SiteStatus


class PageviewStorePort(Protocol):
    """Append-only store for anonymized records."""

    def store_many(self, records: Sequence[PageviewRecord]) -> None:
        """
        Persist records atomically.

        Raises StorageError if nothing could be written.
        """
        ...


class RateLimiterPort(Protocol):
    """Atomic sliding-window counter."""

    def allow_request(self, key: str, window: int, limit: int) -> bool:
        """Record a hit and return True if it is within the limit."""
        ...

    def purge_expired(self, max_window: int) -> int:
        """Remove hits older than max_window seconds. Returns the count removed."""
        ...


class SitePolicyPort(Protocol):
    """Site and quota signal from the account layer."""

    def check_site(self, site_id: str) -> SiteStatus:
        """Return the status of a site identifier."""
        ...


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...
