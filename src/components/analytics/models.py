"""
Analytics component input/output models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

# --- Enums ---


class EventType(str, Enum):
    """Event types accepted by the collection endpoint."""

    PAGEVIEW = "pageview"
    EVENT = "event"
    ENGAGEMENT = "engagement"
    HEARTBEAT = "heartbeat"


class ErrorKind(str, Enum):
    """Stable error kinds returned to clients."""

    VALIDATION = "validation_error"
    PRIVACY = "privacy_violation"
    RATE_LIMIT = "rate_limit_exceeded"
    QUOTA = "quota_exceeded"
    UNKNOWN_SITE = "unknown_site"
    STORAGE = "storage_error"


class SiteStatus(str, Enum):
    """Site signal supplied by the account layer."""

    ACTIVE = "active"
    UNKNOWN = "unknown"
    OVER_QUOTA = "over_quota"


# --- Errors ---


@dataclass(frozen=True)
class IngestionError:
    """Analytics ingestion error."""

    code: str
    message: str
    field_name: str | None = None
    kind: ErrorKind = ErrorKind.VALIDATION


class StorageError(RuntimeError):
    """Raised by stores when a record cannot be persisted."""


# --- Request Context ---


@dataclass(frozen=True)
class ClientContext:
    """
    Network facts about the caller.

    ip and user_agent are used for hashing and categorization only and are
    never stored. country and region come from edge-provided headers.
    """

    ip: str | None
    user_agent: str | None = None
    country: str = "unknown"
    region: str = "unknown"

    def __repr__(self) -> str:
        return "ClientContext(<redacted>)"


@dataclass(frozen=True)
class DeviceContext:
    """Categorical device facts derived from a user agent."""

    device: str = "unknown"
    browser: str = "other"
    os: str = "other"


@dataclass(frozen=True)
class Utm:
    """Campaign parameters reported by the collector."""

    source: str | None = None
    medium: str | None = None
    campaign: str | None = None


# --- Validated Payload ---


@dataclass(frozen=True)
class TrackPayload:
    """A validated tracking payload."""

    site_id: str
    event_type: EventType
    path: str
    occurred_at: datetime
    referrer: str | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    page_count: int | None = None
    utm: Utm = field(default_factory=Utm)
    timestamp_clamped: bool = False


# --- Persisted Record ---


@dataclass(frozen=True)
class PageviewRecord:
    """Persisted, anonymized record of one accepted event."""

    id: UUID
    site_id: str
    event_type: EventType
    path: str
    visitor_id: str
    occurred_at: datetime
    received_at: datetime
    referrer: str | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)
    session_id: str = ""
    page_count: int | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    context_device: str = "unknown"
    context_browser: str = "other"
    context_os: str = "other"
    context_country: str = "unknown"
    context_region: str = "unknown"


# --- Input/Output ---


@dataclass(frozen=True)
class IngestInput:
    """Input for ingesting one payload or a batch of payloads."""

    payloads: tuple[dict[str, Any], ...]
    client: ClientContext
    is_batch: bool = False


@dataclass(frozen=True)
class IngestOutput:
    """Output for ingestion result."""

    records: tuple[PageviewRecord, ...] = ()
    errors: list[IngestionError] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return len(self.records)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def error_kind(self) -> ErrorKind | None:
        """Most severe kind among the errors, used to pick a status code."""
        if not self.errors:
            return None
        kinds = {e.kind for e in self.errors}
        for kind in (
            ErrorKind.STORAGE,
            ErrorKind.PRIVACY,
            ErrorKind.UNKNOWN_SITE,
            ErrorKind.RATE_LIMIT,
            ErrorKind.QUOTA,
        ):
            if kind in kinds:
                return kind
        return ErrorKind.VALIDATION
