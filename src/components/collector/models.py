"""
Collector component models.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from urllib.parse import parse_qs, urlsplit

from src.rules.models import CollectorRules

DEFAULT_ENDPOINT = "https://ztas.io/api/track"

# --- Enums ---


class DeliveryOutcome(str, Enum):
    """Result of one delivery attempt."""

    DELIVERED = "delivered"
    FAILED = "failed"
    # Endpoint refused the batch (validation or rate limit); never retried
    REJECTED = "rejected"


# --- Event / Batch ---


@dataclass(frozen=True)
class Event:
    """One user-observable occurrence. Immutable once created."""

    type: str
    timestamp: int  # epoch milliseconds
    url: str | None = None
    path: str | None = None
    referrer: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    page_count: int | None = None
    utm: Mapping[str, str] | None = None

    def to_payload(self, site_id: str) -> dict[str, Any]:
        """Wire object accepted by the collection endpoint."""
        path = self.path
        if not path and self.url:
            path = urlsplit(self.url).path
        payload: dict[str, Any] = {
            "siteId": site_id,
            "type": self.type,
            "path": path or "/",
            "timestamp": self.timestamp,
        }
        if self.url:
            payload["url"] = self.url
        if self.referrer:
            payload["referrer"] = self.referrer
        if self.attributes:
            payload["customData"] = dict(self.attributes)
        if self.session_id:
            payload["sessionId"] = self.session_id
        if self.page_count is not None:
            payload["pageCount"] = self.page_count
        if self.utm:
            payload["utm"] = dict(self.utm)
        return payload


@dataclass(frozen=True)
class Batch:
    """Ordered group of events sent together in one delivery attempt."""

    events: tuple[Event, ...]
    sequence: int
    created_at: float
    retry_count: int = 0
    unload: bool = False

    def __len__(self) -> int:
        return len(self.events)

    def next_attempt(self) -> Batch:
        """Copy of this batch after one more failed attempt."""
        return replace(self, retry_count=self.retry_count + 1)


# --- Configuration ---


def _flag(value: str | None, default: bool) -> bool:
    # Embed attributes only switch away from the default on an explicit value
    if value is None:
        return default
    if default:
        return value.strip().lower() != "false"
    return value.strip().lower() == "true"


@dataclass(frozen=True)
class CollectorConfig:
    """Collector configuration for one embedding site."""

    site_id: str
    endpoint: str = DEFAULT_ENDPOINT
    auto_track: bool = True
    spa: bool = False
    debug: bool = False

    batch_size: int = 10
    flush_interval_ms: int = 5000
    max_queue_size: int = 500
    max_retries: int = 3
    retry_delay_ms: int = 2000
    beacon_max_bytes: int = 65536

    def __post_init__(self) -> None:
        if not self.site_id or not self.site_id.strip():
            raise ValueError("site_id is required")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_queue_size < self.batch_size:
            raise ValueError("max_queue_size must be at least batch_size")
        if self.flush_interval_ms < 0 or self.retry_delay_ms < 0:
            raise ValueError("intervals must not be negative")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @classmethod
    def from_rules(
        cls,
        site_id: str,
        rules: CollectorRules,
        **overrides: Any,
    ) -> CollectorConfig:
        """Build from the collector section of the rules file."""
        values: dict[str, Any] = {
            "endpoint": rules.endpoint,
            "batch_size": rules.batch_size,
            "flush_interval_ms": rules.flush_interval_ms,
            "max_queue_size": rules.max_queue_size,
            "max_retries": rules.max_retries,
            "retry_delay_ms": rules.retry_delay_ms,
            "beacon_max_bytes": rules.beacon_max_bytes,
        }
        values.update(overrides)
        return cls(site_id=site_id, **values)

    @classmethod
    def from_embed_attributes(
        cls,
        attributes: Mapping[str, str],
        rules: CollectorRules | None = None,
    ) -> CollectorConfig:
        """
        Build from the embed snippet's data attributes.

        Recognized: data-site-id (required), data-auto-track (default true),
        data-spa, data-debug (default false) and data-endpoint.
        """
        site_id = (attributes.get("data-site-id") or "").strip()
        overrides: dict[str, Any] = {
            "auto_track": _flag(attributes.get("data-auto-track"), True),
            "spa": _flag(attributes.get("data-spa"), False),
            "debug": _flag(attributes.get("data-debug"), False),
        }
        endpoint = (attributes.get("data-endpoint") or "").strip()
        if endpoint:
            overrides["endpoint"] = endpoint

        if rules is not None:
            return cls.from_rules(site_id, rules, **overrides)
        return cls(site_id=site_id, **overrides)


UTM_PARAMS = ("source", "medium", "campaign")


def utm_from_url(url: str | None) -> dict[str, str]:
    """utm_source, utm_medium and utm_campaign from a page URL's query string."""
    if not url:
        return {}
    query = parse_qs(urlsplit(url).query)
    return {
        name: query[f"utm_{name}"][0]
        for name in UTM_PARAMS
        if query.get(f"utm_{name}")
    }
