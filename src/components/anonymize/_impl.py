"""
AnonymizationService - One-way, day-scoped visitor identity.

Derives an opaque visitor id from (client IP, user agent, daily secret).
The daily secret is a pure function of a long-lived root key and the UTC
calendar date, so every ingestion instance computes the same secret for the
same day without shared state.

Key behaviors:
- Same (ip, ua, day) always yields the same id (same-day unique counting)
- A different day yields an unrelated id (no cross-day linking)
- Ids are HMAC outputs; the IP cannot be recovered from them
- Missing or malformed IPs are refused, never replaced by a placeholder
- IP and user agent are never logged or returned
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Protocol

SECRET_CONTEXT = b"zta-daily-secret:"
RATE_LIMIT_CONTEXT = "rl|"
VISITOR_FIELD_SEPARATOR = "|"


# --- Errors ---


class AnonymizationError(ValueError):
    """Raised when a visitor id cannot be derived."""


class MissingClientAddressError(AnonymizationError):
    """Raised when the client IP is absent or not an IP address."""


# --- Configuration ---


@dataclass(frozen=True)
class AnonymizationConfig:
    """Anonymization configuration."""

    visitor_id_length: int = 16


DEFAULT_CONFIG = AnonymizationConfig()


# --- Daily Secret ---


@dataclass(frozen=True)
class DailySecret:
    """Secret salting the visitor hash for one UTC day."""

    value: bytes
    valid_for: date

    def __repr__(self) -> str:
        return f"DailySecret(valid_for={self.valid_for.isoformat()})"


def derive_secret(root_key: bytes, day: date) -> DailySecret:
    """Derive the secret for a UTC day from the root key."""
    if not root_key:
        raise AnonymizationError("Root key must not be empty")

    message = SECRET_CONTEXT + day.isoformat().encode("ascii")
    value = hmac.new(root_key, message, hashlib.sha256).digest()
    return DailySecret(value=value, valid_for=day)


def utc_day(moment: datetime) -> date:
    """Calendar date of a moment in UTC (naive datetimes are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).date()


class DailySecretProvider:
    """
    Holds the authoritative secret per UTC day.

    Only the most recent day is cached; the value can always be re-derived.
    """

    def __init__(self, root_key: bytes | str) -> None:
        if isinstance(root_key, str):
            root_key = root_key.encode("utf-8")
        if not root_key:
            raise AnonymizationError("Root key must not be empty")
        self._root_key = root_key
        self._current: DailySecret | None = None

    def secret_for(self, day: date) -> DailySecret:
        """Get the secret for a UTC calendar day."""
        current = self._current
        if current is not None and current.valid_for == day:
            return current

        secret = derive_secret(self._root_key, day)
        self._current = secret
        return secret

    def secret_at(self, moment: datetime) -> DailySecret:
        """Get the secret for the UTC day containing a moment."""
        return self.secret_for(utc_day(moment))


# --- Normalization ---


def normalize_ip(ip: str | None) -> str:
    """
    Canonical text form of an IP address.

    Raises MissingClientAddressError if absent or not parseable, so the
    caller rejects the request instead of counting a shared placeholder.
    """
    if ip is None or not ip.strip():
        raise MissingClientAddressError("Client address unavailable")

    try:
        parsed = ipaddress.ip_address(ip.strip())
    except ValueError:
        raise MissingClientAddressError("Client address is not a valid IP") from None

    # IPv4-mapped IPv6 (::ffff:1.2.3.4) counts as the same visitor as 1.2.3.4
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        parsed = parsed.ipv4_mapped

    return parsed.compressed


# --- Time Port Protocol ---


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...


class DefaultTimePort:
    """Default time provider."""

    def now_utc(self) -> datetime:
        return datetime.now(UTC)


# --- Anonymization Service ---


class AnonymizationService:
    """Computes anonymized visitor ids and privacy-safe rate-limit keys."""

    def __init__(
        self,
        secrets: DailySecretProvider,
        time_port: TimePort | None = None,
        config: AnonymizationConfig | None = None,
    ) -> None:
        self._secrets = secrets
        self._time = time_port or DefaultTimePort()
        self._config = config or DEFAULT_CONFIG

    def _resolve_day(self, day: date | None) -> date:
        return day if day is not None else utc_day(self._time.now_utc())

    def compute_visitor_id(
        self,
        ip: str | None,
        user_agent: str | None,
        day: date | None = None,
    ) -> str:
        """
        Derive the visitor id for (ip, user_agent) on a UTC day.

        Defaults to the current UTC day. Raises MissingClientAddressError
        when the IP is unavailable.
        """
        normalized = normalize_ip(ip)
        secret = self._secrets.secret_for(self._resolve_day(day))

        message = VISITOR_FIELD_SEPARATOR.join((normalized, user_agent or ""))
        digest = hmac.new(secret.value, message.encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()[: self._config.visitor_id_length]

    def rate_limit_key(self, site_id: str, ip: str | None, day: date | None = None) -> str:
        """
        Per-site key for rate limiting a client.

        Keyed by the day secret so a stored key cannot be reversed by
        enumerating the IPv4 space.
        """
        normalized = normalize_ip(ip)
        secret = self._secrets.secret_for(self._resolve_day(day))
        digest = hmac.new(
            secret.value,
            (RATE_LIMIT_CONTEXT + normalized).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"track:{site_id}:{digest[:24]}"


# --- Factory ---


def create_anonymization_service(
    root_key: bytes | str,
    time_port: TimePort | None = None,
    config: AnonymizationConfig | None = None,
) -> AnonymizationService:
    """Create an AnonymizationService from a root key."""
    return AnonymizationService(
        secrets=DailySecretProvider(root_key),
        time_port=time_port,
        config=config,
    )
