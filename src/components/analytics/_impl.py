"""
IngestionService - Validation, anonymization and persistence of tracked events.

Handles the collection endpoint's work for one request: payload validation,
privacy screening, site/quota checks, rate limiting, visitor anonymization
and storage.

Key behaviors:
- siteId and path are required; everything else is optional
- Implausible or missing timestamps are clamped to receipt time, never rejected
- Forbidden fields and PII-looking values are a hard rejection
- Rate limits are per site, keyed by an anonymized client key
- A request is all-or-nothing: any error means nothing is stored
- Raw IP and user agent never leave this module; only categories derived
  from the user agent are stored
- Expired rate-limit hits are purged at most once per purge interval
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any
from urllib.parse import unquote, urlsplit, urlunsplit
from uuid import uuid4

from src.app_shell.rate_limit import RateLimiter
from src.components.anonymize import (
    AnonymizationService,
    DefaultTimePort,
    MissingClientAddressError,
    utc_day,
)

from .models import (
    ClientContext,
    DeviceContext,
    ErrorKind,
    EventType,
    IngestionError,
    PageviewRecord,
    SiteStatus,
    StorageError,
    TrackPayload,
    Utm,
)
from .ports import PageviewStorePort, RateLimiterPort, SitePolicyPort, TimePort

logger = logging.getLogger(__name__)

# --- Configuration ---


@dataclass(frozen=True)
class IngestionConfig:
    """Analytics ingestion configuration."""

    # Rate limiting
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 120
    # Rate-limit keys change every UTC day, so stale hits are purged on a schedule
    rate_limit_purge_interval_seconds: int = 300

    allowed_event_types: frozenset[str] = field(
        default_factory=lambda: frozenset(t.value for t in EventType),
    )
    forbidden_fields: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {
                "ip",
                "ip_address",
                "client_ip",
                "user_agent",
                "ua_raw",
                "cookie",
                "cookie_id",
                "visitor_id",
                "visitorid",
                "fingerprint",
                "email",
                "email_address",
                "phone",
            }
        ),
    )

    # PII value patterns
    detect_email: bool = True
    detect_ipv4: bool = True
    detect_phone: bool = True

    # Timestamp plausibility
    max_timestamp_age_seconds: int = 86400
    max_timestamp_future_seconds: int = 60

    # Shape limits
    max_batch_events: int = 50
    max_custom_data_keys: int = 32
    max_custom_data_depth: int = 3
    max_string_length: int = 2048
    max_page_count: int = 100_000
    max_utm_length: int = 256


DEFAULT_CONFIG = IngestionConfig()


# --- PII Patterns ---

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}")

_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"
IPV4_PATTERN = re.compile(rf"(?<![\d.]){_OCTET}(?:\.{_OCTET}){{3}}(?![\d.])")

# International (+CC groups) or North American (555) 123-4567 style
PHONE_PATTERN = re.compile(
    r"(?<![\w+])"
    r"(?:\+\d{1,3}(?:[\s.-]?\(?\d{1,4}\)?){2,5}"
    r"|\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4})"
    r"(?!\w)"
)
PHONE_MIN_DIGITS = 9
PHONE_MAX_DIGITS = 15


def detect_pii(value: str, config: IngestionConfig = DEFAULT_CONFIG) -> str | None:
    """Return the name of the first PII pattern found in a string, or None."""
    if config.detect_email and EMAIL_PATTERN.search(value):
        return "email"
    if config.detect_ipv4 and IPV4_PATTERN.search(value):
        return "ip_address"
    if config.detect_phone:
        for match in PHONE_PATTERN.finditer(value):
            digits = sum(ch.isdigit() for ch in match.group(0))
            if PHONE_MIN_DIGITS <= digits <= PHONE_MAX_DIGITS:
                return "phone_number"
    return None


# --- Validation Functions ---


def validate_required_string(
    data: Mapping[str, Any],
    key: str,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[str | None, list[IngestionError]]:
    """Validate a required, non-empty string field."""
    value = data.get(key)

    if value is None or (isinstance(value, str) and not value.strip()):
        return None, [
            IngestionError(
                code=f"{key}_required",
                message=f"Field '{key}' is required",
                field_name=key,
            )
        ]

    if not isinstance(value, str):
        return None, [
            IngestionError(
                code="invalid_type",
                message=f"Field '{key}' must be a string",
                field_name=key,
            )
        ]

    if len(value) > config.max_string_length:
        return None, [
            IngestionError(
                code="value_too_long",
                message=f"Field '{key}' exceeds {config.max_string_length} characters",
                field_name=key,
            )
        ]

    return value.strip(), []


def validate_event_type(
    event_type: Any,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[EventType | None, list[IngestionError]]:
    """Validate the event type; absent means pageview."""
    if event_type is None:
        return EventType.PAGEVIEW, []

    if not isinstance(event_type, str) or event_type not in config.allowed_event_types:
        return None, [
            IngestionError(
                code="invalid_event_type",
                message=f"Event type '{event_type}' is not allowed",
                field_name="type",
            )
        ]

    try:
        return EventType(event_type), []
    except ValueError:
        return None, [
            IngestionError(
                code="invalid_event_type",
                message=f"Event type '{event_type}' is not supported",
                field_name="type",
            )
        ]


def validate_forbidden_fields(
    data: Mapping[str, Any],
    config: IngestionConfig = DEFAULT_CONFIG,
    prefix: str = "",
) -> list[IngestionError]:
    """Reject raw identifiers sent as field names."""
    errors: list[IngestionError] = []

    for key in data:
        if str(key).lower() in config.forbidden_fields:
            errors.append(
                IngestionError(
                    code="forbidden_field",
                    message=f"Field '{prefix}{key}' is not allowed (PII)",
                    field_name=f"{prefix}{key}",
                    kind=ErrorKind.PRIVACY,
                )
            )

    return errors


def _scan_value(
    value: Any,
    path: str,
    depth: int,
    config: IngestionConfig,
    errors: list[IngestionError],
) -> None:
    if isinstance(value, str):
        if len(value) > config.max_string_length:
            errors.append(
                IngestionError(
                    code="value_too_long",
                    message=f"Field '{path}' exceeds {config.max_string_length} characters",
                    field_name=path,
                )
            )
            return
        found = detect_pii(value, config)
        if found:
            errors.append(
                IngestionError(
                    code="pii_detected",
                    message=f"Field '{path}' looks like personal data ({found})",
                    field_name=path,
                    kind=ErrorKind.PRIVACY,
                )
            )
        return

    if value is None or isinstance(value, (bool, int, float)):
        return

    if depth >= config.max_custom_data_depth:
        errors.append(
            IngestionError(
                code="custom_data_too_deep",
                message=f"Field '{path}' is nested too deeply",
                field_name=path,
            )
        )
        return

    if isinstance(value, Mapping):
        errors.extend(validate_forbidden_fields(value, config, prefix=f"{path}."))
        for key, inner in value.items():
            _scan_value(inner, f"{path}.{key}", depth + 1, config, errors)
    elif isinstance(value, list):
        for index, inner in enumerate(value):
            _scan_value(inner, f"{path}[{index}]", depth + 1, config, errors)
    else:
        errors.append(
            IngestionError(
                code="invalid_type",
                message=f"Field '{path}' has an unsupported type",
                field_name=path,
            )
        )


def validate_custom_data(
    custom_data: Any,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[dict[str, Any], list[IngestionError]]:
    """Validate customData shape and screen it for personal data."""
    if custom_data is None:
        return {}, []

    if not isinstance(custom_data, Mapping):
        return {}, [
            IngestionError(
                code="invalid_type",
                message="Field 'customData' must be an object",
                field_name="customData",
            )
        ]

    if len(custom_data) > config.max_custom_data_keys:
        return {}, [
            IngestionError(
                code="too_many_keys",
                message=f"Field 'customData' exceeds {config.max_custom_data_keys} keys",
                field_name="customData",
            )
        ]

    errors = validate_forbidden_fields(custom_data, config, prefix="customData.")
    for key, value in custom_data.items():
        _scan_value(value, f"customData.{key}", 1, config, errors)

    return dict(custom_data), errors


def resolve_timestamp(
    ts: Any,
    now: datetime,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[datetime, bool]:
    """
    Parse a client timestamp, clamping to receipt time when implausible.

    Accepts epoch seconds, epoch milliseconds or ISO 8601 strings.
    Returns (timestamp, clamped).
    """
    if ts is None:
        return now, False

    parsed: datetime | None = None

    if isinstance(ts, bool):
        parsed = None
    elif isinstance(ts, (int, float)):
        try:
            # Unix timestamp (seconds or milliseconds)
            if ts > 1e12:
                parsed = datetime.fromtimestamp(ts / 1000, tz=UTC)
            else:
                parsed = datetime.fromtimestamp(ts, tz=UTC)
        except (ValueError, OSError, OverflowError):
            parsed = None
    elif isinstance(ts, str):
        try:
            parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            parsed = None

    if parsed is None:
        return now, True

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    else:
        parsed = parsed.astimezone(UTC)

    age = (now - parsed).total_seconds()
    if age > config.max_timestamp_age_seconds or age < -config.max_timestamp_future_seconds:
        return now, True

    return parsed, False


def sanitize_path(path: str) -> str:
    """Drop query string and fragment from a page path."""
    clean = path.split("#", 1)[0].split("?", 1)[0]
    return clean or "/"


def sanitize_referrer(raw: Any) -> str | None:
    """Keep scheme, host and path of a referrer. Query and fragment are dropped."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parts = urlsplit(raw.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    host = parts.hostname
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


LOCATION_FIELDS = ("path", "referrer", "url")


def validate_location_fields(
    data: Mapping[str, Any],
    config: IngestionConfig = DEFAULT_CONFIG,
) -> list[IngestionError]:
    """
    Screen path, referrer and url for personal data.

    Runs on the raw, percent-decoded values, before the query string is
    stripped: a page address carrying an email is rejected, not cleaned.
    """
    errors: list[IngestionError] = []
    for key in LOCATION_FIELDS:
        value = data.get(key)
        if not isinstance(value, str):
            continue
        found = detect_pii(unquote(value), config)
        if found:
            errors.append(
                IngestionError(
                    code="pii_detected",
                    message=f"Field '{key}' looks like personal data ({found})",
                    field_name=key,
                    kind=ErrorKind.PRIVACY,
                )
            )
    return errors


SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9-]{8,64}")


def validate_session_id(value: Any) -> tuple[str | None, list[IngestionError]]:
    """Collector session id: optional, 8-64 letters, digits or dashes."""
    if value is None:
        return None, []
    if not isinstance(value, str) or not SESSION_ID_PATTERN.fullmatch(value):
        return None, [
            IngestionError(
                code="invalid_session_id",
                message="Field 'sessionId' must be 8-64 letters, digits or dashes",
                field_name="sessionId",
            )
        ]
    return value, []


def validate_page_count(
    value: Any,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[int | None, list[IngestionError]]:
    if value is None:
        return None, []
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= config.max_page_count:
        return None, [
            IngestionError(
                code="invalid_page_count",
                message=f"Field 'pageCount' must be an integer from 0 to {config.max_page_count}",
                field_name="pageCount",
            )
        ]
    return value, []


UTM_KEYS = ("source", "medium", "campaign")


def validate_utm(
    value: Any,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[Utm, list[IngestionError]]:
    """
    Validate the utm object: source, medium and campaign strings or null.

    Other keys are ignored. Values are screened for personal data.
    """
    if value is None:
        return Utm(), []
    if not isinstance(value, Mapping):
        return Utm(), [
            IngestionError(
                code="invalid_type",
                message="Field 'utm' must be an object",
                field_name="utm",
            )
        ]

    errors: list[IngestionError] = []
    values: dict[str, str | None] = {}
    for key in UTM_KEYS:
        raw = value.get(key)
        name = f"utm.{key}"
        if raw is None or raw == "":
            values[key] = None
            continue
        if not isinstance(raw, str) or len(raw) > config.max_utm_length:
            errors.append(
                IngestionError(
                    code="invalid_utm",
                    message=f"Field '{name}' must be a string of at most {config.max_utm_length} characters",
                    field_name=name,
                )
            )
            continue

        found = detect_pii(raw, config)
        if found:
            errors.append(
                IngestionError(
                    code="pii_detected",
                    message=f"Field '{name}' looks like personal data ({found})",
                    field_name=name,
                    kind=ErrorKind.PRIVACY,
                )
            )
        else:
            values[key] = raw.strip() or None

    if errors:
        return Utm(), errors
    return Utm(**values), []


def validate_payload(
    data: Any,
    now: datetime,
    config: IngestionConfig = DEFAULT_CONFIG,
) -> tuple[TrackPayload | None, list[IngestionError]]:
    """
    Validate one tracking payload.

    Privacy errors are reported first; when present, the remaining
    validation is skipped.
    """
    if not isinstance(data, Mapping):
        return None, [
            IngestionError(
                code="malformed_payload",
                message="Payload must be a JSON object",
            )
        ]

    errors = validate_forbidden_fields(data, config)
    custom_data, custom_errors = validate_custom_data(data.get("customData"), config)
    errors.extend(custom_errors)
    errors.extend(validate_location_fields(data, config))
    utm, utm_errors = validate_utm(data.get("utm"), config)
    errors.extend(utm_errors)

    if any(e.kind == ErrorKind.PRIVACY for e in errors):
        return None, errors

    session_id, session_errors = validate_session_id(data.get("sessionId"))
    errors.extend(session_errors)

    page_count, page_count_errors = validate_page_count(data.get("pageCount"), config)
    errors.extend(page_count_errors)

    site_id, site_errors = validate_required_string(data, "siteId", config)
    errors.extend(site_errors)

    path, path_errors = validate_required_string(data, "path", config)
    errors.extend(path_errors)

    event_type, type_errors = validate_event_type(data.get("type"), config)
    errors.extend(type_errors)

    url = data.get("url")
    if url is not None and not isinstance(url, str):
        errors.append(
            IngestionError(
                code="invalid_type",
                message="Field 'url' must be a string",
                field_name="url",
            )
        )

    if errors or site_id is None or path is None or event_type is None:
        return None, errors

    occurred_at, clamped = resolve_timestamp(data.get("timestamp"), now, config)

    return (
        TrackPayload(
            site_id=site_id,
            event_type=event_type,
            path=sanitize_path(path),
            occurred_at=occurred_at,
            referrer=sanitize_referrer(data.get("referrer")),
            custom_data=custom_data,
            session_id=session_id,
            page_count=page_count,
            utm=utm,
            timestamp_clamped=clamped,
        ),
        [],
    )


# --- Client Context ---

_MOBILE_UA = re.compile(r"Mobile|Android|iPhone|iPad", re.IGNORECASE)
_TABLET_UA = re.compile(r"iPad|Tablet", re.IGNORECASE)

# Checked in order; Edge and Opera also announce Chrome, Chrome announces Safari
_BROWSERS = (
    ("firefox", re.compile(r"Firefox|FxiOS", re.IGNORECASE)),
    ("edge", re.compile(r"Edg", re.IGNORECASE)),
    ("opera", re.compile(r"OPR|Opera", re.IGNORECASE)),
    ("chrome", re.compile(r"Chrome|CriOS", re.IGNORECASE)),
    ("safari", re.compile(r"Safari", re.IGNORECASE)),
)

# Android announces Linux, iOS announces Mac OS
_OPERATING_SYSTEMS = (
    ("windows", re.compile(r"Windows", re.IGNORECASE)),
    ("android", re.compile(r"Android", re.IGNORECASE)),
    ("ios", re.compile(r"iPhone|iPad|iPod|iOS", re.IGNORECASE)),
    ("macos", re.compile(r"Mac OS", re.IGNORECASE)),
    ("linux", re.compile(r"Linux", re.IGNORECASE)),
)


def parse_context(user_agent: str | None) -> DeviceContext:
    """
    Reduce a user agent to device, browser and OS categories.

    Names only, never versions, so the result cannot act as a fingerprint.
    """
    if not user_agent:
        return DeviceContext()

    device = "desktop"
    if _MOBILE_UA.search(user_agent):
        device = "tablet" if _TABLET_UA.search(user_agent) else "mobile"

    browser = next((name for name, pattern in _BROWSERS if pattern.search(user_agent)), "other")
    os_name = next(
        (name for name, pattern in _OPERATING_SYSTEMS if pattern.search(user_agent)),
        "other",
    )
    return DeviceContext(device=device, browser=browser, os=os_name)


COUNTRY_HEADERS = ("x-country", "cf-ipcountry")
REGION_HEADERS = ("x-nf-client-connection-region", "cf-region")
_COUNTRY_CODE = re.compile(r"[A-Za-z]{2}")
_REGION_CODE = re.compile(r"[A-Za-z0-9-]{1,8}")


def _first_header(headers: Mapping[str, str], names: tuple[str, ...], pattern: re.Pattern[str]) -> str:
    for name in names:
        value = (headers.get(name) or "").strip()
        if value and pattern.fullmatch(value):
            return value.upper()
    return "unknown"


def parse_geo(headers: Mapping[str, str]) -> tuple[str, str]:
    """
    Country and region from edge-provided headers, as (country, region).

    No address lookup is ever made; values that are not short codes are
    reported as "unknown".
    """
    return (
        _first_header(headers, COUNTRY_HEADERS, _COUNTRY_CODE),
        _first_header(headers, REGION_HEADERS, _REGION_CODE),
    )


# --- Default Implementations ---


class AllowAllSitePolicy:
    """Site policy that accepts every site id."""

    def check_site(self, site_id: str) -> SiteStatus:
        return SiteStatus.ACTIVE


class StaticSitePolicy:
    """Site policy backed by fixed sets, for dev and tests."""

    def __init__(
        self,
        known_sites: frozenset[str] | set[str],
        over_quota: frozenset[str] | set[str] = frozenset(),
    ) -> None:
        self._known = frozenset(known_sites)
        self._over_quota = frozenset(over_quota)

    def check_site(self, site_id: str) -> SiteStatus:
        if site_id not in self._known:
            return SiteStatus.UNKNOWN
        if site_id in self._over_quota:
            return SiteStatus.OVER_QUOTA
        return SiteStatus.ACTIVE


class InMemoryPageviewStore:
    """In-memory record store for testing/dev."""

    def __init__(self) -> None:
        self._records: list[PageviewRecord] = []

    def store_many(self, records: list[PageviewRecord] | tuple[PageviewRecord, ...]) -> None:
        self._records.extend(records)

    def get_all(self) -> list[PageviewRecord]:
        """Get all stored records (for testing)."""
        return list(self._records)


# --- Ingestion Service ---


class IngestionService:
    """
    Collection endpoint service.

    Validates payloads and, for accepted requests, persists one
    PageviewRecord per event.
    """

    def __init__(
        self,
        store: PageviewStorePort,
        anonymizer: AnonymizationService,
        rate_limiter: RateLimiterPort | None = None,
        site_policy: SitePolicyPort | None = None,
        time_port: TimePort | None = None,
        config: IngestionConfig | None = None,
    ) -> None:
        self._store = store
        self._anonymizer = anonymizer
        self._time = time_port or DefaultTimePort()
        self._rate_limiter = rate_limiter or RateLimiter(
            clock=lambda: self._time.now_utc().timestamp()
        )
        self._site_policy = site_policy or AllowAllSitePolicy()
        self._config = config or DEFAULT_CONFIG
        self._purge_lock = Lock()
        self._last_purge: datetime | None = None

    def purge_rate_limits(self, now: datetime) -> None:
        """
        Drop expired rate-limit hits once per purge interval.

        Keys embed the day secret, so yesterday's keys are never hit again
        and would otherwise stay in the store forever.
        """
        interval = self._config.rate_limit_purge_interval_seconds
        if self._last_purge is not None and (now - self._last_purge).total_seconds() < interval:
            return
        if not self._purge_lock.acquire(blocking=False):
            return
        try:
            self._last_purge = now
            removed = self._rate_limiter.purge_expired(self._config.rate_limit_window_seconds)
            if removed:
                logger.debug("Purged %d expired rate-limit hit(s)", removed)
        except StorageError as e:
            logger.warning("Rate-limit purge failed: %s", e)
        finally:
            self._purge_lock.release()

    def _validate_all(
        self,
        payloads: list[Any] | tuple[Any, ...],
        now: datetime,
        is_batch: bool,
    ) -> tuple[list[TrackPayload], list[IngestionError]]:
        if not payloads:
            return [], [
                IngestionError(code="empty_batch", message="Batch contains no events")
            ]

        if len(payloads) > self._config.max_batch_events:
            return [], [
                IngestionError(
                    code="batch_too_large",
                    message=f"Batch exceeds {self._config.max_batch_events} events",
                )
            ]

        valid: list[TrackPayload] = []
        errors: list[IngestionError] = []

        for index, data in enumerate(payloads):
            payload, payload_errors = validate_payload(data, now, self._config)
            if is_batch:
                payload_errors = [_index_error(e, index) for e in payload_errors]
            errors.extend(payload_errors)
            if payload is not None:
                valid.append(payload)

        return valid, errors

    def _check_sites(self, site_ids: list[str]) -> list[IngestionError]:
        for site_id in site_ids:
            status = self._site_policy.check_site(site_id)
            if status == SiteStatus.UNKNOWN:
                return [
                    IngestionError(
                        code="invalid_site",
                        message="Invalid site ID",
                        field_name="siteId",
                        kind=ErrorKind.UNKNOWN_SITE,
                    )
                ]
            if status == SiteStatus.OVER_QUOTA:
                return [
                    IngestionError(
                        code="quota_exceeded",
                        message="Site has exceeded its event quota",
                        field_name="siteId",
                        kind=ErrorKind.QUOTA,
                    )
                ]
        return []

    def _check_rate_limits(
        self,
        site_ids: list[str],
        client: ClientContext,
        now: datetime,
    ) -> list[IngestionError]:
        for site_id in site_ids:
            key = self._anonymizer.rate_limit_key(site_id, client.ip, utc_day(now))
            allowed = self._rate_limiter.allow_request(
                key,
                self._config.rate_limit_window_seconds,
                self._config.rate_limit_max_requests,
            )
            if not allowed:
                return [
                    IngestionError(
                        code="rate_limit_exceeded",
                        message="Too many requests",
                        kind=ErrorKind.RATE_LIMIT,
                    )
                ]
        return []

    def ingest(
        self,
        payloads: list[Any] | tuple[Any, ...],
        client: ClientContext,
        is_batch: bool = False,
    ) -> tuple[list[PageviewRecord], list[IngestionError]]:
        """
        Ingest one request's payloads.

        Order: validation and privacy screening, site policy, client address,
        rate limit, anonymization, storage. Returns (records, errors); records
        is empty whenever errors is not.
        """
        now = self._time.now_utc()

        valid, errors = self._validate_all(payloads, now, is_batch)
        if errors:
            if any(e.kind == ErrorKind.PRIVACY for e in errors):
                logger.warning("Rejected payload containing personal data (%d findings)", len(errors))
            return [], errors

        site_ids = list(dict.fromkeys(p.site_id for p in valid))

        errors = self._check_sites(site_ids)
        if errors:
            return [], errors

        self.purge_rate_limits(now)

        try:
            errors = self._check_rate_limits(site_ids, client, now)
            if errors:
                logger.info("Rate limit exceeded for site(s) %s", ", ".join(site_ids))
                return [], errors

            visitor_id = self._anonymizer.compute_visitor_id(
                client.ip,
                client.user_agent,
                utc_day(now),
            )
        except MissingClientAddressError:
            logger.error("Client address unavailable; check proxy configuration")
            return [], [
                IngestionError(
                    code="client_address_unavailable",
                    message="Client address unavailable",
                )
            ]
        except StorageError as e:
            logger.error("Rate limit check failed: %s", e)
            return [], [
                IngestionError(
                    code="rate_limit_unavailable",
                    message="Could not check rate limit",
                    kind=ErrorKind.STORAGE,
                )
            ]

        context = parse_context(client.user_agent)
        # Events sent without a session id share one for this request
        request_session = secrets.token_hex(16)

        records = [
            PageviewRecord(
                id=uuid4(),
                site_id=p.site_id,
                event_type=p.event_type,
                path=p.path,
                visitor_id=visitor_id,
                occurred_at=p.occurred_at,
                received_at=now,
                referrer=p.referrer,
                custom_data=p.custom_data,
                session_id=p.session_id or request_session,
                page_count=p.page_count,
                utm_source=p.utm.source,
                utm_medium=p.utm.medium,
                utm_campaign=p.utm.campaign,
                context_device=context.device,
                context_browser=context.browser,
                context_os=context.os,
                context_country=client.country,
                context_region=client.region,
            )
            for p in valid
        ]

        try:
            self._store.store_many(records)
        except StorageError as e:
            logger.error("Failed to persist %d record(s): %s", len(records), e)
            return [], [
                IngestionError(
                    code="storage_failed",
                    message="Could not store event",
                    kind=ErrorKind.STORAGE,
                )
            ]

        return records, []


def _index_error(error: IngestionError, index: int) -> IngestionError:
    """Prefix an error's field with its position in a batch."""
    field_name = f"[{index}].{error.field_name}" if error.field_name else f"[{index}]"
    return IngestionError(
        code=error.code,
        message=error.message,
        field_name=field_name,
        kind=error.kind,
    )


# --- Factory ---


def create_ingestion_service(
    store: PageviewStorePort,
    anonymizer: AnonymizationService,
    rate_limiter: RateLimiterPort | None = None,
    site_policy: SitePolicyPort | None = None,
    time_port: TimePort | None = None,
    config: IngestionConfig | None = None,
) -> IngestionService:
    """Create an IngestionService."""
    return IngestionService(
        store=store,
        anonymizer=anonymizer,
        rate_limiter=rate_limiter,
        site_policy=site_policy,
        time_port=time_port,
        config=config,
    )
