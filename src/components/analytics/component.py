"""
Analytics component - Anonymized event ingestion.

Ingests tracking payloads, screens them for personal data and persists one
anonymized record per accepted event.

Invariants:
- I1: No raw IP, user agent or client identifier is persisted
- I2: Forbidden fields and PII-looking values are rejected, not sanitized
- I3: Visitor ids are day-scoped and cannot be linked across days
- I4: A rejected request has no persistence side effect
"""

from __future__ import annotations

from src.components.anonymize import AnonymizationService
from src.rules.models import Rules

from ._impl import IngestionConfig, IngestionService
from .models import IngestInput, IngestOutput
from .ports import PageviewStorePort, RateLimiterPort, SitePolicyPort, TimePort


def build_config(rules: Rules | None) -> IngestionConfig:
    """Build ingestion config from the rules file."""
    if rules is None:
        return IngestionConfig()

    ingestion = rules.ingestion
    patterns = rules.anonymization.pii_patterns
    track_limit = rules.rate_limits.track

    return IngestionConfig(
        rate_limit_window_seconds=track_limit.window_seconds,
        rate_limit_max_requests=track_limit.max_requests,
        rate_limit_purge_interval_seconds=rules.rate_limits.purge_interval_seconds,
        allowed_event_types=frozenset(ingestion.allowed_event_types),
        forbidden_fields=frozenset(f.lower() for f in ingestion.forbidden_fields),
        detect_email=patterns.email,
        detect_ipv4=patterns.ipv4,
        detect_phone=patterns.phone,
        max_timestamp_age_seconds=ingestion.max_timestamp_age_seconds,
        max_timestamp_future_seconds=ingestion.max_timestamp_future_seconds,
        max_batch_events=ingestion.max_batch_events,
        max_custom_data_keys=ingestion.max_custom_data_keys,
        max_string_length=ingestion.max_string_length,
    )


# --- Component Entry Points ---


def run_ingest(
    inp: IngestInput,
    *,
    store: PageviewStorePort,
    anonymizer: AnonymizationService,
    rate_limiter: RateLimiterPort | None = None,
    site_policy: SitePolicyPort | None = None,
    time_port: TimePort | None = None,
    rules: Rules | None = None,
) -> IngestOutput:
    """
    Ingest tracking payloads.

    Args:
        inp: Payloads plus the caller's network context.
        store: Record store port.
        anonymizer: Visitor id service.
        rate_limiter: Optional rate limiter port.
        site_policy: Optional site/quota port.
        time_port: Optional time port.
        rules: Optional rules for configuration.

    Returns:
        IngestOutput with stored records or rejection errors.
    """
    service = IngestionService(
        store=store,
        anonymizer=anonymizer,
        rate_limiter=rate_limiter,
        site_policy=site_policy,
        time_port=time_port,
        config=build_config(rules),
    )

    records, errors = service.ingest(
        inp.payloads,
        client=inp.client,
        is_batch=inp.is_batch,
    )

    return IngestOutput(records=tuple(records), errors=errors)
