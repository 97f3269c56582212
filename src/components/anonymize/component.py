"""
Anonymize component - Day-scoped, one-way visitor identity.

Invariants:
- I1: Same (ip, user agent, UTC day) always yields the same visitor id
- I2: Ids for different days are unrelated
- I3: Neither the id nor the rate-limit key reveals the IP
- I4: No id is derived without a valid client IP
"""

from __future__ import annotations

from src.rules.models import Rules

from ._impl import (
    AnonymizationConfig,
    AnonymizationService,
    TimePort,
    create_anonymization_service,
)


def build_config(rules: Rules | None) -> AnonymizationConfig:
    """Build anonymization config from the rules file."""
    if rules is None:
        return AnonymizationConfig()
    return AnonymizationConfig(visitor_id_length=rules.anonymization.visitor_id_length)


def build_anonymizer(
    root_key: bytes | str,
    rules: Rules | None = None,
    time_port: TimePort | None = None,
) -> AnonymizationService:
    """Create the service from a root key and the rules file."""
    return create_anonymization_service(root_key, time_port=time_port, config=build_config(rules))
