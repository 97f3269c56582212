"""
Anonymize component - Day-scoped, one-way visitor identity.
"""

from ._impl import (
    DEFAULT_CONFIG,
    AnonymizationConfig,
    AnonymizationError,
    AnonymizationService,
    DailySecret,
    DailySecretProvider,
    DefaultTimePort,
    MissingClientAddressError,
    TimePort,
    create_anonymization_service,
    derive_secret,
    normalize_ip,
    utc_day,
)
from .component import build_anonymizer, build_config

__all__ = [
    # Service
    "AnonymizationService",
    "create_anonymization_service",
    "build_anonymizer",
    "build_config",
    # Secrets
    "DailySecret",
    "DailySecretProvider",
    "derive_secret",
    # Config
    "AnonymizationConfig",
    "DEFAULT_CONFIG",
    # Errors
    "AnonymizationError",
    "MissingClientAddressError",
    # Helpers
    "normalize_ip",
    "utc_day",
    # Ports
    "TimePort",
    "DefaultTimePort",
]
