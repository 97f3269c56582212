"""
Analytics component - Anonymized event ingestion.
"""

from ._impl import (
    DEFAULT_CONFIG,
    AllowAllSitePolicy,
    IngestionConfig,
    IngestionService,
    InMemoryPageviewStore,
    StaticSitePolicy,
    create_ingestion_service,
    detect_pii,
    parse_context,
    parse_geo,
    resolve_timestamp,
    sanitize_path,
    sanitize_referrer,
    validate_custom_data,
    validate_event_type,
    validate_forbidden_fields,
    validate_location_fields,
    validate_page_count,
    validate_payload,
    validate_required_string,
    validate_session_id,
    validate_utm,
)
from .component import build_config, run_ingest
from .models import (
    ClientContext,
    DeviceContext,
    ErrorKind,
    EventType,
    IngestInput,
    IngestionError,
    IngestOutput,
    PageviewRecord,
    SiteStatus,
    StorageError,
    TrackPayload,
    Utm,
)
from .ports import (
    PageviewStorePort,
    RateLimiterPort,
    SitePolicyPort,
    TimePort,
)

__all__ = [
    # Entry points
    "build_config",
    "run_ingest",
    # Models
    "ClientContext",
    "DeviceContext",
    "ErrorKind",
    "EventType",
    "IngestInput",
    "IngestionError",
    "IngestOutput",
    "PageviewRecord",
    "SiteStatus",
    "StorageError",
    "TrackPayload",
    "Utm",
    # Ports
    "PageviewStorePort",
    "RateLimiterPort",
    "SitePolicyPort",
    "TimePort",
    # Service and defaults
    "DEFAULT_CONFIG",
    "AllowAllSitePolicy",
    "IngestionConfig",
    "IngestionService",
    "InMemoryPageviewStore",
    "StaticSitePolicy",
    "create_ingestion_service",
    # Validation
    "detect_pii",
    "parse_context",
    "parse_geo",
    "resolve_timestamp",
    "sanitize_path",
    "sanitize_referrer",
    "validate_custom_data",
    "validate_event_type",
    "validate_forbidden_fields",
    "validate_location_fields",
    "validate_page_count",
    "validate_payload",
    "validate_required_string",
    "validate_session_id",
    "validate_utm",
]
