from typing import Literal

from pydantic import BaseModel, Field


class ProjectRules(BaseModel):
    slug: str
    rules_version: str


class IngestionRules(BaseModel):
    allowed_event_types: list[str] = Field(
        default_factory=lambda: ["pageview", "event", "engagement", "heartbeat"]
    )
    forbidden_fields: list[str]
    max_timestamp_age_seconds: int = 86400
    max_timestamp_future_seconds: int = 60
    max_batch_events: int = 50
    max_custom_data_keys: int = 32
    max_string_length: int = 2048
    # Reverse proxies in front of the app that append to X-Forwarded-For;
    # 0 ignores the header and uses the socket peer
    trusted_proxy_hops: int = Field(0, ge=0)

class PiiPatternRules(BaseModel):
    email: bool = True
    ipv4: bool = True
    phone: bool = True

class RateLimitWindow(BaseModel):
    window_seconds: int
    max_requests: int

class RateLimitRules(BaseModel):
    # sqlite is shared by every worker on the host; memory is per process
    store: Literal["sqlite", "memory"] = "sqlite"
    track: RateLimitWindow
    purge_interval_seconds: int = Field(300, ge=1)

class AnonymizationRules(BaseModel):
    visitor_id_length: int = Field(16, ge=8, le=64)
    pii_patterns: PiiPatternRules = Field(default_factory=PiiPatternRules)

class CollectorRules(BaseModel):
    endpoint: str = "https://ztas.io/api/track"
    batch_size: int = Field(10, ge=1)
    flush_interval_ms: int = Field(5000, ge=1)
    max_queue_size: int = Field(500, ge=1)
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(2000, ge=0)
    beacon_max_bytes: int = 65536

class OpsRules(BaseModel):
    data_dir_required: bool
    required_env: list[str]
    required_env_in_production: list[str] = Field(default_factory=list)

class Rules(BaseModel):
    project: ProjectRules
    ingestion: IngestionRules
    anonymization: AnonymizationRules
    rate_limits: RateLimitRules
    collector: CollectorRules
    ops: OpsRules
