import logging
import os
from functools import lru_cache
from pathlib import Path

from fastapi import Depends

from src.adapters.clock import SystemClock
from src.adapters.sqlite_db import SQLitePageviewStore, SQLiteRateLimitStore
from src.app_shell.rate_limit import RateLimiter
from src.components.analytics import (
    AllowAllSitePolicy,
    IngestionService,
    StaticSitePolicy,
    build_config,
    create_ingestion_service,
)
from src.components.analytics.ports import RateLimiterPort, SitePolicyPort
from src.components.anonymize import AnonymizationService, build_anonymizer
from src.rules.loader import load_rules
from src.rules.models import Rules

logger = logging.getLogger(__name__)

# Only ever used outside production; production requires ZTA_HASH_SECRET
DEV_HASH_SECRET = "zta-development-only-secret"


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.data_dir = Path(os.environ.get("ZTA_DATA_DIR", "./data"))
        self.db_path = str(self.data_dir / "zta.db")
        self.migrations_dir = self.base_dir / "migrations"
        self.rules_path = Path(os.environ.get("ZTA_RULES_PATH", str(self.base_dir / "rules.yaml")))
        self.environment = os.environ.get("ZTA_ENV", "development")
        self.hash_secret = os.environ.get("ZTA_HASH_SECRET", "")
        self.site_ids = frozenset(
            s.strip() for s in os.environ.get("ZTA_SITE_IDS", "").split(",") if s.strip()
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
@lru_cache
def get_rules(settings: Settings = Depends(get_settings)) -> Rules:
    return load_rules(settings.rules_path)


# --- Stores ---
def get_pageview_store(settings: Settings = Depends(get_settings)) -> SQLitePageviewStore:
    return SQLitePageviewStore(settings.db_path)


@lru_cache
def get_rate_limiter(settings: Settings = Depends(get_settings)) -> RateLimiterPort:
    rules = get_rules(settings)
    if rules.rate_limits.store == "memory":
        return RateLimiter(clock=SystemClock().epoch_seconds)
    return SQLiteRateLimitStore(settings.db_path, clock=SystemClock().epoch_seconds)


@lru_cache
def get_site_policy(settings: Settings = Depends(get_settings)) -> SitePolicyPort:
    if settings.site_ids:
        return StaticSitePolicy(settings.site_ids)
    return AllowAllSitePolicy()


# --- Services ---
@lru_cache
def get_anonymizer(settings: Settings = Depends(get_settings)) -> AnonymizationService:
    secret = settings.hash_secret
    if not secret:
        logger.warning("ZTA_HASH_SECRET not set; using the development secret")
        secret = DEV_HASH_SECRET

    return build_anonymizer(secret, get_rules(settings), time_port=SystemClock())


def get_ingestion_service(
    settings: Settings = Depends(get_settings),
    store: SQLitePageviewStore = Depends(get_pageview_store),
    rate_limiter: RateLimiterPort = Depends(get_rate_limiter),
    site_policy: SitePolicyPort = Depends(get_site_policy),
    anonymizer: AnonymizationService = Depends(get_anonymizer),
) -> IngestionService:
    """Get ingestion service dependency."""
    return create_ingestion_service(
        store=store,
        anonymizer=anonymizer,
        rate_limiter=rate_limiter,
        site_policy=site_policy,
        time_port=SystemClock(),
        config=build_config(get_rules(settings)),
    )
