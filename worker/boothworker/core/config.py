"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from boothworker.core.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    crawl_provider_url: str = "https://api.firecrawl.dev/v1"
    crawl_provider_api_key: str = ""
    extraction_service_url: str = ""
    webhook_base_url: str = ""
    worker_port: int = 9000
    default_max_pages: int = 3
    http_timeout_seconds: float = 30.0
    max_jobs_per_source: int = 1
    max_jobs_global: int = 10
    staleness_minutes: int = 30
    processing_lease_minutes: int = 15
    dedup_radius_m: float = 50.0
    dedup_final_radius_m: float = 15.0
    dedup_max_passes: int = 3
    name_similarity_threshold: float = 0.8
    name_min_length_ratio: float = 0.4
    name_similarity_scorer: str = "heuristic"
    quality_threshold: int = 80
    worker_pool_size: int = 4
    worker_queue_size: int = 32
    rate_limit_per_second: float = 2.0
    rate_limit_burst: int = 4
    progress_poll_seconds: float = 2.0
    default_phone_region: Optional[str] = None

    @property
    def webhook_url(self) -> str:
        if not self.webhook_base_url:
            return ""
        return f"{self.webhook_base_url.rstrip('/')}/webhooks/crawl"

    def require(self, name: str) -> str:
        """Return a mandatory string setting or raise ConfigError."""
        value = getattr(self, name, None)
        if not value:
            raise ConfigError(f"{name.upper()} must be configured for this operation.")
        return value


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    crawl_provider_api_key = os.getenv("CRAWL_PROVIDER_API_KEY", "")
    extraction_service_url = os.getenv("EXTRACTION_SERVICE_URL", "")
    webhook_base_url = os.getenv("WEBHOOK_BASE_URL", "")
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw else None

    if not database_url:
        logger.warning("DATABASE_URL is not set; falling back to in-memory stores.")
    if not crawl_provider_api_key:
        logger.warning("CRAWL_PROVIDER_API_KEY is not configured; crawl requests will fail.")
    if not extraction_service_url:
        logger.warning("EXTRACTION_SERVICE_URL is not configured; extraction will fail.")
    if not webhook_base_url:
        logger.warning("WEBHOOK_BASE_URL is not configured; crawls cannot report progress.")

    return Settings(
        database_url=database_url,
        crawl_provider_url=os.getenv("CRAWL_PROVIDER_URL", "https://api.firecrawl.dev/v1"),
        crawl_provider_api_key=crawl_provider_api_key,
        extraction_service_url=extraction_service_url,
        webhook_base_url=webhook_base_url,
        worker_port=_int_env("WORKER_PORT", 9000),
        default_max_pages=_int_env("WORKER_MAX_PAGES", 3),
        http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        max_jobs_per_source=_int_env("MAX_JOBS_PER_SOURCE", 1),
        max_jobs_global=_int_env("MAX_JOBS_GLOBAL", 10),
        staleness_minutes=_int_env("STALENESS_MINUTES", 30),
        processing_lease_minutes=_int_env("PROCESSING_LEASE_MINUTES", 15),
        dedup_radius_m=_float_env("DEDUP_RADIUS_M", 50.0),
        dedup_final_radius_m=_float_env("DEDUP_FINAL_RADIUS_M", 15.0),
        dedup_max_passes=_int_env("DEDUP_MAX_PASSES", 3),
        name_similarity_threshold=_float_env("NAME_SIMILARITY_THRESHOLD", 0.8),
        name_min_length_ratio=_float_env("NAME_MIN_LENGTH_RATIO", 0.4),
        name_similarity_scorer=os.getenv("NAME_SIMILARITY_SCORER", "heuristic").strip().lower(),
        quality_threshold=_int_env("QUALITY_THRESHOLD", 80),
        worker_pool_size=_int_env("WORKER_POOL_SIZE", 4),
        worker_queue_size=_int_env("WORKER_QUEUE_SIZE", 32),
        rate_limit_per_second=_float_env("RATE_LIMIT_PER_SECOND", 2.0),
        rate_limit_burst=_int_env("RATE_LIMIT_BURST", 4),
        progress_poll_seconds=_float_env("PROGRESS_POLL_SECONDS", 2.0),
        default_phone_region=default_phone_region,
    )
