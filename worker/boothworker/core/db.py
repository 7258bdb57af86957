"""Database helpers for the worker."""

import logging
from contextlib import contextmanager
from typing import Optional

from psycopg2 import extras, pool

from boothworker.core.config import Settings

logger = logging.getLogger(__name__)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS crawl_sources (
    id TEXT PRIMARY KEY,
    source_name TEXT NOT NULL UNIQUE,
    source_url TEXT NOT NULL,
    extractor_type TEXT NOT NULL DEFAULT 'generic',
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    priority INTEGER NOT NULL DEFAULT 0,
    crawl_frequency_days INTEGER,
    last_crawl_timestamp TIMESTAMPTZ,
    crawl_completed BOOLEAN NOT NULL DEFAULT FALSE,
    pages_per_batch INTEGER,
    status TEXT
);

CREATE TABLE IF NOT EXISTS crawl_jobs (
    job_id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES crawl_sources (id),
    source_name TEXT,
    source_url TEXT,
    extractor_type TEXT,
    status TEXT NOT NULL DEFAULT 'queued',
    pages_crawled INTEGER NOT NULL DEFAULT 0,
    booths_found INTEGER NOT NULL DEFAULT 0,
    booths_added INTEGER NOT NULL DEFAULT 0,
    booths_updated INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    page_limit INTEGER,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    crawl_duration_ms BIGINT,
    extraction_time_ms BIGINT,
    claimed_by TEXT,
    claimed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS crawl_jobs_status_idx ON crawl_jobs (status, updated_at);

CREATE TABLE IF NOT EXISTS crawl_raw_content (
    id BIGSERIAL PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES crawl_jobs (job_id),
    source_id TEXT NOT NULL,
    url TEXT,
    raw_markdown TEXT,
    raw_html TEXT,
    metadata JSONB,
    crawled_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS booths (
    id BIGSERIAL PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    address TEXT,
    address_key TEXT,
    city TEXT NOT NULL,
    state TEXT,
    country TEXT NOT NULL,
    postal_code TEXT,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    status TEXT NOT NULL DEFAULT 'unverified',
    description TEXT,
    hours TEXT,
    cost TEXT,
    phone TEXT,
    website TEXT,
    photo_exterior_url TEXT,
    photo_interior_url TEXT,
    photos TEXT[] NOT NULL DEFAULT '{}',
    machine_model TEXT,
    machine_manufacturer TEXT,
    booth_type TEXT,
    source_names TEXT[] NOT NULL DEFAULT '{}',
    source_urls TEXT[] NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS booths_lat_lng_idx ON booths (latitude, longitude);
CREATE INDEX IF NOT EXISTS booths_address_key_idx ON booths (city, address_key);
"""


class Database:
    """Owns the connection pool; created once at process start and injected."""

    def __init__(self, settings: Settings, minconn: int = 1, maxconn: int = 5) -> None:
        self._settings = settings
        self._minconn = minconn
        self._maxconn = maxconn
        self._pool: Optional[pool.SimpleConnectionPool] = None

    def init_pool(self) -> pool.SimpleConnectionPool:
        """Initialise and return the connection pool."""
        if self._pool is None:
            if not self._settings.database_url:
                raise RuntimeError("DATABASE_URL is required for database connections")
            self._pool = pool.SimpleConnectionPool(
                self._minconn,
                self._maxconn,
                dsn=self._settings.database_url,
                connect_timeout=10,
            )
            logger.info("Database connection pool initialised")
        return self._pool

    @contextmanager
    def connection(self):
        """Context manager yielding a pooled connection."""
        pg_pool = self.init_pool()
        conn = pg_pool.getconn()
        try:
            yield conn
        finally:
            pg_pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """Yield a dict cursor; commit on success, roll back on any error."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def ensure_schema(self) -> None:
        with self.transaction() as cur:
            cur.execute(SCHEMA_DDL)
        logger.info("Database schema ensured")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
