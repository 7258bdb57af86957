"""Process-wide wiring: build every collaborator once and hand them out explicitly."""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from boothworker.core.config import Settings
from boothworker.core.db import Database
from boothworker.core.workers import TokenBucket, WorkerPool
from boothworker.dedup.engine import DeduplicationEngine
from boothworker.dedup.ingest import CanonicalIngestor
from boothworker.dedup.similarity import build_similarity
from boothworker.jobs.orchestrator import JobOrchestrator
from boothworker.jobs.webhook import WebhookHandler
from boothworker.quality.scorer import QualityScorer
from boothworker.store.entities import PostgresEntityStore
from boothworker.store.jobs import PostgresJobStore
from boothworker.store.memory import InMemoryEntityStore, InMemoryJobStore, InMemorySourceRegistry
from boothworker.store.sources import PostgresSourceRegistry
from boothworker.vendors.crawl_provider import CrawlProviderClient
from boothworker.vendors.extraction import ExtractionClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    jobs: Any
    sources: Any
    entities: Any
    quality: QualityScorer
    engine: DeduplicationEngine
    orchestrator: JobOrchestrator
    webhook: WebhookHandler
    executor: Executor
    pool: Optional[WorkerPool] = None
    database: Optional[Database] = None

    def close(self) -> None:
        if self.pool is not None:
            self.pool.shutdown(wait=False)
        self.executor.shutdown(wait=False)
        if self.database is not None:
            self.database.close()


def build_services(
    settings: Settings,
    *,
    jobs=None,
    sources=None,
    entities=None,
    provider=None,
    extractor=None,
    executor: Optional[Executor] = None,
    pool: Optional[WorkerPool] = None,
) -> Services:
    """Wire stores, clients and handlers; PostgreSQL when configured, in-memory otherwise."""
    database = None
    if jobs is None or sources is None or entities is None:
        if settings.database_url:
            database = Database(settings)
            database.init_pool()
            jobs = jobs or PostgresJobStore(database)
            sources = sources or PostgresSourceRegistry(database)
            entities = entities or PostgresEntityStore(database)
        else:
            logger.warning("Using in-memory stores; nothing will survive a restart.")
            jobs = jobs or InMemoryJobStore()
            sources = sources or InMemorySourceRegistry()
            entities = entities or InMemoryEntityStore()

    quality = QualityScorer(default_region=settings.default_phone_region, threshold=settings.quality_threshold)
    similarity = build_similarity(settings)
    executor = executor or ThreadPoolExecutor(max_workers=settings.worker_pool_size)
    if pool is None:
        pool = WorkerPool(
            size=settings.worker_pool_size,
            queue_size=settings.worker_queue_size,
            limiter=TokenBucket(settings.rate_limit_per_second, settings.rate_limit_burst),
            name="crawl-start",
        )

    orchestrator = JobOrchestrator(
        settings,
        jobs=jobs,
        sources=sources,
        provider=provider or CrawlProviderClient(settings),
        extractor=extractor or ExtractionClient(settings),
        ingestor=CanonicalIngestor(settings, entities, similarity=similarity, quality=quality),
        executor=executor,
        pool=pool,
    )
    return Services(
        settings=settings,
        jobs=jobs,
        sources=sources,
        entities=entities,
        quality=quality,
        engine=DeduplicationEngine(settings, entities, similarity=similarity, quality=quality),
        orchestrator=orchestrator,
        webhook=WebhookHandler(jobs, orchestrator),
        executor=executor,
        pool=pool,
        database=database,
    )
