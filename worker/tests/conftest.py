import sys
from pathlib import Path

import pytest

# Ensure the `boothworker` package is importable when running pytest from the worker directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from boothworker.core.config import Settings  # noqa: E402
from boothworker.core.errors import ExternalServiceError  # noqa: E402
from boothworker.dedup.ingest import CanonicalIngestor  # noqa: E402
from boothworker.jobs.orchestrator import JobOrchestrator  # noqa: E402
from boothworker.jobs.webhook import WebhookHandler  # noqa: E402
from boothworker.models import CrawlSource  # noqa: E402
from boothworker.store.memory import InMemoryEntityStore, InMemoryJobStore, InMemorySourceRegistry  # noqa: E402
from boothworker.vendors.crawl_provider import CrawlStatus  # noqa: E402


class DummyProvider:
    """Stands in for the crawl provider; records calls and replays canned results."""

    def __init__(self):
        self.started = []
        self.cancelled = []
        self.next_job_id = 1
        self.results = {}
        self.statuses = {}
        self.fetch_error = None
        self.start_error = None
        self.seen_in_store = []
        self.store = None

    def start_crawl(self, url, limit, webhook_url, on_accepted=None, metadata=None):
        if self.start_error is not None:
            raise self.start_error
        job_id = f"job-{self.next_job_id}"
        self.next_job_id += 1
        self.started.append({"url": url, "limit": limit, "webhook_url": webhook_url, "metadata": metadata})
        if on_accepted is not None:
            on_accepted(job_id)
        if self.store is not None:
            self.seen_in_store.append(self.store.get_job(job_id) is not None)
        return job_id

    def fetch_results(self, job_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return CrawlStatus(job_id=job_id, status="completed", pages=list(self.results.get(job_id, [])))

    def get_status(self, job_id):
        status = self.statuses.get(job_id)
        if status is None:
            raise ExternalServiceError("unknown job at provider")
        return status

    def cancel(self, job_id):
        self.cancelled.append(job_id)


class DummyExtractor:
    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error
        self.calls = []

    def extract(self, pages, source_metadata):
        self.calls.append((pages, source_metadata))
        if self.error is not None:
            raise self.error
        return list(self.candidates)


class InlineExecutor:
    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args))
        return fn(*args, **kwargs)

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def settings():
    return Settings(
        crawl_provider_api_key="test-key",
        extraction_service_url="http://extractor.local/extract",
        webhook_base_url="https://worker.example.com",
    )


@pytest.fixture
def source():
    return CrawlSource(
        id="src-1",
        source_name="photobooth.net",
        source_url="https://www.photobooth.net/locations/",
        extractor_type="photobooth_net",
        priority=90,
        crawl_frequency_days=7,
    )


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def source_registry(source):
    return InMemorySourceRegistry([source])


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def provider(job_store):
    provider = DummyProvider()
    provider.store = job_store
    return provider


@pytest.fixture
def extractor():
    return DummyExtractor()


@pytest.fixture
def orchestrator(settings, job_store, source_registry, entity_store, provider, extractor):
    return JobOrchestrator(
        settings,
        jobs=job_store,
        sources=source_registry,
        provider=provider,
        extractor=extractor,
        ingestor=CanonicalIngestor(settings, entity_store),
        executor=InlineExecutor(),
    )


@pytest.fixture
def webhook(job_store, orchestrator):
    return WebhookHandler(job_store, orchestrator)
