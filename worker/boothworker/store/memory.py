"""In-memory stores with the same interface as the PostgreSQL ones.

Used when ``DATABASE_URL`` is not configured (local development) and by the
test-suite. Each store guards its state with one lock, so the semantics the
database gets from conditional updates and row locks hold here as well.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from boothworker.dedup.geo import bounding_box
from boothworker.etl.transform import address_key
from boothworker.jobs.state import ACTIVE_STATUSES, STALE_CANDIDATE_STATUSES, sources_for
from boothworker.models import CanonicalEntity, CrawlJob, CrawlSource, JobStatus
from boothworker.store.jobs import JobTransitions


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore(JobTransitions):
    def __init__(self, clock=_utcnow) -> None:
        self._jobs: Dict[str, CrawlJob] = {}
        self._raw_pages: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._clock = clock

    def _touch(self, job: CrawlJob) -> None:
        now = self._clock()
        if job.updated_at is not None and now <= job.updated_at:
            now = job.updated_at + timedelta(microseconds=1)
        job.updated_at = now

    def _guarded(self, job_id: str, from_states: Sequence[JobStatus], mutate) -> Optional[CrawlJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in from_states:
                return None
            mutate(job)
            self._touch(job)
            return replace(job)

    def create_job(self, job: CrawlJob) -> CrawlJob:
        with self._lock:
            existing = self._jobs.get(job.job_id)
            if existing is not None:
                return replace(existing)
            stored = replace(job)
            stored.created_at = self._clock()
            self._touch(stored)
            self._jobs[job.job_id] = stored
            return replace(stored)

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def mark_started(self, job_id: str) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.status = JobStatus.CRAWLING
            job.started_at = job.started_at or self._clock()

        return self._guarded(job_id, sources_for(JobStatus.CRAWLING), mutate)

    def increment_pages(self, job_id: str) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.status = JobStatus.CRAWLING
            job.started_at = job.started_at or self._clock()
            job.pages_crawled += 1

        return self._guarded(job_id, sources_for(JobStatus.CRAWLING), mutate)

    def raise_pages(self, job_id: str, pages: int) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.pages_crawled = max(job.pages_crawled, pages)

        return self._guarded(job_id, ACTIVE_STATUSES, mutate)

    def mark_processing(self, job_id: str) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.status = JobStatus.PROCESSING
            began = job.started_at or job.created_at or self._clock()
            job.crawl_duration_ms = int((self._clock() - began).total_seconds() * 1000)
            job.claimed_by = None
            job.claimed_at = None

        return self._guarded(job_id, sources_for(JobStatus.PROCESSING), mutate)

    def claim_for_processing(self, job_id: str, worker_id: str, lease_seconds: int) -> Optional[CrawlJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                return None
            now = self._clock()
            lease_expired = job.claimed_at is not None and job.claimed_at < now - timedelta(seconds=lease_seconds)
            if job.claimed_by not in (None, worker_id) and not lease_expired:
                return None
            job.claimed_by = worker_id
            job.claimed_at = now
            self._touch(job)
            return replace(job)

    def complete_job(
        self,
        job_id: str,
        *,
        found: int,
        added: int,
        updated: int,
        extraction_time_ms: Optional[int] = None,
    ) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.status = JobStatus.COMPLETED
            job.booths_found = found
            job.booths_added = added
            job.booths_updated = updated
            job.extraction_time_ms = extraction_time_ms
            job.error_message = None
            job.completed_at = self._clock()

        return self._guarded(job_id, sources_for(JobStatus.COMPLETED), mutate)

    def fail_job(self, job_id: str, message: str) -> Optional[CrawlJob]:
        def mutate(job: CrawlJob) -> None:
            job.status = JobStatus.FAILED
            job.error_message = message
            job.completed_at = self._clock()

        return self._guarded(job_id, sources_for(JobStatus.FAILED), mutate)

    def save_raw_page(self, job: CrawlJob, page: Dict[str, Any]) -> None:
        with self._lock:
            self._raw_pages.append({"job_id": job.job_id, "source_id": job.source_id, **page})

    def raw_pages(self, job_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(page) for page in self._raw_pages if page["job_id"] == job_id]

    def count_active(self, source_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status in ACTIVE_STATUSES and (source_id is None or job.source_id == source_id)
            )

    def list_jobs(self, statuses: Sequence[JobStatus] = ACTIVE_STATUSES) -> List[CrawlJob]:
        with self._lock:
            jobs = [replace(job) for job in self._jobs.values() if job.status in statuses]
        return sorted(jobs, key=lambda job: job.created_at)

    def list_stale(self, minutes: int) -> List[CrawlJob]:
        cutoff = self._clock() - timedelta(minutes=minutes)
        with self._lock:
            jobs = [
                replace(job)
                for job in self._jobs.values()
                if job.status in STALE_CANDIDATE_STATUSES and job.updated_at < cutoff
            ]
        return sorted(jobs, key=lambda job: job.updated_at)

    def list_orphaned_processing(self, lease_seconds: int) -> List[CrawlJob]:
        cutoff = self._clock() - timedelta(seconds=lease_seconds)
        with self._lock:
            return [
                replace(job)
                for job in self._jobs.values()
                if job.status is JobStatus.PROCESSING and (job.claimed_by is None or job.claimed_at < cutoff)
            ]


class InMemorySourceRegistry:
    def __init__(self, sources: Iterable[CrawlSource] = ()) -> None:
        self._sources: Dict[str, CrawlSource] = {source.id: replace(source) for source in sources}
        self._lock = threading.Lock()

    def add(self, source: CrawlSource) -> None:
        with self._lock:
            self._sources[source.id] = replace(source)

    def get_source(self, source_id: str) -> Optional[CrawlSource]:
        with self._lock:
            source = self._sources.get(source_id)
            return replace(source) if source else None

    def find_by_name(self, source_name: str) -> Optional[CrawlSource]:
        with self._lock:
            for source in self._sources.values():
                if source.source_name == source_name:
                    return replace(source)
        return None

    def list_enabled(self) -> List[CrawlSource]:
        with self._lock:
            enabled = [replace(source) for source in self._sources.values() if source.enabled]
        return sorted(enabled, key=lambda source: (-source.priority, source.source_name))

    def mark_crawl_started(self, source_id: str) -> None:
        with self._lock:
            source = self._sources.get(source_id)
            if source is not None:
                source.last_crawl_timestamp = _utcnow()
                source.crawl_completed = False
                source.status = "crawling"

    def mark_crawl_finished(self, source_id: str, succeeded: bool) -> None:
        with self._lock:
            source = self._sources.get(source_id)
            if source is not None:
                source.crawl_completed = succeeded
                source.status = "completed" if succeeded else "failed"


class InMemoryEntitySession:
    def __init__(self, store: "InMemoryEntityStore") -> None:
        self._store = store

    def lock_bands(self, keys: Iterable[int]) -> None:
        """The store-wide lock already serialises sessions."""

    def lock_address(self, city: str, key: str) -> None:
        """The store-wide lock already serialises sessions."""

    def lock_slug(self, base: str) -> None:
        """The store-wide lock already serialises sessions."""

    def find_nearby(self, lat: float, lon: float, radius_m: float) -> List[CanonicalEntity]:
        min_lat, min_lon, max_lat, max_lon = bounding_box(lat, lon, radius_m)
        return [
            copy.deepcopy(entity)
            for entity in self._store.sorted_rows()
            if entity.has_coordinates
            and min_lat <= entity.latitude <= max_lat
            and min_lon <= entity.longitude <= max_lon
        ]

    def find_by_address(self, city: str, key: str) -> List[CanonicalEntity]:
        return [
            copy.deepcopy(entity)
            for entity in self._store.sorted_rows()
            if entity.city.lower() == city.lower() and address_key(entity.address) == key
        ]

    def lock_entities(self, ids: Iterable[int]) -> List[CanonicalEntity]:
        wanted = set(ids)
        return [copy.deepcopy(entity) for entity in self._store.sorted_rows() if entity.id in wanted]

    def slug_taken(self, slug: str) -> bool:
        return any(entity.slug == slug for entity in self._store.rows.values())

    def insert(self, entity: CanonicalEntity) -> CanonicalEntity:
        if self.slug_taken(entity.slug):
            raise ValueError(f"duplicate slug {entity.slug}")
        stored = copy.deepcopy(entity)
        stored.id = self._store.next_id()
        stored.version = 0
        stored.created_at = stored.updated_at = _utcnow()
        self._store.rows[stored.id] = stored
        return copy.deepcopy(stored)

    def update(self, entity: CanonicalEntity, expected_version: int) -> Optional[CanonicalEntity]:
        current = self._store.rows.get(entity.id)
        if current is None or current.version != expected_version:
            return None
        stored = copy.deepcopy(entity)
        stored.version = expected_version + 1
        stored.created_at = current.created_at
        stored.updated_at = _utcnow()
        self._store.rows[stored.id] = stored
        return copy.deepcopy(stored)

    def delete(self, ids: Iterable[int]) -> int:
        removed = 0
        for entity_id in set(ids):
            if self._store.rows.pop(entity_id, None) is not None:
                removed += 1
        return removed


class InMemoryEntityStore:
    def __init__(self) -> None:
        self.rows: Dict[int, CanonicalEntity] = {}
        self._sequence = 0
        self._lock = threading.RLock()

    def next_id(self) -> int:
        self._sequence += 1
        return self._sequence

    def sorted_rows(self) -> List[CanonicalEntity]:
        return [self.rows[key] for key in sorted(self.rows)]

    @contextmanager
    def session(self) -> Iterator[InMemoryEntitySession]:
        with self._lock:
            snapshot = copy.deepcopy(self.rows), self._sequence
            try:
                yield InMemoryEntitySession(self)
            except Exception:
                self.rows, self._sequence = snapshot
                raise

    def get(self, entity_id: int) -> Optional[CanonicalEntity]:
        with self._lock:
            entity = self.rows.get(entity_id)
            return copy.deepcopy(entity) if entity else None

    def list_entities(self, city: Optional[str] = None, with_coordinates: bool = False) -> List[CanonicalEntity]:
        with self._lock:
            return [
                copy.deepcopy(entity)
                for entity in self.sorted_rows()
                if (city is None or entity.city.lower() == city.lower())
                and (not with_coordinates or entity.has_coordinates)
            ]

    def count(self) -> int:
        with self._lock:
            return len(self.rows)
