"""Crawl job orchestration: start jobs, process finished crawls, reconcile with the provider.

All job state lives in the Job Store. The orchestrator and the webhook handler
never share memory, so either can restart at any point; ``reconcile`` picks up
whatever was in flight.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from boothworker.core.config import Settings
from boothworker.core.errors import ExternalServiceError, ExtractionError, JobLimitExceeded, SourceUnavailable
from boothworker.etl.transform import normalize_pages
from boothworker.models import CrawlJob, CrawlSource, JobStatus
from boothworker.store.sources import is_due

logger = logging.getLogger(__name__)

_PROGRESS_TYPES = {
    JobStatus.QUEUED: "start",
    JobStatus.CRAWLING: "progress",
    JobStatus.PROCESSING: "extraction_start",
    JobStatus.COMPLETED: "complete",
    JobStatus.FAILED: "error",
}


def progress_event(job: CrawlJob) -> Dict[str, Any]:
    """Read-only projection of a job for progress streams."""
    event = {
        "type": _PROGRESS_TYPES[job.status],
        "job_id": job.job_id,
        "status": job.status.value,
        "current": job.pages_crawled,
        "total": job.page_limit or job.pages_crawled,
        "source_name": job.source_name,
        "booths_so_far": job.booths_found,
    }
    if job.status is JobStatus.FAILED:
        event["error"] = job.error_message
    return event


def _positive_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if number <= 0:
        raise ValueError(f"{name} must be positive")
    return number


class JobOrchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        jobs,
        sources,
        provider,
        extractor,
        ingestor,
        executor=None,
        pool=None,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.sources = sources
        self.provider = provider
        self.extractor = extractor
        self.ingestor = ingestor
        self.executor = executor
        self.pool = pool
        self._start_lock = threading.Lock()
        self._worker_prefix = f"{socket.gethostname()}:{os.getpid()}"

    # ---------- Starting crawls ----------

    def _page_limit(self, source: CrawlSource, max_pages: Optional[int]) -> int:
        if max_pages is not None:
            return max_pages
        return source.pages_per_batch or self.settings.default_max_pages

    def _check_limits(self, source: CrawlSource) -> None:
        per_source = self.jobs.count_active(source.id)
        if per_source >= self.settings.max_jobs_per_source:
            raise JobLimitExceeded(
                f"{source.source_name} already has {per_source} crawl(s) in flight "
                f"(limit {self.settings.max_jobs_per_source})"
            )
        total = self.jobs.count_active()
        if total >= self.settings.max_jobs_global:
            raise JobLimitExceeded(f"{total} crawls in flight (limit {self.settings.max_jobs_global})")

    def start_job(self, source_id: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Start a crawl for one registry entry and return the provider's job id.

        The job row is written inside the provider's acceptance callback, that
        is before ``start_crawl`` returns, so a webhook can never arrive for a
        job the store does not know about.
        """
        params = params or {}
        source = self.sources.get_source(source_id)
        if source is None:
            raise SourceUnavailable(f"Source not found: {source_id}")
        if not source.enabled:
            raise SourceUnavailable(f"Source is disabled: {source.source_name}")

        self.settings.require("webhook_base_url")
        page_limit = self._page_limit(source, _positive_int(params.get("max_pages"), "max_pages"))
        source_url = params.get("source_url") or source.source_url
        extractor_type = params.get("extractor_type") or source.extractor_type

        def record(job_id: str) -> None:
            try:
                self.jobs.create_job(
                    CrawlJob(
                        job_id=job_id,
                        source_id=source.id,
                        source_name=source.source_name,
                        source_url=source_url,
                        extractor_type=extractor_type,
                        page_limit=page_limit,
                    )
                )
            except Exception:
                logger.exception("Could not record crawl %s; cancelling it at the provider", job_id)
                try:
                    self.provider.cancel(job_id)
                except ExternalServiceError as exc:
                    logger.error("Cancelling orphaned crawl %s failed: %s", job_id, exc)
                raise

        with self._start_lock:
            self._check_limits(source)
            job_id = self.provider.start_crawl(
                source_url,
                page_limit,
                self.settings.webhook_url,
                on_accepted=record,
                metadata={"source_id": source.id, "source_name": source.source_name, "extractor_type": extractor_type},
            )
        self.sources.mark_crawl_started(source.id)
        logger.info("Started crawl %s for %s (limit=%d)", job_id, source.source_name, page_limit)
        return job_id

    def start_crawl(self, request: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Handle a start-crawl request for one named source or every due enabled source."""
        force = bool(request.get("force_crawl"))
        params = {
            "max_pages": _positive_int(request.get("max_pages"), "max_pages"),
            "source_url": request.get("source_url"),
            "extractor_type": request.get("extractor_type"),
        }
        source_name = request.get("source_name")

        if source_name:
            source = self.sources.find_by_name(source_name)
            if source is None:
                raise SourceUnavailable(f"Source not found: {source_name}")
            if not force and not is_due(source):
                logger.info("Skipping %s: crawled within the last %s day(s)", source_name, source.crawl_frequency_days)
                return [{"jobId": None, "status": "skipped", "source_name": source_name, "reason": "not due"}]
            job_id = self.start_job(source.id, params)
            return [{"jobId": job_id, "status": JobStatus.QUEUED.value, "source_name": source_name}]

        params.pop("source_url")
        params.pop("extractor_type")
        targets = [source for source in self.sources.list_enabled() if force or is_due(source)]
        logger.info("Starting crawls for %d due source(s)", len(targets))
        if self.pool is None:
            return [self._start_reporting(source, params) for source in targets]
        futures = [self.pool.submit(self._start_reporting, source, params) for source in targets]
        return [future.result() for future in futures]

    def _start_reporting(self, source: CrawlSource, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            job_id = self.start_job(source.id, params)
        except (SourceUnavailable, JobLimitExceeded, ExternalServiceError) as exc:
            logger.warning("Could not start crawl for %s: %s", source.source_name, exc)
            return {"jobId": None, "status": "error", "source_name": source.source_name, "error": str(exc)}
        return {"jobId": job_id, "status": JobStatus.QUEUED.value, "source_name": source.source_name}

    # ---------- Finished crawls ----------

    def dispatch(self, job_id: str) -> None:
        """Run ``process_completed`` on the executor, or inline when there is none."""
        if self.executor is None:
            self._process_safe(job_id)
        else:
            self.executor.submit(self._process_safe, job_id)

    def _process_safe(self, job_id: str) -> None:
        try:
            self.process_completed(job_id)
        except Exception as exc:  # noqa: BLE001
            # The claim lease expires and reconcile() retries the job.
            logger.exception("Processing crawl %s failed: %s", job_id, exc)

    def _finish_source(self, job: CrawlJob, succeeded: bool) -> None:
        self.sources.mark_crawl_finished(job.source_id, succeeded)

    def process_completed(self, job_id: str) -> Optional[CrawlJob]:
        """Fetch, extract and ingest a crawl that is in ``processing``."""
        worker_id = f"{self._worker_prefix}:{uuid.uuid4().hex[:8]}"
        lease_seconds = self.settings.processing_lease_minutes * 60
        job = self.jobs.claim_for_processing(job_id, worker_id, lease_seconds)
        if job is None:
            logger.info("Crawl %s is not claimable for processing; skipping", job_id)
            return None

        try:
            results = self.provider.fetch_results(job_id)
        except ExternalServiceError as exc:
            logger.error("Fetching results of %s failed: %s", job_id, exc)
            failed = self.jobs.fail_job(job_id, f"Result fetch failed: {exc}")
            self._finish_source(job, False)
            return failed

        pages = results.pages
        if pages:
            self.jobs.raise_pages(job_id, len(pages))
        else:
            logger.info("Crawl %s finished without pages; completing with zero results", job_id)
            done = self.jobs.complete_job(job_id, found=0, added=0, updated=0, extraction_time_ms=0)
            self._finish_source(job, True)
            return done

        started = time.monotonic()
        metadata = {
            "source_id": job.source_id,
            "source_name": job.source_name,
            "source_url": job.source_url,
            "extractor_type": job.extractor_type,
        }
        try:
            candidates = self.extractor.extract(pages, metadata)
        except ExtractionError as exc:
            logger.error("Extraction for %s failed: %s; keeping raw pages", job_id, exc)
            for page in normalize_pages(pages):
                self.jobs.save_raw_page(job, page)
            failed = self.jobs.fail_job(job_id, f"Extraction failed: {exc}")
            self._finish_source(job, False)
            return failed

        result = self.ingestor.ingest(candidates)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        done = self.jobs.complete_job(
            job_id,
            found=result.found,
            added=result.added,
            updated=result.updated,
            extraction_time_ms=elapsed_ms,
        )
        if done is None:
            logger.warning("Crawl %s left processing while being handled; results not recorded", job_id)
            return self.jobs.get_job(job_id)
        self._finish_source(job, True)
        logger.info(
            "Crawl %s completed: pages=%d found=%d added=%d updated=%d",
            job_id,
            len(pages),
            result.found,
            result.added,
            result.updated,
        )
        return done

    # ---------- Recovery ----------

    def reconcile(self) -> Dict[str, int]:
        """Poll the provider for every queued/crawling job and resume orphaned processing."""
        summary = {"checked": 0, "started": 0, "processing": 0, "failed": 0, "redispatched": 0}
        for job in self.jobs.list_jobs((JobStatus.QUEUED, JobStatus.CRAWLING)):
            summary["checked"] += 1
            try:
                status = self.provider.get_status(job.job_id)
            except ExternalServiceError as exc:
                logger.warning("Status poll for %s failed: %s", job.job_id, exc)
                continue

            if job.status is JobStatus.QUEUED and (status.completed or status.status == "scraping" or status.finished):
                if self.jobs.transition(job.job_id, JobStatus.CRAWLING):
                    summary["started"] += 1
            if status.completed:
                self.jobs.raise_pages(job.job_id, status.completed)

            if status.finished:
                if self.jobs.transition(job.job_id, JobStatus.PROCESSING):
                    summary["processing"] += 1
                    self.dispatch(job.job_id)
            elif status.failed:
                message = status.error or f"Crawl {status.status} at provider"
                if self.jobs.transition(job.job_id, JobStatus.FAILED, message=message):
                    summary["failed"] += 1
                    self._finish_source(job, False)

        lease_seconds = self.settings.processing_lease_minutes * 60
        for job in self.jobs.list_orphaned_processing(lease_seconds):
            logger.info("Re-dispatching orphaned processing job %s", job.job_id)
            summary["redispatched"] += 1
            self.dispatch(job.job_id)

        logger.info("Reconcile finished: %s", summary)
        return summary

    def stale_jobs(self) -> List[CrawlJob]:
        """Jobs in crawling/processing whose ``updated_at`` has not moved for the staleness window."""
        stale = self.jobs.list_stale(self.settings.staleness_minutes)
        for job in stale:
            logger.warning(
                "Crawl %s (%s) stale in %s since %s", job.job_id, job.source_name, job.status.value, job.updated_at
            )
        return stale
