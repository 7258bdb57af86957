"""Webhook ingest: map crawl-provider events onto Job Store transitions.

Delivery is at-least-once and unordered, so every event is applied through a
status-guarded store write. Duplicates and late events match no row and are
acknowledged without changing anything.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from boothworker.core.errors import UnknownJob
from boothworker.etl.transform import normalize_pages
from boothworker.models import CrawlJob, JobStatus

logger = logging.getLogger(__name__)

EVENT_TYPES = ("started", "page", "completed", "failed")
_EVENT_PREFIX = "crawl."


def normalize_event_type(event_type: Optional[str]) -> str:
    kind = (event_type or "").strip().lower()
    if kind.startswith(_EVENT_PREFIX):
        kind = kind[len(_EVENT_PREFIX):]
    return kind


@dataclass
class WebhookResult:
    received: str
    job_id: str
    applied: bool
    status: Optional[JobStatus] = None

    def to_response(self) -> Dict[str, Any]:
        return {"success": True, "received": self.received}


class WebhookHandler:
    def __init__(self, jobs, orchestrator, store_raw_pages: bool = True) -> None:
        self.jobs = jobs
        self.orchestrator = orchestrator
        self.store_raw_pages = store_raw_pages

    def handle_event(self, event_type: str, job_id: str, payload: Optional[Dict[str, Any]] = None) -> WebhookResult:
        payload = payload or {}
        kind = normalize_event_type(event_type)

        job = self.jobs.get_job(job_id)
        if job is None:
            logger.warning("Webhook %s for unknown job %s", event_type, job_id)
            raise UnknownJob(job_id)

        if job.status.is_terminal:
            logger.info("Ignoring %s for job %s: already %s", event_type, job_id, job.status.value)
            return WebhookResult(received=event_type, job_id=job_id, applied=False, status=job.status)

        if kind == "started":
            updated = self.jobs.transition(job_id, JobStatus.CRAWLING)
        elif kind == "page":
            updated = self._page(job, payload)
        elif kind == "completed":
            updated = self._completed(job)
        elif kind == "failed":
            updated = self._failed(job, payload)
        else:
            logger.warning("Unhandled webhook event type %r for job %s", event_type, job_id)
            return WebhookResult(received=event_type, job_id=job_id, applied=False, status=job.status)

        if updated is None:
            logger.info("Webhook %s for job %s was a no-op (status %s)", kind, job_id, job.status.value)
            return WebhookResult(received=event_type, job_id=job_id, applied=False, status=job.status)

        if updated.status is not job.status:
            logger.info("Job %s: %s -> %s", job_id, job.status.value, updated.status.value)
        return WebhookResult(received=event_type, job_id=job_id, applied=True, status=updated.status)

    def _page(self, job: CrawlJob, payload: Dict[str, Any]) -> Optional[CrawlJob]:
        updated = self.jobs.increment_pages(job.job_id)
        if updated is not None and self.store_raw_pages:
            data = payload.get("data")
            for page in normalize_pages(data if isinstance(data, list) else []):
                self.jobs.save_raw_page(updated, page)
        return updated

    def _completed(self, job: CrawlJob) -> Optional[CrawlJob]:
        if job.status is JobStatus.QUEUED:
            # No started/page event arrived; pass through crawling first.
            self.jobs.transition(job.job_id, JobStatus.CRAWLING)
        updated = self.jobs.transition(job.job_id, JobStatus.PROCESSING)
        if updated is not None:
            self.orchestrator.dispatch(job.job_id)
        return updated

    def _failed(self, job: CrawlJob, payload: Dict[str, Any]) -> Optional[CrawlJob]:
        message = payload.get("error") or "Crawl failed at provider"
        updated = self.jobs.transition(job.job_id, JobStatus.FAILED, message=str(message))
        if updated is not None:
            self.orchestrator.sources.mark_crawl_finished(job.source_id, False)
        return updated
