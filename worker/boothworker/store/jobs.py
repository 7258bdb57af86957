"""PostgreSQL-backed Job Store.

Every status change is a single conditional ``UPDATE`` guarded by the set of
states the target may legally be entered from, so a late or duplicated webhook
can never move a job backwards: the guard simply matches no row.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from psycopg2 import extras

from boothworker.core.db import Database
from boothworker.jobs.state import ACTIVE_STATUSES, STALE_CANDIDATE_STATUSES, sources_for
from boothworker.models import CrawlJob, JobStatus

logger = logging.getLogger(__name__)

_TOUCH = "updated_at = GREATEST(NOW(), updated_at + INTERVAL '1 microsecond')"

_INSERT_JOB = """
INSERT INTO crawl_jobs (
    job_id,
    source_id,
    source_name,
    source_url,
    extractor_type,
    status,
    page_limit,
    created_at,
    updated_at
) VALUES (
    %(job_id)s,
    %(source_id)s,
    %(source_name)s,
    %(source_url)s,
    %(extractor_type)s,
    %(status)s,
    %(page_limit)s,
    NOW(),
    NOW()
)
ON CONFLICT (job_id) DO NOTHING
RETURNING *;
"""

_SELECT_JOB = "SELECT * FROM crawl_jobs WHERE job_id = %(job_id)s;"

_MARK_STARTED = f"""
UPDATE crawl_jobs SET
    status = 'crawling',
    started_at = COALESCE(started_at, NOW()),
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_INCREMENT_PAGES = f"""
UPDATE crawl_jobs SET
    status = 'crawling',
    started_at = COALESCE(started_at, NOW()),
    pages_crawled = pages_crawled + 1,
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_RAISE_PAGES = f"""
UPDATE crawl_jobs SET
    pages_crawled = GREATEST(pages_crawled, %(pages)s),
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_MARK_PROCESSING = f"""
UPDATE crawl_jobs SET
    status = 'processing',
    crawl_duration_ms = (EXTRACT(EPOCH FROM (NOW() - COALESCE(started_at, created_at))) * 1000)::BIGINT,
    claimed_by = NULL,
    claimed_at = NULL,
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_CLAIM = f"""
UPDATE crawl_jobs SET
    claimed_by = %(worker_id)s,
    claimed_at = NOW(),
    {_TOUCH}
WHERE job_id = %(job_id)s
  AND status = 'processing'
  AND (claimed_by IS NULL OR claimed_by = %(worker_id)s
       OR claimed_at < NOW() - make_interval(secs => %(lease_seconds)s))
RETURNING *;
"""

_COMPLETE = f"""
UPDATE crawl_jobs SET
    status = 'completed',
    booths_found = %(found)s,
    booths_added = %(added)s,
    booths_updated = %(updated)s,
    extraction_time_ms = %(extraction_time_ms)s,
    error_message = NULL,
    completed_at = NOW(),
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_FAIL = f"""
UPDATE crawl_jobs SET
    status = 'failed',
    error_message = %(message)s,
    completed_at = NOW(),
    {_TOUCH}
WHERE job_id = %(job_id)s AND status = ANY(%(from_states)s)
RETURNING *;
"""

_INSERT_RAW_PAGE = """
INSERT INTO crawl_raw_content (job_id, source_id, url, raw_markdown, raw_html, metadata, crawled_at)
VALUES (%(job_id)s, %(source_id)s, %(url)s, %(raw_markdown)s, %(raw_html)s, %(metadata)s, NOW());
"""

_COUNT_ACTIVE = "SELECT COUNT(*) AS active FROM crawl_jobs WHERE status = ANY(%(statuses)s)"

_LIST_STALE = """
SELECT * FROM crawl_jobs
WHERE status = ANY(%(statuses)s)
  AND updated_at < NOW() - make_interval(mins => %(minutes)s)
ORDER BY updated_at;
"""

_LIST_ORPHANED = """
SELECT * FROM crawl_jobs
WHERE status = 'processing'
  AND (claimed_by IS NULL OR claimed_at < NOW() - make_interval(secs => %(lease_seconds)s))
ORDER BY updated_at;
"""


def _states(values: Sequence[JobStatus]) -> List[str]:
    return [value.value for value in values]


def row_to_job(row: Dict[str, Any]) -> CrawlJob:
    values = dict(row)
    values["status"] = JobStatus(values["status"])
    known = CrawlJob.__dataclass_fields__.keys()
    return CrawlJob(**{key: value for key, value in values.items() if key in known})


class JobTransitions:
    """Generic transition entry point over the guarded per-state writes."""

    def transition(self, job_id: str, target: JobStatus, **fields: Any) -> Optional[CrawlJob]:
        target = JobStatus(target)
        if target is JobStatus.CRAWLING:
            return self.mark_started(job_id)
        if target is JobStatus.PROCESSING:
            return self.mark_processing(job_id)
        if target is JobStatus.COMPLETED:
            return self.complete_job(
                job_id,
                found=fields.get("found", 0),
                added=fields.get("added", 0),
                updated=fields.get("updated", 0),
                extraction_time_ms=fields.get("extraction_time_ms"),
            )
        if target is JobStatus.FAILED:
            return self.fail_job(job_id, fields.get("message") or "unspecified failure")
        raise ValueError(f"jobs cannot re-enter {target.value}")


class PostgresJobStore(JobTransitions):
    """Durable table of crawl jobs; the single source of truth for job state."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def _one(self, sql: str, params: Dict[str, Any]) -> Optional[CrawlJob]:
        with self._db.transaction() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return row_to_job(row) if row else None

    def _many(self, sql: str, params: Dict[str, Any]) -> List[CrawlJob]:
        with self._db.transaction() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [row_to_job(row) for row in rows]

    def create_job(self, job: CrawlJob) -> CrawlJob:
        params = {
            "job_id": job.job_id,
            "source_id": job.source_id,
            "source_name": job.source_name,
            "source_url": job.source_url,
            "extractor_type": job.extractor_type,
            "status": job.status.value,
            "page_limit": job.page_limit,
        }
        created = self._one(_INSERT_JOB, params)
        if created is None:
            logger.info("Job %s already recorded; keeping existing row", job.job_id)
            existing = self.get_job(job.job_id)
            if existing is None:
                raise RuntimeError(f"crawl job {job.job_id} vanished during insert")
            return existing
        return created

    def get_job(self, job_id: str) -> Optional[CrawlJob]:
        return self._one(_SELECT_JOB, {"job_id": job_id})

    def mark_started(self, job_id: str) -> Optional[CrawlJob]:
        return self._one(_MARK_STARTED, {"job_id": job_id, "from_states": _states(sources_for(JobStatus.CRAWLING))})

    def increment_pages(self, job_id: str) -> Optional[CrawlJob]:
        return self._one(
            _INCREMENT_PAGES, {"job_id": job_id, "from_states": _states(sources_for(JobStatus.CRAWLING))}
        )

    def raise_pages(self, job_id: str, pages: int) -> Optional[CrawlJob]:
        return self._one(_RAISE_PAGES, {"job_id": job_id, "pages": pages, "from_states": _states(ACTIVE_STATUSES)})

    def mark_processing(self, job_id: str) -> Optional[CrawlJob]:
        return self._one(
            _MARK_PROCESSING, {"job_id": job_id, "from_states": _states(sources_for(JobStatus.PROCESSING))}
        )

    def claim_for_processing(self, job_id: str, worker_id: str, lease_seconds: int) -> Optional[CrawlJob]:
        return self._one(_CLAIM, {"job_id": job_id, "worker_id": worker_id, "lease_seconds": lease_seconds})

    def complete_job(
        self,
        job_id: str,
        *,
        found: int,
        added: int,
        updated: int,
        extraction_time_ms: Optional[int] = None,
    ) -> Optional[CrawlJob]:
        params = {
            "job_id": job_id,
            "found": found,
            "added": added,
            "updated": updated,
            "extraction_time_ms": extraction_time_ms,
            "from_states": _states(sources_for(JobStatus.COMPLETED)),
        }
        return self._one(_COMPLETE, params)

    def fail_job(self, job_id: str, message: str) -> Optional[CrawlJob]:
        return self._one(
            _FAIL, {"job_id": job_id, "message": message, "from_states": _states(sources_for(JobStatus.FAILED))}
        )

    def save_raw_page(self, job: CrawlJob, page: Dict[str, Any]) -> None:
        params = {
            "job_id": job.job_id,
            "source_id": job.source_id,
            "url": page.get("url"),
            "raw_markdown": page.get("markdown"),
            "raw_html": page.get("html"),
            "metadata": extras.Json(page.get("metadata") or {}),
        }
        with self._db.transaction() as cur:
            cur.execute(_INSERT_RAW_PAGE, params)

    def count_active(self, source_id: Optional[str] = None) -> int:
        sql = _COUNT_ACTIVE
        params: Dict[str, Any] = {"statuses": _states(ACTIVE_STATUSES)}
        if source_id is not None:
            sql += " AND source_id = %(source_id)s"
            params["source_id"] = source_id
        with self._db.transaction() as cur:
            cur.execute(sql + ";", params)
            row = cur.fetchone()
        return int(row["active"]) if row else 0

    def list_jobs(self, statuses: Sequence[JobStatus] = ACTIVE_STATUSES) -> List[CrawlJob]:
        return self._many(
            "SELECT * FROM crawl_jobs WHERE status = ANY(%(statuses)s) ORDER BY created_at;",
            {"statuses": _states(statuses)},
        )

    def list_stale(self, minutes: int) -> List[CrawlJob]:
        return self._many(_LIST_STALE, {"statuses": _states(STALE_CANDIDATE_STATUSES), "minutes": minutes})

    def list_orphaned_processing(self, lease_seconds: int) -> List[CrawlJob]:
        return self._many(_LIST_ORPHANED, {"lease_seconds": lease_seconds})
