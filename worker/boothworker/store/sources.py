"""Source Registry access: read catalogue entries, update their crawl status fields."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from boothworker.core.db import Database
from boothworker.models import CrawlSource

logger = logging.getLogger(__name__)

_SELECT_BY_ID = "SELECT * FROM crawl_sources WHERE id = %(id)s;"
_SELECT_BY_NAME = "SELECT * FROM crawl_sources WHERE source_name = %(source_name)s;"
_SELECT_ENABLED = "SELECT * FROM crawl_sources WHERE enabled ORDER BY priority DESC, source_name;"

_MARK_STARTED = """
UPDATE crawl_sources SET
    last_crawl_timestamp = NOW(),
    crawl_completed = FALSE,
    status = 'crawling'
WHERE id = %(id)s;
"""

_MARK_FINISHED = """
UPDATE crawl_sources SET
    crawl_completed = %(succeeded)s,
    status = %(status)s
WHERE id = %(id)s;
"""


def row_to_source(row: Dict[str, Any]) -> CrawlSource:
    known = CrawlSource.__dataclass_fields__.keys()
    return CrawlSource(**{key: value for key, value in row.items() if key in known})


def is_due(source: CrawlSource, now: Optional[datetime] = None) -> bool:
    """True when the source's crawl cadence has elapsed since its last crawl."""
    if not source.crawl_frequency_days or source.last_crawl_timestamp is None:
        return True
    now = now or datetime.now(timezone.utc)
    last = source.last_crawl_timestamp
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(days=source.crawl_frequency_days)


class PostgresSourceRegistry:
    def __init__(self, database: Database) -> None:
        self._db = database

    def _fetch(self, sql: str, params: Dict[str, Any]) -> Optional[CrawlSource]:
        with self._db.transaction() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return row_to_source(row) if row else None

    def get_source(self, source_id: str) -> Optional[CrawlSource]:
        return self._fetch(_SELECT_BY_ID, {"id": source_id})

    def find_by_name(self, source_name: str) -> Optional[CrawlSource]:
        return self._fetch(_SELECT_BY_NAME, {"source_name": source_name})

    def list_enabled(self) -> List[CrawlSource]:
        with self._db.transaction() as cur:
            cur.execute(_SELECT_ENABLED)
            rows = cur.fetchall()
        return [row_to_source(row) for row in rows]

    def mark_crawl_started(self, source_id: str) -> None:
        with self._db.transaction() as cur:
            cur.execute(_MARK_STARTED, {"id": source_id})

    def mark_crawl_finished(self, source_id: str, succeeded: bool) -> None:
        status = "completed" if succeeded else "failed"
        with self._db.transaction() as cur:
            cur.execute(_MARK_FINISHED, {"id": source_id, "succeeded": succeeded, "status": status})
        logger.debug("Source %s marked %s", source_id, status)
