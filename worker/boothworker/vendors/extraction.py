"""Client for the external extraction service (crawled pages -> candidate booths)."""

import logging
from typing import Any, Dict, List, Optional

import requests

from boothworker.core.config import Settings
from boothworker.core.errors import ExtractionError
from boothworker.etl.transform import normalize_pages, parse_candidates
from boothworker.models import CandidateEntity
from boothworker.vendors.crawl_provider import build_session

logger = logging.getLogger(__name__)


class ExtractionClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.url = settings.extraction_service_url
        self.timeout = settings.http_timeout_seconds
        self.session = session or build_session()

    def extract(self, pages: List[Dict[str, Any]], source_metadata: Dict[str, Any]) -> List[CandidateEntity]:
        source_name = str(source_metadata.get("source_name") or "")
        source_url = str(source_metadata.get("source_url") or "")
        usable = normalize_pages(pages)
        if not usable:
            logger.info("No usable pages for %s; skipping extraction", source_name or source_url)
            return []
        if not self.url:
            raise ExtractionError("EXTRACTION_SERVICE_URL is not configured")

        body = {"pages": usable, "source": source_metadata}
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Extraction request for %s failed: %s", source_name, exc)
            raise ExtractionError(f"extraction service unreachable: {exc}") from exc

        if not (200 <= response.status_code < 300):
            logger.error("Extraction service returned %s: %s", response.status_code, response.text[:500])
            raise ExtractionError(f"extraction service error ({response.status_code})")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionError("extraction service returned a non-JSON body") from exc

        candidates = parse_candidates(payload, source_name=source_name, source_url=source_url)
        logger.info("Extracted %d candidates from %d pages of %s", len(candidates), len(usable), source_name)
        return candidates
