"""Client for the asynchronous crawl provider (Firecrawl-compatible API)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from boothworker.core.config import Settings
from boothworker.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = ("started", "page", "completed", "failed")
_MAX_RESULT_REQUESTS = 100


@dataclass
class CrawlStatus:
    job_id: str
    status: str
    total: int = 0
    completed: int = 0
    pages: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    next_url: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status == "completed"

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "cancelled")


def build_session() -> requests.Session:
    """Session with one retry.

    Connection failures are retried for every method since the request never
    reached the provider; read errors and 5xx/429 only for GET, so a crawl is
    never started twice.
    """
    session = requests.Session()
    retries = Retry(
        total=1,
        connect=1,
        read=1,
        status=1,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class CrawlProviderClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.base_url = settings.crawl_provider_url.rstrip("/")
        self.api_key = settings.crawl_provider_api_key
        self.timeout = settings.http_timeout_seconds
        self.session = session or build_session()

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ExternalServiceError("CRAWL_PROVIDER_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("Crawl provider %s %s failed: %s", method, url, exc)
            raise ExternalServiceError(f"crawl provider unreachable: {exc}") from exc

        if not (200 <= response.status_code < 300):
            logger.error("Crawl provider returned %s for %s %s: %s", response.status_code, method, url, response.text[:500])
            raise ExternalServiceError(f"crawl provider error ({response.status_code}): {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError("crawl provider returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError("crawl provider returned an unexpected body")
        return payload

    def start_crawl(
        self,
        url: str,
        limit: int,
        webhook_url: str,
        on_accepted: Optional[Callable[[str], None]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start an async crawl and return the provider's job id.

        ``on_accepted`` runs with the job id as soon as the provider has
        acknowledged the crawl and before this method returns, so the caller's
        record exists by the time the first webhook can arrive.
        """
        body = {
            "url": url,
            "limit": limit,
            "scrapeOptions": {"formats": ["markdown", "html"], "onlyMainContent": False},
            "webhook": {"url": webhook_url, "metadata": metadata or {}, "events": list(WEBHOOK_EVENTS)},
        }
        payload = self._request("POST", f"{self.base_url}/crawl", json=body)
        job_id = payload.get("id") or payload.get("jobId")
        if not job_id or payload.get("success") is False:
            raise ExternalServiceError(f"crawl provider did not return a job id: {payload.get('error') or payload}")

        logger.info("Crawl accepted by provider: job_id=%s url=%s limit=%s", job_id, url, limit)
        if on_accepted is not None:
            on_accepted(str(job_id))
        return str(job_id)

    def _status_from(self, job_id: str, payload: Dict[str, Any]) -> CrawlStatus:
        data = payload.get("data")
        return CrawlStatus(
            job_id=job_id,
            status=str(payload.get("status") or "unknown"),
            total=_int(payload.get("total")),
            completed=_int(payload.get("completed")),
            pages=[page for page in data if isinstance(page, dict)] if isinstance(data, list) else [],
            error=payload.get("error"),
            next_url=payload.get("next") or None,
        )

    def get_status(self, job_id: str) -> CrawlStatus:
        return self._status_from(job_id, self._request("GET", f"{self.base_url}/crawl/{job_id}"))

    def _same_origin(self, url: str) -> bool:
        target, base = urlparse(url), urlparse(self.base_url)
        return (target.scheme, target.netloc) == (base.scheme, base.netloc)

    def fetch_results(self, job_id: str) -> CrawlStatus:
        """Full result set of a crawl, following ``next`` links across result pages.

        Links pointing away from the provider host are not followed, so the
        API key never leaves it.
        """
        result = self.get_status(job_id)
        next_url = result.next_url
        requests_made = 1
        while next_url and requests_made < _MAX_RESULT_REQUESTS:
            if not self._same_origin(next_url):
                logger.warning("Not following result link for %s to foreign host: %s", job_id, next_url)
                break
            page = self._status_from(job_id, self._request("GET", next_url))
            result.pages.extend(page.pages)
            next_url = page.next_url
            requests_made += 1
        result.next_url = next_url
        if next_url:
            logger.warning("Stopped following result pages for %s after %d requests", job_id, requests_made)
        logger.info("Fetched %d pages for crawl %s (status=%s)", len(result.pages), job_id, result.status)
        return result

    def cancel(self, job_id: str) -> None:
        self._request("DELETE", f"{self.base_url}/crawl/{job_id}")
        logger.info("Cancelled crawl %s", job_id)
