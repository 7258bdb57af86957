"""Core data models shared by the crawl orchestrator and the dedup engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    CRAWLING = "crawling"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class EntityStatus(str, Enum):
    ACTIVE = "active"
    UNVERIFIED = "unverified"
    INACTIVE = "inactive"
    CLOSED = "closed"


# Optional scalar fields that merges fill in and the scorers look at.
ENRICHABLE_FIELDS = (
    "address",
    "state",
    "postal_code",
    "description",
    "hours",
    "cost",
    "phone",
    "website",
    "photo_exterior_url",
    "photo_interior_url",
    "machine_model",
    "machine_manufacturer",
    "booth_type",
)
ARRAY_FIELDS = ("source_names", "source_urls", "photos")


@dataclass(slots=True)
class CrawlSource:
    """Source Registry entry; the orchestrator only touches its status fields."""

    id: str
    source_name: str
    source_url: str
    extractor_type: str = "generic"
    enabled: bool = True
    priority: int = 0
    crawl_frequency_days: Optional[int] = None
    last_crawl_timestamp: Optional[datetime] = None
    crawl_completed: bool = False
    pages_per_batch: Optional[int] = None
    status: Optional[str] = None


@dataclass(slots=True)
class CrawlJob:
    """One attempt at crawling a source, keyed by the provider's job id."""

    job_id: str
    source_id: str
    source_name: str = ""
    source_url: str = ""
    extractor_type: str = "generic"
    status: JobStatus = JobStatus.QUEUED
    pages_crawled: int = 0
    booths_found: int = 0
    booths_added: int = 0
    booths_updated: int = 0
    error_message: Optional[str] = None
    page_limit: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    crawl_duration_ms: Optional[int] = None
    extraction_time_ms: Optional[int] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return payload


@dataclass(slots=True)
class CandidateEntity:
    """Validated extraction output, never persisted on its own."""

    name: str
    city: str
    country: str
    source_url: str
    source_name: str
    address: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None
    hours: Optional[str] = None
    cost: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    photo_exterior_url: Optional[str] = None
    photo_interior_url: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    machine_model: Optional[str] = None
    machine_manufacturer: Optional[str] = None
    booth_type: Optional[str] = None
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True)
class CanonicalEntity:
    """The authoritative, de-duplicated record for one physical booth."""

    id: Optional[int]
    slug: str
    name: str
    city: str
    country: str
    address: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: EntityStatus = EntityStatus.UNVERIFIED
    description: Optional[str] = None
    hours: Optional[str] = None
    cost: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    photo_exterior_url: Optional[str] = None
    photo_interior_url: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    machine_model: Optional[str] = None
    machine_manufacturer: Optional[str] = None
    booth_type: Optional[str] = None
    source_names: List[str] = field(default_factory=list)
    source_urls: List[str] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_candidate(cls, candidate: CandidateEntity, slug: str) -> "CanonicalEntity":
        values = {name: getattr(candidate, name) for name in ENRICHABLE_FIELDS}
        return cls(
            id=None,
            slug=slug,
            name=candidate.name,
            city=candidate.city,
            country=candidate.country,
            latitude=candidate.latitude,
            longitude=candidate.longitude,
            photos=list(candidate.photos),
            source_names=[candidate.source_name] if candidate.source_name else [],
            source_urls=[candidate.source_url] if candidate.source_url else [],
            **values,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CanonicalEntity":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in row.items() if key in known}
        for name in ARRAY_FIELDS:
            values[name] = list(values.get(name) or [])
        values["status"] = EntityStatus(values.get("status") or EntityStatus.UNVERIFIED.value)
        return cls(**values)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["status"] = self.status.value
        return row


@dataclass(slots=True)
class DuplicateGroup:
    """Two or more records judged to describe the same physical booth."""

    members: List[CanonicalEntity]
    anchor_id: Optional[int] = None


@dataclass(slots=True)
class MergeDecision:
    keeper: CanonicalEntity
    losers: List[CanonicalEntity]
    merged: CanonicalEntity
    scores: Dict[Optional[int], float] = field(default_factory=dict)

    @property
    def loser_ids(self) -> List[int]:
        return [loser.id for loser in self.losers if loser.id is not None]

    @property
    def before_count(self) -> int:
        return 1 + len(self.losers)

    @property
    def after_count(self) -> int:
        return 1


@dataclass(slots=True)
class MergeConflict:
    """A record claimed by more than one group, and the group it went to."""

    entity_id: Optional[int]
    entity_name: str
    claimed_by: List[Optional[int]]
    assigned_to: Optional[int]
    distance_m: float
    name_score: float


@dataclass(slots=True)
class QualityScore:
    score: int
    missing_fields: List[str]
    priority: str
    needs_enrichment: bool


@dataclass(slots=True)
class EnrichmentNeeds:
    needs_venue_data: bool
    needs_image: bool
    needs_geocoding: bool
    missing: Dict[str, bool] = field(default_factory=dict)
