"""Reconcile extracted candidates into the Canonical Entity Store."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from slugify import slugify

from boothworker.core.config import Settings
from boothworker.dedup.geo import cell_keys, haversine_m
from boothworker.dedup.merge import merge_records
from boothworker.dedup.scoring import rank_members
from boothworker.dedup.similarity import NameSimilarity, build_similarity
from boothworker.etl.transform import address_key
from boothworker.models import CandidateEntity, CanonicalEntity, MergeConflict
from boothworker.quality.scorer import QualityScorer

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    found: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    conflicts: List[MergeConflict] = field(default_factory=list)


def base_slug(name: str, city: str) -> str:
    return slugify(f"{name} {city}") or "booth"


def unique_slug(session, name: str, city: str) -> str:
    base = base_slug(name, city)
    session.lock_slug(base)
    slug, suffix = base, 2
    while session.slug_taken(slug):
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


class CanonicalIngestor:
    """Match each candidate against nearby canonicals, then merge or insert.

    Each candidate is handled in its own transaction. Writers covering the
    same area serialise on advisory locks for the latitude bands around the
    candidate (or its normalised address when it has no coordinates), so two
    sources reporting the same booth at the same moment cannot both insert it.
    """

    def __init__(
        self,
        settings: Settings,
        entity_store,
        similarity: Optional[NameSimilarity] = None,
        quality: Optional[QualityScorer] = None,
    ) -> None:
        self.radius_m = settings.dedup_radius_m
        self.store = entity_store
        self.similarity = similarity or build_similarity(settings)
        self.quality = quality or QualityScorer(
            default_region=settings.default_phone_region, threshold=settings.quality_threshold
        )

    def _matches(self, candidate: CandidateEntity, nearby: List[CanonicalEntity]) -> List[Tuple[float, float, CanonicalEntity]]:
        matches = []
        for entity in nearby:
            if candidate.has_coordinates:
                if not entity.has_coordinates:
                    continue
                distance = haversine_m(candidate.latitude, candidate.longitude, entity.latitude, entity.longitude)
                if distance > self.radius_m:
                    continue
            else:
                distance = 0.0
            name_score = self.similarity.score(candidate.name, entity.name)
            if name_score >= self.similarity.threshold:
                matches.append((distance, name_score, entity))
        matches.sort(key=lambda match: (match[0], -match[1], match[2].id or 0))
        return matches

    def merge_candidate(self, stored: CanonicalEntity, candidate: CandidateEntity) -> CanonicalEntity:
        """Fold a candidate into a stored row; the higher-scored side's values win."""
        incoming = CanonicalEntity.from_candidate(candidate, slug=stored.slug)
        incoming.id = stored.id
        incoming.version = stored.version
        ordered = [entity for entity, _ in rank_members([stored, incoming], self.quality)]
        merged = merge_records(ordered)
        merged.id = stored.id
        merged.slug = stored.slug
        merged.version = stored.version
        merged.status = stored.status
        merged.created_at = stored.created_at
        merged.updated_at = stored.updated_at
        return merged

    def ingest_one(self, candidate: CandidateEntity, conflicts: Optional[List[MergeConflict]] = None) -> str:
        """Merge or insert one candidate; ambiguous matches are appended to ``conflicts``."""
        with self.store.session() as session:
            if candidate.has_coordinates:
                session.lock_bands(cell_keys(candidate.latitude, self.radius_m))
                nearby = session.find_nearby(candidate.latitude, candidate.longitude, self.radius_m)
            else:
                key = address_key(candidate.address)
                if key:
                    session.lock_address(candidate.city, key)
                    nearby = session.find_by_address(candidate.city, key)
                else:
                    nearby = []

            matches = self._matches(candidate, nearby)
            if not matches:
                entity = CanonicalEntity.from_candidate(
                    candidate, slug=unique_slug(session, candidate.name, candidate.city)
                )
                created = session.insert(entity)
                logger.debug("Inserted booth %s (%s)", created.id, created.slug)
                return "added"

            distance, name_score, stored = matches[0]
            if len(matches) > 1:
                conflict = MergeConflict(
                    entity_id=None,
                    entity_name=candidate.name,
                    claimed_by=[match[2].id for match in matches],
                    assigned_to=stored.id,
                    distance_m=round(distance, 2),
                    name_score=round(name_score, 3),
                )
                logger.info(
                    "Candidate %s matched %s; assigned to %s", conflict.entity_name, conflict.claimed_by, stored.id
                )
                if conflicts is not None:
                    conflicts.append(conflict)

            merged = self.merge_candidate(stored, candidate)
            if merged.to_row() == stored.to_row():
                return "unchanged"
            if session.update(merged, expected_version=stored.version) is None:
                logger.warning("Booth %s changed under lock; skipping candidate %s", stored.id, candidate.name)
                return "skipped"
            logger.debug("Updated booth %s from %s", stored.id, candidate.source_name)
            return "updated"

    def ingest(self, candidates: Iterable[CandidateEntity]) -> IngestResult:
        result = IngestResult()
        for candidate in candidates:
            result.found += 1
            outcome = self.ingest_one(candidate, result.conflicts)
            setattr(result, outcome, getattr(result, outcome) + 1)
        logger.info(
            "Ingested %d candidates: added=%d updated=%d unchanged=%d skipped=%d conflicts=%d",
            result.found,
            result.added,
            result.updated,
            result.unchanged,
            result.skipped,
            len(result.conflicts),
        )
        return result
