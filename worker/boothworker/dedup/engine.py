"""Clustering and merge passes over the Canonical Entity Store.

A pass reads the store without locks, groups records that pass BOTH the
proximity and the name-similarity test, and plans one merge per group. Each
plan is then committed on its own: keeper and losers are locked, and the plan
is dropped if any of them changed since the scan (optimistic version check).
Passes repeat until nothing merges or ``dedup_max_passes`` is reached.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from boothworker.core.config import Settings
from boothworker.dedup.geo import haversine_m
from boothworker.dedup.merge import plan_merge
from boothworker.dedup.similarity import NameSimilarity, build_similarity
from boothworker.etl.transform import address_key
from boothworker.models import CanonicalEntity, DuplicateGroup, MergeConflict, MergeDecision
from boothworker.quality.scorer import QualityScorer

logger = logging.getLogger(__name__)


@dataclass
class _Claim:
    group_index: int
    distance_m: float
    name_score: float


@dataclass
class DedupReport:
    passes: int = 0
    groups: int = 0
    merged: int = 0
    deleted: int = 0
    skipped_stale: int = 0
    before: int = 0
    after: int = 0
    conflicts: List[MergeConflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passes": self.passes,
            "groups": self.groups,
            "merged": self.merged,
            "deleted": self.deleted,
            "skipped_stale": self.skipped_stale,
            "before": self.before,
            "after": self.after,
            "conflicts": len(self.conflicts),
        }


def _pair_distance(left: CanonicalEntity, right: CanonicalEntity) -> Optional[float]:
    """Metres between two records, 0 for a shared address key, None when incomparable."""
    if left.has_coordinates and right.has_coordinates:
        return haversine_m(left.latitude, left.longitude, right.latitude, right.longitude)
    if left.has_coordinates or right.has_coordinates:
        return None
    left_key, right_key = address_key(left.address), address_key(right.address)
    if left_key and left_key == right_key and left.city.lower() == right.city.lower():
        return 0.0
    return None


def _best_claim(claims: List[_Claim]) -> _Claim:
    return min(claims, key=lambda claim: (claim.distance_m, -claim.name_score, claim.group_index))


def find_duplicate_groups(
    entities: List[CanonicalEntity],
    radius_m: float,
    similarity: NameSimilarity,
) -> Tuple[List[DuplicateGroup], List[MergeConflict]]:
    """Group records that are within ``radius_m`` of, and name-match, every member.

    Records are visited in id order. A group only qualifies for a record when
    all of its members pass both tests, so two records that fail either test
    against each other never end up in one group. A record claimed by several
    groups joins the one with the nearest member, ties going to the higher name
    score; every such case is reported as a :class:`MergeConflict`.
    """
    ordered = sorted(entities, key=lambda entity: (entity.id is None, entity.id or 0))
    groups: List[List[CanonicalEntity]] = []
    conflicts: List[MergeConflict] = []

    for entity in ordered:
        claims: List[_Claim] = []
        for index, members in enumerate(groups):
            member_claims: List[_Claim] = []
            for member in members:
                distance = _pair_distance(entity, member)
                if distance is None or distance > radius_m:
                    break
                name_score = similarity.score(entity.name, member.name)
                if name_score < similarity.threshold:
                    break
                member_claims.append(_Claim(index, distance, name_score))
            # Every member must pass both tests; no chaining through neighbours.
            if len(member_claims) == len(members):
                claims.append(_best_claim(member_claims))

        if not claims:
            groups.append([entity])
            continue

        chosen = _best_claim(claims)
        groups[chosen.group_index].append(entity)
        if len(claims) > 1:
            conflict = MergeConflict(
                entity_id=entity.id,
                entity_name=entity.name,
                claimed_by=[groups[claim.group_index][0].id for claim in claims],
                assigned_to=groups[chosen.group_index][0].id,
                distance_m=round(chosen.distance_m, 2),
                name_score=round(chosen.name_score, 3),
            )
            logger.info(
                "Record %s (%s) claimed by groups %s; assigned to %s at %.1fm",
                conflict.entity_id,
                conflict.entity_name,
                conflict.claimed_by,
                conflict.assigned_to,
                conflict.distance_m,
            )
            conflicts.append(conflict)

    duplicate_groups = [
        DuplicateGroup(members=members, anchor_id=members[0].id) for members in groups if len(members) > 1
    ]
    return duplicate_groups, conflicts


class DeduplicationEngine:
    def __init__(
        self,
        settings: Settings,
        entity_store,
        similarity: Optional[NameSimilarity] = None,
        quality: Optional[QualityScorer] = None,
    ) -> None:
        self.settings = settings
        self.store = entity_store
        self.similarity = similarity or build_similarity(settings)
        self.quality = quality or QualityScorer(
            default_region=settings.default_phone_region, threshold=settings.quality_threshold
        )

    def commit(self, decision: MergeDecision) -> bool:
        """Apply one merge under row locks; False when any member changed since the scan."""
        members = [decision.keeper, *decision.losers]
        with self.store.session() as session:
            locked = {entity.id: entity for entity in session.lock_entities(entity.id for entity in members)}
            for member in members:
                current = locked.get(member.id)
                if current is None or current.version != member.version:
                    logger.warning(
                        "Skipping stale merge into %s: member %s changed or vanished", decision.keeper.id, member.id
                    )
                    return False
            updated = session.update(decision.merged, expected_version=decision.keeper.version)
            if updated is None:
                logger.warning("Skipping stale merge: keeper %s version moved", decision.keeper.id)
                return False
            session.delete(decision.loser_ids)

        logger.info(
            "Merged %s into %s (%s): %d records -> %d",
            decision.loser_ids,
            decision.keeper.id,
            decision.keeper.name,
            decision.before_count,
            decision.after_count,
        )
        return True

    def run(self, city: Optional[str] = None, radius_m: Optional[float] = None, final: bool = False) -> DedupReport:
        if radius_m is None:
            radius_m = self.settings.dedup_final_radius_m if final else self.settings.dedup_radius_m

        report = DedupReport(before=self.store.count())
        logger.info("Dedup run starting: city=%s radius=%.1fm records=%d", city or "*", radius_m, report.before)

        for _ in range(max(1, self.settings.dedup_max_passes)):
            report.passes += 1
            entities = self.store.list_entities(city=city)
            groups, conflicts = find_duplicate_groups(entities, radius_m, self.similarity)
            report.groups += len(groups)
            report.conflicts.extend(conflicts)
            if not groups:
                break

            merged_this_pass = 0
            for group in groups:
                decision = plan_merge(group, self.quality)
                if self.commit(decision):
                    merged_this_pass += 1
                    report.deleted += len(decision.losers)
                else:
                    report.skipped_stale += 1
            report.merged += merged_this_pass
            if not merged_this_pass:
                break

        report.after = self.store.count()
        logger.info(
            "Dedup run finished: passes=%d groups=%d merged=%d deleted=%d stale=%d records %d -> %d",
            report.passes,
            report.groups,
            report.merged,
            report.deleted,
            report.skipped_stale,
            report.before,
            report.after,
        )
        return report
