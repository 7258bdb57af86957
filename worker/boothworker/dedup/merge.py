"""Additive merge of a duplicate group into its keeper."""

import copy
import logging
from typing import Iterable, List, Optional

from boothworker.dedup.geo import valid_coordinates
from boothworker.dedup.scoring import rank_members
from boothworker.models import (
    ARRAY_FIELDS,
    ENRICHABLE_FIELDS,
    CanonicalEntity,
    DuplicateGroup,
    EntityStatus,
    MergeDecision,
)
from boothworker.quality.scorer import QualityScorer

logger = logging.getLogger(__name__)

DESCRIPTION_SEPARATOR = "\n\n"


def union_ordered(*lists: Iterable[str]) -> List[str]:
    merged: List[str] = []
    for values in lists:
        for value in values or []:
            if value and value not in merged:
                merged.append(value)
    return merged


def merge_descriptions(descriptions: Iterable[Optional[str]]) -> Optional[str]:
    """Concatenate distinct descriptions in order; text already present is not repeated."""
    combined: Optional[str] = None
    for description in descriptions:
        text = (description or "").strip()
        if not text:
            continue
        if combined is None:
            combined = text
        elif text not in combined:
            combined = f"{combined}{DESCRIPTION_SEPARATOR}{text}"
    return combined


def merge_records(ordered: List[CanonicalEntity]) -> CanonicalEntity:
    """Merge members already sorted best first. The first one is the keeper.

    The keeper's values are never blanked: a field is only filled when the
    keeper lacks it, from the first loser that has it.
    """
    if not ordered:
        raise ValueError("cannot merge an empty group")
    keeper, losers = ordered[0], ordered[1:]
    merged = copy.deepcopy(keeper)

    for name in ENRICHABLE_FIELDS:
        if name == "description" or getattr(merged, name):
            continue
        for loser in losers:
            value = getattr(loser, name)
            if value:
                setattr(merged, name, value)
                break

    if not valid_coordinates(merged.latitude, merged.longitude):
        for loser in losers:
            if valid_coordinates(loser.latitude, loser.longitude):
                merged.latitude, merged.longitude = loser.latitude, loser.longitude
                break

    merged.description = merge_descriptions(member.description for member in ordered)

    for name in ARRAY_FIELDS:
        setattr(merged, name, union_ordered(*(getattr(member, name) for member in ordered)))

    if merged.status is EntityStatus.UNVERIFIED and any(loser.status is EntityStatus.ACTIVE for loser in losers):
        merged.status = EntityStatus.ACTIVE
    return merged


def plan_merge(group: DuplicateGroup, quality: Optional[QualityScorer] = None) -> MergeDecision:
    ranked = rank_members(group.members, quality)
    ordered = [entity for entity, _ in ranked]
    return MergeDecision(
        keeper=ordered[0],
        losers=ordered[1:],
        merged=merge_records(ordered),
        scores={entity.id: float(member_score) for entity, member_score in ranked},
    )
