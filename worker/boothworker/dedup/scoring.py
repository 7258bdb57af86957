"""Completeness scoring used to pick the keeper of a duplicate group."""

import re
from typing import Dict, List, Optional, Tuple

from boothworker.dedup.geo import valid_coordinates
from boothworker.etl.transform import normalize_text
from boothworker.models import CanonicalEntity
from boothworker.quality.scorer import QualityScorer

# Weights for present, valid fields. Tunable; no single value is load-bearing.
FIELD_WEIGHTS: Dict[str, int] = {
    "coordinates": 10,
    "description": 20,
    "photo_exterior_url": 15,
    "photo_interior_url": 10,
    "booth_type": 8,
    "machine_model": 8,
    "hours": 7,
    "cost": 5,
    "postal_code": 3,
    "state": 2,
}
ORIGINAL_SLUG_BONUS = 12
SOURCE_WEIGHT = 3
SOURCE_CAP = 10

_SLUG_SUFFIX_RX = re.compile(r"-\d+$")
_GENERIC_DESCRIPTIONS = {
    "photo booth",
    "photobooth",
    "analog photo booth",
    "analogue photo booth",
    "vintage photo booth",
    "photo booth location",
}
_MIN_DESCRIPTION_LENGTH = 20


def is_generic_description(entity: CanonicalEntity) -> bool:
    text = normalize_text(entity.description)
    if not text:
        return True
    if text in _GENERIC_DESCRIPTIONS or text == normalize_text(entity.name):
        return True
    return len(text) < _MIN_DESCRIPTION_LENGTH


def is_original_slug(slug: Optional[str]) -> bool:
    return bool(slug) and not _SLUG_SUFFIX_RX.search(slug)


def score_member(entity: CanonicalEntity) -> int:
    score = 0
    if valid_coordinates(entity.latitude, entity.longitude):
        score += FIELD_WEIGHTS["coordinates"]
    if not is_generic_description(entity):
        score += FIELD_WEIGHTS["description"]
    for name in ("photo_exterior_url", "photo_interior_url", "booth_type", "machine_model", "hours", "cost"):
        if getattr(entity, name):
            score += FIELD_WEIGHTS[name]
    if entity.postal_code:
        score += FIELD_WEIGHTS["postal_code"]
    if entity.state:
        score += FIELD_WEIGHTS["state"]
    if is_original_slug(entity.slug):
        score += ORIGINAL_SLUG_BONUS
    score += min(len(entity.source_names) * SOURCE_WEIGHT, SOURCE_CAP)
    return score


def rank_members(
    members: List[CanonicalEntity], quality: Optional[QualityScorer] = None
) -> List[Tuple[CanonicalEntity, int]]:
    """Members ordered best first: member score, then quality score, then oldest id."""
    quality = quality or QualityScorer()
    scored = []
    for entity in members:
        member_score = score_member(entity)
        quality_score = quality.score(entity).score
        tie_break = entity.id if entity.id is not None else float("inf")
        scored.append((entity, member_score, quality_score, tie_break))
    scored.sort(key=lambda item: (-item[1], -item[2], item[3]))
    return [(entity, member_score) for entity, member_score, _, _ in scored]
