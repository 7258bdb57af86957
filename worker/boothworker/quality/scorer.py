"""Completeness scoring for canonical booths.

Each field has a fixed allocation. Malformed values earn a penalty rather than
zero, so a wrong address scores below a missing one. The raw sum, which ranges
from ``MIN_RAW`` to ``MAX_RAW``, is rescaled linearly onto 0..100.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import phonenumbers

from boothworker.dedup.geo import valid_coordinates
from boothworker.models import CanonicalEntity, EnrichmentNeeds, EntityStatus, QualityScore

logger = logging.getLogger(__name__)

POINTS = {
    "address": 15,
    "coordinates": 15,
    "phone": 10,
    "website": 10,
    "hours": 10,
    "description": 10,
    "image": 15,
    "sources": 10,
    "status": 5,
}
SINGLE_SOURCE_POINTS = 5

PENALTIES = {
    "address": -10,
    "coordinates": -10,
    "phone": -5,
    "website": -5,
}

MAX_RAW = sum(POINTS.values())
MIN_RAW = sum(PENALTIES.values())

COMPLETE_AT = 80
CRITICAL_BELOW = 50
HIGH_BELOW = 65

_LEADING_NUMBER_RX = re.compile(r"^\s*\d+[a-zA-Z]?[\s,]+\S")
_TRAILING_NUMBER_RX = re.compile(r"\S\s+\d+[a-zA-Z]?\b")
_MIN_ADDRESS_LENGTH = 10


def rescale(raw: int) -> int:
    return round((raw - MIN_RAW) * 100 / (MAX_RAW - MIN_RAW))


def priority_for(score: int) -> str:
    if score >= COMPLETE_AT:
        return "complete"
    if score < CRITICAL_BELOW:
        return "critical"
    if score < HIGH_BELOW:
        return "high"
    return "medium"


def address_is_malformed(entity: CanonicalEntity) -> bool:
    """House number missing (leading or trailing style), too short, or just the venue name."""
    address = (entity.address or "").strip()
    if address.lower() == entity.name.strip().lower():
        return True
    if len(address) < _MIN_ADDRESS_LENGTH:
        return True
    if _LEADING_NUMBER_RX.search(address):
        return False
    # Trailing numbers only count on the street part, not a postcode after a comma.
    street = address.split(",", 1)[0]
    return not _TRAILING_NUMBER_RX.search(street)


def website_has_host(website: str) -> bool:
    url = website.strip()
    parsed = urlparse(url)
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")
    host = parsed.hostname or ""
    return "." in host and not any(ch.isspace() for ch in host)


def has_image(entity: CanonicalEntity) -> bool:
    return bool(entity.photo_exterior_url or entity.photos)


class QualityScorer:
    def __init__(self, default_region: Optional[str] = None, threshold: int = COMPLETE_AT) -> None:
        self.default_region = default_region
        self.threshold = threshold

    def phone_is_valid(self, phone: str) -> bool:
        if self.default_region is None and not phone.strip().startswith("+"):
            # No region to parse a national number against.
            return True
        try:
            parsed = phonenumbers.parse(phone, self.default_region)
        except phonenumbers.NumberParseException:
            return False
        return phonenumbers.is_possible_number(parsed)

    def score(self, entity: CanonicalEntity) -> QualityScore:
        raw = 0
        missing: List[str] = []

        if not entity.address:
            missing.append("address")
        elif address_is_malformed(entity):
            raw += PENALTIES["address"]
            missing.append("address (malformed)")
        else:
            raw += POINTS["address"]

        if entity.latitude is None and entity.longitude is None:
            missing.append("coordinates")
        elif not valid_coordinates(entity.latitude, entity.longitude):
            raw += PENALTIES["coordinates"]
            missing.append("coordinates (invalid)")
        else:
            raw += POINTS["coordinates"]

        if not entity.phone:
            missing.append("phone")
        elif not self.phone_is_valid(entity.phone):
            raw += PENALTIES["phone"]
            missing.append("phone (unparsable)")
        else:
            raw += POINTS["phone"]

        if not entity.website:
            missing.append("website")
        elif not website_has_host(entity.website):
            raw += PENALTIES["website"]
            missing.append("website (no host)")
        else:
            raw += POINTS["website"]

        for name in ("hours", "description"):
            if getattr(entity, name):
                raw += POINTS[name]
            else:
                missing.append(name)

        if has_image(entity):
            raw += POINTS["image"]
        else:
            missing.append("image")

        sources = len(entity.source_names)
        if sources >= 2:
            raw += POINTS["sources"]
        elif sources == 1:
            raw += SINGLE_SOURCE_POINTS
            missing.append("sources (single)")
        else:
            missing.append("sources")

        if entity.status is EntityStatus.ACTIVE:
            raw += POINTS["status"]
        else:
            missing.append("status")

        score = rescale(raw)
        return QualityScore(
            score=score,
            missing_fields=missing,
            priority=priority_for(score),
            needs_enrichment=score < self.threshold,
        )

    def enrichment_needs(self, entity: CanonicalEntity) -> EnrichmentNeeds:
        missing = {
            "address": not entity.address,
            "state": not entity.state,
            "phone": not entity.phone,
            "website": not entity.website,
            "hours": not entity.hours,
            "image": not has_image(entity),
            "coordinates": not valid_coordinates(entity.latitude, entity.longitude),
        }
        return EnrichmentNeeds(
            needs_venue_data=any(missing[name] for name in ("address", "phone", "website", "hours")),
            needs_image=missing["image"],
            needs_geocoding=missing["coordinates"],
            missing=missing,
        )

    def needs_enrichment(self, entities: Iterable[CanonicalEntity]) -> List[Dict[str, Any]]:
        """Entities scoring under the threshold, worst first, with what they lack."""
        flagged = []
        for entity in entities:
            quality = self.score(entity)
            if not quality.needs_enrichment:
                continue
            needs = self.enrichment_needs(entity)
            flagged.append(
                {
                    "id": entity.id,
                    "slug": entity.slug,
                    "name": entity.name,
                    "city": entity.city,
                    "score": quality.score,
                    "priority": quality.priority,
                    "missing_fields": quality.missing_fields,
                    "needs_venue_data": needs.needs_venue_data,
                    "needs_image": needs.needs_image,
                    "needs_geocoding": needs.needs_geocoding,
                }
            )
        flagged.sort(key=lambda item: (item["score"], item["id"] or 0))
        return flagged

    def statistics(self, entities: Iterable[CanonicalEntity]) -> Dict[str, Any]:
        scores = [self.score(entity).score for entity in entities]
        total = len(scores)
        return {
            "total": total,
            "complete": sum(1 for score in scores if score >= COMPLETE_AT),
            "needs_enrichment": sum(1 for score in scores if score < self.threshold),
            "critical": sum(1 for score in scores if score < CRITICAL_BELOW),
            "average_score": round(sum(scores) / total, 1) if total else 0.0,
        }


def score(entity: CanonicalEntity, default_region: Optional[str] = None) -> QualityScore:
    return QualityScorer(default_region=default_region).score(entity)


def enrichment_needs(entity: CanonicalEntity) -> EnrichmentNeeds:
    return QualityScorer().enrichment_needs(entity)


def needs_enrichment(entities: Iterable[CanonicalEntity], threshold: int = COMPLETE_AT) -> List[Dict[str, Any]]:
    return QualityScorer(threshold=threshold).needs_enrichment(entities)
