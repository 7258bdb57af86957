"""Boundary validation: turn loosely-typed provider/extractor JSON into typed records."""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from boothworker.dedup.geo import valid_coordinates
from boothworker.models import CandidateEntity

logger = logging.getLogger(__name__)

_PUNCTUATION_RX = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RX = re.compile(r"\s+")
_ADDRESS_ABBREVIATIONS = (
    (re.compile(r"\bstreet\b"), "st"),
    (re.compile(r"\bavenue\b"), "ave"),
    (re.compile(r"\bboulevard\b"), "blvd"),
    (re.compile(r"\bdrive\b"), "dr"),
    (re.compile(r"\broad\b"), "rd"),
    (re.compile(r"\bstrasse\b|\bstraße\b"), "str"),
)

_TEXT_FIELDS = (
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


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_text(value: Optional[str]) -> str:
    """Lower-case, punctuation-stripped, whitespace-collapsed form used for comparisons."""
    if not value:
        return ""
    cleaned = _PUNCTUATION_RX.sub(" ", value.lower()).replace("_", " ")
    return _WHITESPACE_RX.sub(" ", cleaned).strip()


def address_key(address: Optional[str]) -> Optional[str]:
    """Comparable address form; street-type words abbreviated so variants collide."""
    key = normalize_text(address)
    if not key:
        return None
    for pattern, replacement in _ADDRESS_ABBREVIATIONS:
        key = pattern.sub(replacement, key)
    return key


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    items = []
    for item in value:
        text = _strip_or_none(item)
        if text and text not in items:
            items.append(text)
    return items


def parse_candidate(raw: Any, source_name: str, source_url: str) -> Optional[CandidateEntity]:
    """Validate one extracted booth; ``None`` when a required field is missing."""
    if not isinstance(raw, dict):
        logger.debug("Skipping non-object candidate: %r", raw)
        return None

    name = _strip_or_none(raw.get("name"))
    city = _strip_or_none(raw.get("city"))
    country = _strip_or_none(raw.get("country"))
    if not name or not city or not country:
        logger.info("Skipping candidate missing name/city/country: name=%s city=%s country=%s", name, city, country)
        return None

    latitude = _safe_float(raw.get("latitude"))
    longitude = _safe_float(raw.get("longitude"))
    if not valid_coordinates(latitude, longitude):
        if latitude is not None or longitude is not None:
            logger.debug("Dropping unusable coordinates for %s: %s,%s", name, latitude, longitude)
        latitude = longitude = None

    values = {field_name: _strip_or_none(raw.get(field_name)) for field_name in _TEXT_FIELDS}
    return CandidateEntity(
        name=name,
        city=city,
        country=country,
        source_url=_strip_or_none(raw.get("source_url")) or source_url,
        source_name=_strip_or_none(raw.get("source_name")) or source_name,
        latitude=latitude,
        longitude=longitude,
        photos=_string_list(raw.get("photos")),
        raw_snapshot=raw,
        **values,
    )


def parse_candidates(payload: Any, source_name: str, source_url: str) -> List[CandidateEntity]:
    """Extract the ``booths`` array of an extraction response into candidates."""
    if not isinstance(payload, dict):
        logger.warning("Extraction payload is not an object: %s", type(payload).__name__)
        return []
    items = payload.get("booths")
    if not isinstance(items, list):
        logger.warning("Extraction payload missing booths array. keys=%s", list(payload.keys())[:10])
        return []

    candidates: List[CandidateEntity] = []
    for raw in items:
        candidate = parse_candidate(raw, source_name, source_url)
        if candidate is not None:
            candidates.append(candidate)
    skipped = len(items) - len(candidates)
    if skipped:
        logger.info("Skipped %d of %d extracted booths that failed validation", skipped, len(items))
    return candidates


def normalize_pages(pages: Iterable[Any]) -> List[Dict[str, Any]]:
    """Keep pages that carry some content; drop anything that is not a page object."""
    normalized: List[Dict[str, Any]] = []
    for page in pages or []:
        if not isinstance(page, dict):
            continue
        metadata = page.get("metadata") if isinstance(page.get("metadata"), dict) else {}
        markdown = page.get("markdown") if isinstance(page.get("markdown"), str) else None
        html = page.get("html") if isinstance(page.get("html"), str) else None
        if not markdown and not html:
            continue
        normalized.append(
            {
                "url": _strip_or_none(page.get("url")) or _strip_or_none(metadata.get("sourceURL")),
                "markdown": markdown,
                "html": html,
                "metadata": metadata,
            }
        )
    return normalized
