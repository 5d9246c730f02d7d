"""Segment normalizer.

Maps property-type text and bedroom counts to canonical segments:

* residential: Studio, 1BR, 2BR, 3BR, 4BR, 5BR+, Villa, Townhouse, Penthouse, Apartment
* commercial: Office, Retail, Warehouse, Hotel, Commercial
* land: Plot, Land
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from pipelines.geo import normalize_text
from pipelines.model import CanonicalSegment, SegmentCategory

UNKNOWN_SEGMENT = "Unknown"

SEGMENT_CATEGORIES: Mapping[str, SegmentCategory] = {
    "Studio": "residential",
    "1BR": "residential",
    "2BR": "residential",
    "3BR": "residential",
    "4BR": "residential",
    "5BR+": "residential",
    "Villa": "residential",
    "Townhouse": "residential",
    "Penthouse": "residential",
    "Apartment": "residential",
    "Office": "commercial",
    "Retail": "commercial",
    "Warehouse": "commercial",
    "Hotel": "commercial",
    "Commercial": "commercial",
    "Plot": "land",
    "Land": "land",
    UNKNOWN_SEGMENT: "unknown",
}

BEDROOM_SEGMENTS: tuple[str, ...] = ("Studio", "1BR", "2BR", "3BR", "4BR", "5BR+")

# Form factors whose type string is authoritative even when a bedroom count is known.
FORM_FACTOR_SEGMENTS = frozenset({"Villa", "Townhouse", "Penthouse"})

PROPERTY_TYPE_ALIASES: Mapping[str, str] = {
    "studio": "Studio",
    "0br": "Studio",
    "0 br": "Studio",
    "0 bedroom": "Studio",
    "bachelor": "Studio",
    "1br": "1BR",
    "1 br": "1BR",
    "1 b r": "1BR",
    "1 bedroom": "1BR",
    "1bed": "1BR",
    "1 bed": "1BR",
    "one bedroom": "1BR",
    "2br": "2BR",
    "2 br": "2BR",
    "2 b r": "2BR",
    "2 bedroom": "2BR",
    "2bed": "2BR",
    "2 bed": "2BR",
    "two bedroom": "2BR",
    "3br": "3BR",
    "3 br": "3BR",
    "3 b r": "3BR",
    "3 bedroom": "3BR",
    "3bed": "3BR",
    "3 bed": "3BR",
    "three bedroom": "3BR",
    "4br": "4BR",
    "4 br": "4BR",
    "4 b r": "4BR",
    "4 bedroom": "4BR",
    "4bed": "4BR",
    "4 bed": "4BR",
    "four bedroom": "4BR",
    "5br": "5BR+",
    "5 br": "5BR+",
    "5 b r": "5BR+",
    "5 bedroom": "5BR+",
    "5bed": "5BR+",
    "5 bed": "5BR+",
    "five bedroom": "5BR+",
    "6br": "5BR+",
    "6 br": "5BR+",
    "7br": "5BR+",
    "7 br": "5BR+",
    "5+ bedroom": "5BR+",
    "5+ br": "5BR+",
    "5br+": "5BR+",
    "apartment": "Apartment",
    "apt": "Apartment",
    "flat": "Apartment",
    "unit": "Apartment",
    "villa": "Villa",
    "villas": "Villa",
    "detached villa": "Villa",
    "independent villa": "Villa",
    "townhouse": "Townhouse",
    "town house": "Townhouse",
    "townhome": "Townhouse",
    "penthouse": "Penthouse",
    "pent house": "Penthouse",
    "ph": "Penthouse",
    "office": "Office",
    "office space": "Office",
    "commercial office": "Office",
    "retail": "Retail",
    "shop": "Retail",
    "showroom": "Retail",
    "store": "Retail",
    "warehouse": "Warehouse",
    "industrial": "Warehouse",
    "factory": "Warehouse",
    "storage": "Warehouse",
    "hotel": "Hotel",
    "hotel apartment": "Hotel",
    "serviced apartment": "Hotel",
    "commercial": "Commercial",
    "plot": "Plot",
    "land": "Land",
    "residential plot": "Plot",
    "commercial plot": "Plot",
}

_ALIAS_KEYS: Mapping[str, str] = {
    normalize_text(alias): segment for alias, segment in PROPERTY_TYPE_ALIASES.items()
}
_CONTAINMENT_ORDER: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (alias, re.compile(rf"(?<![a-z0-9]){re.escape(alias)}(?![a-z0-9])"))
    for alias in sorted(_ALIAS_KEYS, key=lambda a: (-len(a), a))
)

_UNKNOWN = CanonicalSegment(segment=UNKNOWN_SEGMENT, category="unknown", confidence="unknown")

_ROOMS_PATTERNS = (
    re.compile(r"(\d+)\s*b\s*/?\s*r"),
    re.compile(r"(\d+)\s*bed"),
)


def _result(segment: str, confidence: str) -> CanonicalSegment:
    return CanonicalSegment(
        segment=segment,
        category=SEGMENT_CATEGORIES[segment],
        confidence=confidence,
    )


def segment_from_property_type(property_type: str | None) -> CanonicalSegment:
    """Map property-type text alone to a segment (exact alias, then containment)."""

    if not isinstance(property_type, str):
        return _UNKNOWN
    normalized = normalize_text(property_type)
    if not normalized:
        return _UNKNOWN

    direct = _ALIAS_KEYS.get(normalized)
    if direct:
        return _result(direct, "exact")

    for alias, pattern in _CONTAINMENT_ORDER:
        if pattern.search(normalized):
            return _result(_ALIAS_KEYS[alias], "inferred")

    return _UNKNOWN


def segment_from_bedrooms(bedrooms: int | None) -> CanonicalSegment:
    if bedrooms is None or bedrooms < 0:
        return _UNKNOWN
    index = min(int(bedrooms), len(BEDROOM_SEGMENTS) - 1)
    return _result(BEDROOM_SEGMENTS[index], "exact")


def normalize_segment(
    property_type: str | None = None, bedrooms: int | None = None
) -> CanonicalSegment:
    """Resolve the canonical segment for a property.

    An explicit bedroom count wins over an ambiguous type string, except when
    the type names a form factor (villa, townhouse, penthouse) or a
    non-residential category: a "Villa" with three bedrooms stays a Villa.
    """

    if bedrooms is not None and bedrooms >= 0:
        if property_type:
            by_type = segment_from_property_type(property_type)
            if by_type.segment in FORM_FACTOR_SEGMENTS:
                return by_type
            if by_type.category not in ("residential", "unknown"):
                return by_type
        return segment_from_bedrooms(bedrooms)

    if property_type:
        return segment_from_property_type(property_type)

    return _UNKNOWN


def parse_bedrooms(rooms: Any) -> int | None:
    """Parse upstream room text such as ``"Studio"``, ``"2 B/R"`` or ``"3 bed"``."""

    if isinstance(rooms, bool):
        return None
    if isinstance(rooms, int):
        return rooms if rooms >= 0 else None
    if not isinstance(rooms, str):
        return None
    text = rooms.lower().strip()
    if not text:
        return None
    if "studio" in text:
        return 0
    for pattern in _ROOMS_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    if text.isdigit():
        return int(text)
    return None


def all_segments() -> list[str]:
    return list(SEGMENT_CATEGORIES)


def segments_by_category(category: SegmentCategory) -> list[str]:
    return [segment for segment, cat in SEGMENT_CATEGORIES.items() if cat == category]


def is_valid_segment(segment: str) -> bool:
    return segment in SEGMENT_CATEGORIES


__all__ = [
    "UNKNOWN_SEGMENT",
    "SEGMENT_CATEGORIES",
    "BEDROOM_SEGMENTS",
    "PROPERTY_TYPE_ALIASES",
    "normalize_segment",
    "segment_from_property_type",
    "segment_from_bedrooms",
    "parse_bedrooms",
    "all_segments",
    "segments_by_category",
    "is_valid_segment",
]
