"""Geo normalizer.

Maps free-text area names from DLD, Ejari and the portals onto canonical
``CanonicalGeo`` entities. The mapping is pure and total: the same input always
yields the same output and unrecognized input falls back to a slug of itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping

from rapidfuzz import fuzz, process

from pipelines.model import CanonicalGeo, GeoType


@dataclass(frozen=True)
class GeoReference:
    """A canonical area and the spellings it is known by."""

    geo_id: str
    canonical_name: str
    geo_type: GeoType = "community"
    parent_id: str | None = "dubai"
    aliases: tuple[str, ...] = ()
    dld_area_name: str | None = None


GEO_REFERENCES: tuple[GeoReference, ...] = (
    GeoReference("dubai", "Dubai", geo_type="city", parent_id=None),
    GeoReference(
        "dubai_marina",
        "Dubai Marina",
        aliases=("marina", "marsa dubai", "dubai marina walk"),
        dld_area_name="Marsa Dubai",
    ),
    GeoReference(
        "downtown_dubai",
        "Downtown Dubai",
        aliases=("downtown", "burj khalifa", "burj khalifa district"),
        dld_area_name="Burj Khalifa",
    ),
    GeoReference(
        "business_bay",
        "Business Bay",
        aliases=("bb", "business bay dubai"),
    ),
    GeoReference(
        "palm_jumeirah",
        "Palm Jumeirah",
        aliases=("the palm", "palm", "palm jumeira"),
        dld_area_name="Palm Jumeirah",
    ),
    GeoReference(
        "jvc",
        "Jumeirah Village Circle",
        aliases=("jvc", "jumeirah village", "al barsha south fourth"),
        dld_area_name="Al Barsha South Fourth",
    ),
    GeoReference(
        "jvt",
        "Jumeirah Village Triangle",
        aliases=("jvt", "al barsha south fifth"),
        dld_area_name="Al Barsha South Fifth",
    ),
    GeoReference(
        "jlt",
        "Jumeirah Lakes Towers",
        aliases=("jlt", "jumeirah lake towers", "al thanyah fifth"),
        dld_area_name="Al Thanyah Fifth",
    ),
    GeoReference(
        "jbr",
        "Jumeirah Beach Residence",
        aliases=("jbr", "jumeirah beach residences"),
    ),
    GeoReference(
        "dubai_hills_estate",
        "Dubai Hills Estate",
        aliases=("dubai hills", "dhe", "hadaeq sheikh mohammed bin rashid"),
        dld_area_name="Hadaeq Sheikh Mohammed Bin Rashid",
    ),
    GeoReference(
        "arabian_ranches",
        "Arabian Ranches",
        aliases=("ranches", "wadi al safa 6"),
        dld_area_name="Wadi Al Safa 6",
    ),
    GeoReference(
        "difc",
        "DIFC",
        geo_type="district",
        aliases=("dubai international financial centre", "dubai international financial center"),
    ),
    GeoReference(
        "city_walk",
        "City Walk",
        aliases=("citywalk", "al wasl city walk"),
    ),
    GeoReference(
        "dubai_creek_harbour",
        "Dubai Creek Harbour",
        aliases=("creek harbour", "dubai creek harbor", "al khairan first"),
        dld_area_name="Al Khairan First",
    ),
    GeoReference(
        "dubai_south",
        "Dubai South",
        geo_type="district",
        aliases=("dubai world central", "dwc", "madinat al mataar"),
        dld_area_name="Madinat Al Mataar",
    ),
    GeoReference(
        "mbr_city",
        "Mohammed Bin Rashid City",
        geo_type="district",
        aliases=("mbr city", "mbrc", "meydan"),
    ),
    GeoReference(
        "al_furjan",
        "Al Furjan",
        aliases=("furjan",),
    ),
    GeoReference(
        "damac_hills",
        "DAMAC Hills",
        aliases=("akoya", "damac hills 1"),
    ),
)

UNKNOWN_GEO_ID = "unknown"

_PUNCTUATION = re.compile(r"[,.\-'_/()]")
_WHITESPACE = re.compile(r"\s+")
_SLUG_STRIP = re.compile(r"[^a-z0-9\s]")


def normalize_text(text: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""

    lowered = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def slugify(text: str) -> str:
    cleaned = _SLUG_STRIP.sub("", normalize_text(text))
    return "_".join(cleaned.split())


def _build_alias_index(
    references: Iterable[GeoReference],
) -> tuple[dict[str, GeoReference], dict[str, str]]:
    by_id: dict[str, GeoReference] = {}
    aliases: dict[str, str] = {}
    for ref in references:
        by_id[ref.geo_id] = ref
        names = [ref.canonical_name, ref.geo_id.replace("_", " "), *ref.aliases]
        if ref.dld_area_name:
            names.append(ref.dld_area_name)
        for name in names:
            key = normalize_text(name)
            if key:
                aliases.setdefault(key, ref.geo_id)
    return by_id, aliases


_REFS_BY_ID, _ALIAS_INDEX = _build_alias_index(GEO_REFERENCES)

# Longest alias first so "dubai marina walk" beats "marina"; ties break
# alphabetically to keep containment matches deterministic.
_CONTAINMENT_ORDER: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (alias, re.compile(rf"\b{re.escape(alias)}\b"))
    for alias in sorted(_ALIAS_INDEX, key=lambda a: (-len(a), a))
)

# Misspellings only: short aliases such as "jbr" would match unrelated text.
FUZZY_SCORE_CUTOFF = 88.0
_FUZZY_MIN_ALIAS_LENGTH = 6
_FUZZY_CHOICES: tuple[str, ...] = tuple(
    sorted(alias for alias in _ALIAS_INDEX if len(alias) >= _FUZZY_MIN_ALIAS_LENGTH)
)


def _from_reference(ref: GeoReference, confidence: str) -> CanonicalGeo:
    return CanonicalGeo(
        geo_type=ref.geo_type,
        geo_id=ref.geo_id,
        geo_name=ref.canonical_name,
        confidence=confidence,
    )


def normalize_geo(area_name: str | None) -> CanonicalGeo:
    """Map a free-text area name to its canonical geography."""

    raw = area_name if isinstance(area_name, str) else ""
    normalized = normalize_text(raw)
    if not normalized:
        return CanonicalGeo(
            geo_type="community",
            geo_id=UNKNOWN_GEO_ID,
            geo_name="Unknown",
            confidence="unknown",
        )

    exact = _ALIAS_INDEX.get(normalized)
    if exact:
        return _from_reference(_REFS_BY_ID[exact], "exact")

    for alias, pattern in _CONTAINMENT_ORDER:
        if pattern.search(normalized):
            return _from_reference(_REFS_BY_ID[_ALIAS_INDEX[alias]], "inferred")

    match = process.extractOne(
        normalized, _FUZZY_CHOICES, scorer=fuzz.ratio, score_cutoff=FUZZY_SCORE_CUTOFF
    )
    if match is not None:
        return _from_reference(_REFS_BY_ID[_ALIAS_INDEX[match[0]]], "inferred")

    return CanonicalGeo(
        geo_type="community",
        geo_id=slugify(raw) or UNKNOWN_GEO_ID,
        geo_name=_WHITESPACE.sub(" ", raw).strip(),
        confidence="unknown",
    )


def normalize_geos(area_names: Iterable[str]) -> Mapping[str, CanonicalGeo]:
    """Map several area names at once, keyed by the original input."""

    return {name: normalize_geo(name) for name in area_names}


def get_geo_reference(geo_id: str) -> GeoReference | None:
    return _REFS_BY_ID.get(geo_id)


def all_geo_references() -> tuple[GeoReference, ...]:
    return GEO_REFERENCES


__all__ = [
    "GeoReference",
    "GEO_REFERENCES",
    "UNKNOWN_GEO_ID",
    "FUZZY_SCORE_CUTOFF",
    "normalize_text",
    "slugify",
    "normalize_geo",
    "normalize_geos",
    "get_geo_reference",
    "all_geo_references",
]
