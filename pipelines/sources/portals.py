"""Brokerage-portal listing ingestor (Bayut, PropertyFinder).

Listings are captured as daily snapshots keyed by
``(org_id, portal, listing_id, as_of_date)``. Besides geo/segment
normalization the transform derives days on market and detects price cuts,
either from an explicit ``original_price`` or from the price stored for the
same listing on the previous calendar day.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from pipelines.common import coerce_float, fetch_json, iso_date, sqm_to_sqft
from pipelines.errors import TransformError
from pipelines.geo import normalize_geo
from pipelines.model import ListingSnapshotRow
from pipelines.ratelimit import RateLimiter, get_shared_limiter
from pipelines.segment import normalize_segment
from pipelines.sources.base import (
    FetchFn,
    RawRecord,
    SourceAdapter,
    SourceSettings,
    TransformContext,
)

PORTAL_TABLE = "portal_listings"

BAYUT = "Bayut"
PROPERTYFINDER = "PropertyFinder"
SUPPORTED_PORTALS: tuple[str, ...] = (BAYUT, PROPERTYFINDER)


def canonical_portal(name: str) -> str:
    """Match ``name`` to a supported portal regardless of case or spacing."""

    wanted = name.strip().lower().replace(" ", "")
    for portal in SUPPORTED_PORTALS:
        if portal.lower() == wanted:
            return portal
    raise ValueError(f"Unsupported portal '{name}'.")


PORTAL_BASE_URLS: Mapping[str, str] = {
    BAYUT: "https://api.bayut.com/v1",
    PROPERTYFINDER: "https://api.propertyfinder.ae/v1",
}

DEFAULT_PORTAL_AREAS: tuple[str, ...] = (
    "Dubai Marina",
    "Downtown Dubai",
    "Business Bay",
    "JVC",
    "Palm Jumeirah",
)


def listing_record_id(raw: RawRecord) -> str:
    value = raw.get("listing_id")
    if value is None:
        return ""
    return str(value).strip()


def build_bayut_params(query: Mapping[str, Any], offset: int, limit: int) -> dict[str, Any]:
    params: dict[str, Any] = {
        "purpose": "for-rent" if query.get("listing_type") == "rent" else "for-sale",
        "hits": limit,
        "page": offset // limit if limit else 0,
    }
    if query.get("area"):
        params["location"] = query["area"]
    if query.get("property_type"):
        params["category"] = query["property_type"]
    if query.get("bedrooms") is not None:
        params["beds"] = query["bedrooms"]
    return params


def build_propertyfinder_params(
    query: Mapping[str, Any], offset: int, limit: int
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "category": "rent" if query.get("listing_type") == "rent" else "buy",
        "per_page": limit,
        "page": (offset // limit if limit else 0) + 1,
    }
    if query.get("area"):
        params["location"] = query["area"]
    if query.get("property_type"):
        params["type"] = query["property_type"]
    return params


def days_on_market(listed_date: date | None, as_of: date) -> int | None:
    if listed_date is None:
        return None
    return max(0, (as_of - listed_date).days)


def detect_price_cut(
    price: float, original_price: float | None, previous_price: float | None
) -> tuple[bool, float | None]:
    """Return ``(had_price_cut, cut_pct)`` for a listing price.

    The explicit original price is checked first; otherwise the price stored for
    the previous day's snapshot is the reference.
    """

    if original_price and original_price > price:
        return True, (original_price - price) / original_price
    if previous_price and previous_price > price:
        return True, (previous_price - price) / previous_price
    return False, None


def _int_or_none(value: Any) -> int | None:
    number = coerce_float(value)
    return int(number) if number is not None else None


def transform_portal_listing(raw: RawRecord, context: TransformContext) -> ListingSnapshotRow:
    listing_id = listing_record_id(raw)
    if not listing_id:
        raise TransformError("Portal listing has no listing_id")

    portal = context.portal or str(raw.get("portal") or "").strip()
    if not portal:
        raise TransformError("Portal listing has no portal name", record_id=listing_id)

    price = coerce_float(raw.get("price"))
    if price is None or price <= 0:
        raise TransformError(f"Invalid price {raw.get('price')!r}", record_id=listing_id)

    location = raw.get("location") if isinstance(raw.get("location"), Mapping) else {}
    area_name = next(
        (
            str(location[key]).strip()
            for key in ("community", "area", "city")
            if isinstance(location.get(key), str) and location[key].strip()
        ),
        "",
    )
    geo = normalize_geo(area_name)

    bedrooms = _int_or_none(raw.get("bedrooms"))
    segment = normalize_segment(
        raw.get("property_sub_type") or raw.get("property_type"), bedrooms
    )

    size_sqft = coerce_float(raw.get("size_sqft"))
    if size_sqft is None:
        size_sqm = coerce_float(raw.get("size_sqm"))
        size_sqft = sqm_to_sqft(size_sqm) if size_sqm else None
    price_per_sqft = coerce_float(raw.get("price_per_sqft"))
    if price_per_sqft is None and size_sqft:
        price_per_sqft = price / size_sqft

    original_price = coerce_float(raw.get("original_price"))
    previous_price = context.previous_prices.get(listing_id)
    had_price_cut, price_cut_pct = detect_price_cut(price, original_price, previous_price)

    listed_raw = iso_date(raw.get("listed_date"))
    listed = date.fromisoformat(listed_raw) if listed_raw else None
    dom = days_on_market(listed, context.as_of_date)
    if dom is None:
        dom = _int_or_none(raw.get("days_on_market")) or 0

    listing_type = "rent" if str(raw.get("listing_type") or "").lower() == "rent" else "sale"

    return ListingSnapshotRow(
        org_id=context.org_id,
        portal=portal,
        listing_id=listing_id,
        as_of_date=context.as_of_date,
        geo_type=geo.geo_type,
        geo_id=geo.geo_id,
        geo_name=geo.geo_name,
        segment=segment.segment,
        property_type=raw.get("property_type"),
        listing_type=listing_type,
        price=price,
        price_per_sqft=price_per_sqft,
        original_price=original_price,
        previous_price=previous_price,
        had_price_cut=had_price_cut,
        price_cut_pct=price_cut_pct,
        size_sqft=size_sqft,
        bedrooms=bedrooms,
        bathrooms=_int_or_none(raw.get("bathrooms")),
        is_active=bool(raw.get("is_active", True)),
        days_on_market=dom,
        listed_date=listed,
        is_verified=bool(raw.get("is_verified", False)),
        metadata={
            "title": raw.get("title"),
            "building": location.get("building"),
            "furnishing": raw.get("furnishing"),
            "completion_status": raw.get("completion_status"),
            "agent": raw.get("agent"),
            "url": raw.get("url"),
            "currency": raw.get("price_currency") or "AED",
            "geo_confidence": geo.confidence,
            "segment_confidence": segment.confidence,
            "segment_category": segment.category,
        },
    )


def build_portal_adapter(
    portal: str,
    settings: SourceSettings,
    *,
    fetch: FetchFn = fetch_json,
    limiter: RateLimiter | None = None,
) -> SourceAdapter:
    portal = canonical_portal(portal)
    build_params = build_bayut_params if portal == BAYUT else build_propertyfinder_params
    return SourceAdapter(
        name=portal.lower(),
        table=PORTAL_TABLE,
        endpoint="listings",
        build_params=build_params,
        transform=transform_portal_listing,
        record_id=listing_record_id,
        settings=settings,
        limiter=limiter
        or get_shared_limiter(portal.lower(), settings.max_requests, settings.window_seconds),
        fetch=fetch,
    )


__all__ = [
    "PORTAL_TABLE",
    "BAYUT",
    "PROPERTYFINDER",
    "SUPPORTED_PORTALS",
    "canonical_portal",
    "PORTAL_BASE_URLS",
    "DEFAULT_PORTAL_AREAS",
    "build_portal_adapter",
    "build_bayut_params",
    "build_propertyfinder_params",
    "transform_portal_listing",
    "detect_price_cut",
    "days_on_market",
    "listing_record_id",
]
