"""Dubai Land Department (DLD) sale-transaction ingestor.

Turns DLD transaction-registry records into normalized ``TransactionRow``
records ready for idempotent upsert.
"""

from __future__ import annotations

from typing import Any, Mapping

from pipelines.common import coerce_float, fetch_json, first_text, iso_date, sqm_to_sqft
from pipelines.errors import TransformError
from pipelines.geo import normalize_geo
from pipelines.model import TransactionRow
from pipelines.ratelimit import RateLimiter, get_shared_limiter
from pipelines.segment import normalize_segment, parse_bedrooms
from pipelines.sources.base import (
    FetchFn,
    RawRecord,
    SourceAdapter,
    SourceSettings,
    TransformContext,
)

DLD_API_BASE_URL = "https://api.dubaiapi.ae/dld/v1"
DLD_TABLE = "dld_transactions"


def dld_record_id(raw: RawRecord) -> str:
    return first_text(raw, "transaction_id", "transaction_number")


def build_dld_params(query: Mapping[str, Any], offset: int, limit: int) -> dict[str, Any]:
    params: dict[str, Any] = {
        "transaction_type": query.get("transaction_type") or "Sales",
        "limit": limit,
        "offset": offset,
    }
    if query.get("from_date"):
        params["from_date"] = str(query["from_date"])
    if query.get("to_date"):
        params["to_date"] = str(query["to_date"])
    if query.get("area_name"):
        params["area_name"] = query["area_name"]
    if query.get("property_type"):
        params["property_type"] = query["property_type"]
    return params


def transform_dld_transaction(raw: RawRecord, context: TransformContext) -> TransactionRow:
    """Normalize one DLD transaction; raises ``TransformError`` when unusable."""

    external_id = dld_record_id(raw)
    if not external_id:
        raise TransformError("DLD transaction has no transaction_id")

    transaction_date = iso_date(raw.get("transaction_date"))
    if not transaction_date:
        raise TransformError(
            f"Invalid transaction_date {raw.get('transaction_date')!r}", record_id=external_id
        )

    sale_price = coerce_float(raw.get("transaction_value"))
    if sale_price is None or sale_price <= 0:
        raise TransformError(
            f"Invalid transaction_value {raw.get('transaction_value')!r}", record_id=external_id
        )

    geo = normalize_geo(first_text(raw, "area_name_en", "area_name"))
    bedrooms = parse_bedrooms(raw.get("rooms"))
    segment = normalize_segment(
        first_text(raw, "property_sub_type", "property_type") or None, bedrooms
    )

    area_meters = coerce_float(raw.get("procedure_area")) or coerce_float(raw.get("actual_area")) or 0.0
    area_sqft = sqm_to_sqft(area_meters) if area_meters > 0 else None
    price_per_sqft = sale_price / area_sqft if area_sqft else None

    return TransactionRow(
        org_id=context.org_id,
        external_id=external_id,
        transaction_date=transaction_date,
        geo_type=geo.geo_type,
        geo_id=geo.geo_id,
        geo_name=geo.geo_name,
        segment=segment.segment,
        property_type=raw.get("property_type"),
        sale_price=sale_price,
        area_sqft=area_sqft,
        price_per_sqft=price_per_sqft,
        is_offplan=bool(raw.get("is_offplan", False)),
        is_freehold=bool(raw.get("is_freehold", True)),
        metadata={
            "property_sub_type": raw.get("property_sub_type"),
            "property_usage": raw.get("property_usage"),
            "rooms": raw.get("rooms"),
            "bedrooms": bedrooms,
            "building_name": raw.get("building_name"),
            "project_name": raw.get("project_name"),
            "area_meters": area_meters or None,
            "registration_date": raw.get("registration_date"),
            "transaction_type": raw.get("transaction_type"),
            "nearest_metro": raw.get("nearest_metro"),
            "geo_confidence": geo.confidence,
            "segment_confidence": segment.confidence,
            "segment_category": segment.category,
        },
    )


def build_dld_adapter(
    settings: SourceSettings,
    *,
    fetch: FetchFn = fetch_json,
    limiter: RateLimiter | None = None,
) -> SourceAdapter:
    return SourceAdapter(
        name="dld",
        table=DLD_TABLE,
        endpoint="transactions",
        build_params=build_dld_params,
        transform=transform_dld_transaction,
        record_id=dld_record_id,
        settings=settings,
        limiter=limiter
        or get_shared_limiter("dld", settings.max_requests, settings.window_seconds),
        fetch=fetch,
    )


__all__ = [
    "DLD_API_BASE_URL",
    "DLD_TABLE",
    "build_dld_adapter",
    "build_dld_params",
    "transform_dld_transaction",
    "dld_record_id",
]
