"""Ejari rental-contract ingestor."""

from __future__ import annotations

from typing import Any, Mapping

from pipelines.common import coerce_float, fetch_json, first_text, iso_date, sqm_to_sqft
from pipelines.errors import TransformError
from pipelines.geo import normalize_geo
from pipelines.model import RentalContractRow
from pipelines.ratelimit import RateLimiter, get_shared_limiter
from pipelines.segment import normalize_segment, parse_bedrooms
from pipelines.sources.base import (
    FetchFn,
    RawRecord,
    SourceAdapter,
    SourceSettings,
    TransformContext,
)

EJARI_API_BASE_URL = "https://api.dubaiapi.ae/ejari/v1"
EJARI_TABLE = "ejari_contracts"
DEFAULT_CONTRACT_MONTHS = 12


def ejari_record_id(raw: RawRecord) -> str:
    return first_text(raw, "contract_id", "contract_number")


def build_ejari_params(query: Mapping[str, Any], offset: int, limit: int) -> dict[str, Any]:
    params: dict[str, Any] = {"limit": limit, "offset": offset}
    for key in ("from_date", "to_date"):
        if query.get(key):
            params[key] = str(query[key])
    for key in ("area_name", "property_type", "property_usage"):
        if query.get(key):
            params[key] = query[key]
    return params


def _bedrooms(raw: RawRecord) -> int | None:
    explicit = raw.get("bedrooms")
    if isinstance(explicit, int) and not isinstance(explicit, bool) and explicit >= 0:
        return explicit
    return parse_bedrooms(raw.get("rooms"))


def transform_ejari_contract(raw: RawRecord, context: TransformContext) -> RentalContractRow:
    external_id = ejari_record_id(raw)
    if not external_id:
        raise TransformError("Ejari contract has no contract_id")

    contract_start = iso_date(raw.get("contract_start"))
    if not contract_start:
        raise TransformError(
            f"Invalid contract_start {raw.get('contract_start')!r}", record_id=external_id
        )

    annual_rent = coerce_float(raw.get("annual_rent"))
    if annual_rent is None or annual_rent <= 0:
        raise TransformError(
            f"Invalid annual_rent {raw.get('annual_rent')!r}", record_id=external_id
        )

    geo = normalize_geo(first_text(raw, "area_name_en", "area_name", "community_name"))
    bedrooms = _bedrooms(raw)
    segment = normalize_segment(
        first_text(raw, "property_sub_type", "property_type") or None, bedrooms
    )

    size_sqm = coerce_float(raw.get("property_size"))
    usage = str(raw.get("property_usage") or "").strip().lower()
    duration = raw.get("contract_duration_months")
    if not isinstance(duration, int) or isinstance(duration, bool) or duration <= 0:
        duration = DEFAULT_CONTRACT_MONTHS

    return RentalContractRow(
        org_id=context.org_id,
        external_id=external_id,
        contract_start=contract_start,
        contract_end=iso_date(raw.get("contract_end")),
        geo_type=geo.geo_type,
        geo_id=geo.geo_id,
        geo_name=geo.geo_name,
        segment=segment.segment,
        property_type=raw.get("property_type"),
        property_usage="commercial" if usage == "commercial" else "residential",
        annual_rent=annual_rent,
        monthly_rent=annual_rent / 12,
        size_sqft=sqm_to_sqft(size_sqm) if size_sqm and size_sqm > 0 else None,
        contract_duration_months=duration,
        is_renewal=bool(raw.get("is_renewal", False)),
        metadata={
            "building_name": raw.get("building_name"),
            "rooms": raw.get("rooms"),
            "bedrooms": bedrooms,
            "property_size_sqm": size_sqm,
            "contract_value": raw.get("contract_value"),
            "landlord_type": raw.get("landlord_type"),
            "tenant_type": raw.get("tenant_type"),
            "registration_date": raw.get("registration_date"),
            "geo_confidence": geo.confidence,
            "segment_confidence": segment.confidence,
            "segment_category": segment.category,
        },
    )


def build_ejari_adapter(
    settings: SourceSettings,
    *,
    fetch: FetchFn = fetch_json,
    limiter: RateLimiter | None = None,
) -> SourceAdapter:
    return SourceAdapter(
        name="ejari",
        table=EJARI_TABLE,
        endpoint="contracts",
        build_params=build_ejari_params,
        transform=transform_ejari_contract,
        record_id=ejari_record_id,
        settings=settings,
        limiter=limiter
        or get_shared_limiter("ejari", settings.max_requests, settings.window_seconds),
        fetch=fetch,
    )


__all__ = [
    "EJARI_API_BASE_URL",
    "EJARI_TABLE",
    "build_ejari_adapter",
    "build_ejari_params",
    "transform_ejari_contract",
    "ejari_record_id",
]
