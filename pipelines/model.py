"""Canonical data model for ingested market rows, signals and investor relevance."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

GeoType = Literal["community", "district", "city"]
Confidence = Literal["exact", "inferred", "unknown"]
SegmentCategory = Literal["residential", "commercial", "land", "unknown"]
RiskTolerance = Literal["low", "medium", "high"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CanonicalGeo(BaseModel):
    """Stable representation of a location, independent of upstream spelling."""

    model_config = ConfigDict(frozen=True)

    geo_type: GeoType = Field(..., description="Granularity of the geography.")
    geo_id: str = Field(..., description="Stable slug identifier (e.g. 'jvc').")
    geo_name: str = Field(..., description="Human-readable geography name.")
    confidence: Confidence = Field(..., description="How the mapping was resolved.")


class CanonicalSegment(BaseModel):
    """Canonical property segment and its category."""

    model_config = ConfigDict(frozen=True)

    segment: str = Field(..., description="Segment label (e.g. '1BR', 'Villa', 'Office').")
    category: SegmentCategory = Field(..., description="Broad property category.")
    confidence: Confidence = Field(..., description="How the mapping was resolved.")


class _CanonicalRow(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    org_id: str = Field(..., description="Organization scope the row belongs to.")
    geo_type: GeoType
    geo_id: str
    geo_name: str
    segment: str
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Selected raw fields and normalization confidences kept for traceability.",
    )


class TransactionRow(_CanonicalRow):
    """A registered sale transaction."""

    external_id: str = Field(..., description="Upstream transaction identifier.")
    transaction_date: date
    property_type: Optional[str] = None
    sale_price: float = Field(..., description="Transaction value in AED.")
    area_sqft: Optional[float] = None
    price_per_sqft: Optional[float] = None
    is_offplan: bool = False
    is_freehold: bool = True
    currency: str = "AED"

    @property
    def idempotency_key(self) -> tuple[str, str]:
        return (self.org_id, self.external_id)


class RentalContractRow(_CanonicalRow):
    """A registered rental contract."""

    external_id: str = Field(..., description="Upstream contract identifier.")
    contract_start: date
    contract_end: Optional[date] = None
    property_type: Optional[str] = None
    property_usage: Literal["residential", "commercial"] = "residential"
    annual_rent: float = Field(..., description="Annual rent in AED.")
    monthly_rent: float = Field(..., description="Annual rent divided by twelve.")
    size_sqft: Optional[float] = None
    contract_duration_months: int = 12
    is_renewal: bool = False
    currency: str = "AED"

    @property
    def idempotency_key(self) -> tuple[str, str]:
        return (self.org_id, self.external_id)


class ListingSnapshotRow(_CanonicalRow):
    """One daily observation of a portal listing."""

    portal: str = Field(..., description="Portal name, e.g. 'Bayut'.")
    listing_id: str
    as_of_date: date = Field(..., description="Snapshot date; listings are re-observed daily.")
    property_type: Optional[str] = None
    listing_type: Literal["sale", "rent"] = "sale"
    price: float
    price_per_sqft: Optional[float] = None
    original_price: Optional[float] = None
    previous_price: Optional[float] = Field(
        default=None, description="Price stored for the same listing on the previous day."
    )
    had_price_cut: bool = False
    price_cut_pct: Optional[float] = None
    size_sqft: Optional[float] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    is_active: bool = True
    days_on_market: int = 0
    listed_date: Optional[date] = None
    is_verified: bool = False

    @property
    def idempotency_key(self) -> tuple[str, str, str, date]:
        return (self.org_id, self.portal, self.listing_id, self.as_of_date)


CanonicalMarketRow = TransactionRow | RentalContractRow | ListingSnapshotRow


class MarketSignal(BaseModel):
    """A market-moving signal produced by the (external) detection layer."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    org_id: str = Field(..., min_length=1)
    source_type: Literal["official", "portal"] = "official"
    source: str = ""
    signal_type: str = Field(..., min_length=1, description="e.g. 'price_change', 'supply_spike'.")
    geo_type: str = "community"
    geo_id: str = Field(..., min_length=1)
    geo_name: Optional[str] = None
    segment: Optional[str] = None
    metric: str = Field(..., min_length=1, description="e.g. 'median_ask_price', 'gross_yield'.")
    timeframe: str = "7d"
    current_value: float
    prev_value: Optional[float] = None
    delta_pct: Optional[float] = None
    confidence_score: float = Field(default=1.0, ge=0.0, le=1.0)
    evidence: Any = None
    signal_key: str = ""

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _default_confidence(cls, value: Any) -> Any:
        return 1.0 if value is None else value


class InvestorMandate(BaseModel):
    """An investor's declared preferences used as the matching target."""

    model_config = ConfigDict(frozen=True)

    preferred_geo_ids: list[str] = Field(default_factory=list)
    preferred_segments: list[str] = Field(default_factory=list)
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)
    yield_target: Optional[float] = None
    risk_tolerance: RiskTolerance = "medium"
    open: bool = False

    @field_validator("preferred_geo_ids", "preferred_segments", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("risk_tolerance", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        if value is None:
            return "medium"
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_budget(self) -> "InvestorMandate":
        if (
            self.budget_min is not None
            and self.budget_max is not None
            and self.budget_min > self.budget_max
        ):
            raise ValueError("budget_min must not exceed budget_max")
        return self

    @property
    def is_open(self) -> bool:
        """Open mandates carry no geo/segment preference."""

        return self.open or (not self.preferred_geo_ids and not self.preferred_segments)


class Investor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    org_id: Optional[str] = None
    name: Optional[str] = None
    mandate: InvestorMandate = Field(default_factory=InvestorMandate)


class ExposureFact(BaseModel):
    """Whether an investor already holds property in a geography."""

    model_config = ConfigDict(frozen=True)

    investor_id: str
    geo_id: str
    has_exposure: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class RelevanceTarget(BaseModel):
    """Outcome of scoring one signal against one investor."""

    model_config = ConfigDict(frozen=True)

    org_id: str
    signal_id: str
    investor_id: str
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    matched_dimensions: list[str] = Field(default_factory=list)
    reason_payload: dict[str, Any] = Field(default_factory=dict)
    status: str = "new"
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.org_id, self.signal_id, self.investor_id)


class SkippedInvestor(BaseModel):
    model_config = ConfigDict(frozen=True)

    investor_id: str
    reason: str = Field(..., description="Machine-readable skip reason.")
    detail: Optional[str] = None


class IngestionResult(BaseModel):
    """Structured outcome of one ingestion job."""

    source: str
    success: bool
    fetched: int = 0
    ingested: int = 0
    skipped: int = 0
    price_cuts_detected: int = 0
    errors: list[str] = Field(default_factory=list)
    date_range: Optional[tuple[date, date]] = None
    as_of_date: Optional[date] = None
    duration_ms: int = 0


class PipelineResult(BaseModel):
    """Aggregate of the per-source results of one ingestion pipeline run."""

    success: bool
    results: list[IngestionResult] = Field(default_factory=list)
    skipped_sources: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def total_fetched(self) -> int:
        return sum(result.fetched for result in self.results)

    @property
    def total_ingested(self) -> int:
        return sum(result.ingested for result in self.results)

    @property
    def total_price_cuts(self) -> int:
        return sum(result.price_cuts_detected for result in self.results)


__all__ = [
    "CanonicalGeo",
    "CanonicalSegment",
    "TransactionRow",
    "RentalContractRow",
    "ListingSnapshotRow",
    "CanonicalMarketRow",
    "MarketSignal",
    "InvestorMandate",
    "Investor",
    "ExposureFact",
    "RelevanceTarget",
    "SkippedInvestor",
    "IngestionResult",
    "PipelineResult",
]
