"""Relevance scoring of one market signal against a population of investor mandates.

The engine is a pure function of its inputs: the only side input is the
``get_exposure`` lookup, which is injected by the caller. Persistence of the
resulting targets is the caller's responsibility (see ``jobs.map_signals``).

Score for one investor::

    raw    = sum of the weights of every matched dimension
    scaled = clamp(raw, 0, 1) * signal.confidence_score
    final  = min(scaled, low_risk_cap)  if risky signal and risk_tolerance == "low"

An investor is targeted when ``final >= threshold``; everybody else is
reported in ``skipped`` with a machine-readable reason.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from pydantic import ValidationError

from pipelines.errors import ExposureLookupError, ScoringInputError
from pipelines.model import (
    ExposureFact,
    Investor,
    InvestorMandate,
    MarketSignal,
    RelevanceTarget,
    SkippedInvestor,
)
from pipelines.segment import (
    BEDROOM_SEGMENTS,
    UNKNOWN_SEGMENT,
    normalize_segment,
)

logger = logging.getLogger(__name__)

NO_MANDATE_OVERLAP = "no_mandate_overlap"
BELOW_RELEVANCE_THRESHOLD = "below_relevance_threshold"
INVALID_MANDATE = "invalid_mandate"
INVALID_SIGNAL = "invalid_signal"
EXPOSURE_LOOKUP_FAILED = "exposure_lookup_failed"

RISKY_SIGNAL_TYPES: frozenset[str] = frozenset(
    {"supply_spike", "discounting_spike", "risk_flag", "staleness_rise"}
)

_PRICE_METRIC_MARKERS = ("price", "ask", "psf", "value")
_YIELD_METRIC_MARKERS = ("yield", "cap_rate")
_CATEGORY_NAMES = frozenset({"residential", "commercial", "land"})

ExposureResult = Union[ExposureFact, Mapping[str, Any], None]
ExposureLookup = Callable[[str, str, str], Union[ExposureResult, Awaitable[ExposureResult]]]


@dataclass(frozen=True)
class RelevanceWeights:
    """Dimension weights and the gates applied after summing them."""

    geo: float = 0.33
    geo_open: float = 0.10
    segment: float = 0.15
    budget: float = 0.30
    yield_: float = 0.25
    exposure: float = 0.12
    threshold: float = 0.30
    low_risk_cap: float = 0.65
    risky_signal_types: frozenset[str] = field(default=RISKY_SIGNAL_TYPES)

    def as_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["yield"] = payload.pop("yield_")
        payload["risky_signal_types"] = sorted(self.risky_signal_types)
        return payload


DEFAULT_WEIGHTS = RelevanceWeights()


@dataclass
class TargetComputation:
    rows: list[RelevanceTarget] = field(default_factory=list)
    skipped: list[SkippedInvestor] = field(default_factory=list)


def is_price_metric(metric: str | None) -> bool:
    name = (metric or "").lower()
    return any(marker in name for marker in _PRICE_METRIC_MARKERS)


def is_yield_metric(metric: str | None) -> bool:
    name = (metric or "").lower()
    return any(marker in name for marker in _YIELD_METRIC_MARKERS)


def segment_compatible(signal_segment: str | None, preferred: Iterable[str]) -> str | None:
    """Return the preferred segment the signal's segment satisfies, if any.

    A preference matches the same canonical segment, a category name
    (``residential`` matches every residential segment), or ``Apartment``
    against any bedroom-count segment.
    """

    if not signal_segment:
        return None
    signal_canonical = normalize_segment(signal_segment)
    signal_label = signal_canonical.segment
    if signal_label == UNKNOWN_SEGMENT:
        signal_label = signal_segment.strip()

    for wanted in preferred:
        text = str(wanted or "").strip()
        if not text:
            continue
        if text.lower() in _CATEGORY_NAMES:
            if signal_canonical.category == text.lower():
                return text
            continue
        wanted_label = normalize_segment(text).segment
        if wanted_label == UNKNOWN_SEGMENT:
            wanted_label = text
        if wanted_label == signal_label:
            return text
        if wanted_label == "Apartment" and signal_label in BEDROOM_SEGMENTS:
            return text
    return None


def _coerce_signal(signal: MarketSignal | Mapping[str, Any]) -> MarketSignal:
    if isinstance(signal, MarketSignal):
        return signal
    try:
        return MarketSignal.model_validate(signal)
    except ValidationError as exc:
        raise ScoringInputError(f"Malformed signal: {exc.error_count()} invalid field(s)") from exc


def _coerce_investor(investor: Investor | Mapping[str, Any]) -> Investor:
    if isinstance(investor, Investor):
        return investor
    try:
        return Investor.model_validate(investor)
    except ValidationError as exc:
        raise ScoringInputError(f"Malformed mandate: {exc.errors()[0].get('msg')}") from exc


def _investor_id(investor: Any) -> str:
    if isinstance(investor, Investor):
        return investor.id
    if isinstance(investor, Mapping):
        return str(investor.get("id") or "")
    return str(getattr(investor, "id", "") or "")


async def _lookup_exposure(
    get_exposure: ExposureLookup, org_id: str, investor_id: str, geo_id: str
) -> ExposureFact | None:
    try:
        result = get_exposure(org_id, investor_id, geo_id)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:  # noqa: BLE001 - any collaborator failure
        raise ExposureLookupError(str(exc)) from exc
    if result is None:
        return None
    if isinstance(result, ExposureFact):
        return result
    if isinstance(result, Mapping):
        return ExposureFact(
            investor_id=investor_id,
            geo_id=geo_id,
            has_exposure=bool(result.get("has_exposure", result.get("hasExposure", False))),
            details=dict(result.get("details") or {}),
        )
    raise ExposureLookupError(f"Unsupported exposure result {type(result).__name__}")


def _budget_match(mandate: InvestorMandate, value: float) -> bool:
    if mandate.budget_min is None and mandate.budget_max is None:
        return False
    if mandate.budget_min is not None and value < mandate.budget_min:
        return False
    if mandate.budget_max is not None and value > mandate.budget_max:
        return False
    return True


async def _score_investor(
    org_id: str,
    signal: MarketSignal,
    investor: Investor,
    get_exposure: ExposureLookup,
    weights: RelevanceWeights,
) -> RelevanceTarget | SkippedInvestor:
    mandate = investor.mandate
    matched: list[str] = []
    details: dict[str, Any] = {}
    raw = 0.0

    if signal.geo_id in mandate.preferred_geo_ids:
        matched.append("geo")
        raw += weights.geo
        details["geo"] = {"matched_geo_id": signal.geo_id}
    elif mandate.is_open:
        matched.append("geo_open")
        raw += weights.geo_open
        details["geo"] = {"open": True}
    else:
        details["geo"] = {"open": False, "preferred_geo_ids": list(mandate.preferred_geo_ids)}

    wanted = segment_compatible(signal.segment, mandate.preferred_segments)
    if wanted is not None:
        matched.append("segment")
        raw += weights.segment
        details["segment"] = {"signal_segment": signal.segment, "preferred": wanted}

    if is_price_metric(signal.metric):
        within = _budget_match(mandate, signal.current_value)
        details["budget"] = {
            "budget_min": mandate.budget_min,
            "budget_max": mandate.budget_max,
            "value": signal.current_value,
            "within": within,
        }
        if within:
            matched.append("budget")
            raw += weights.budget

    if is_yield_metric(signal.metric) and mandate.yield_target is not None:
        met = signal.current_value >= mandate.yield_target
        details["yield"] = {
            "yield_target": mandate.yield_target,
            "signal_yield": signal.current_value,
            "met": met,
        }
        if met:
            matched.append("yield")
            raw += weights.yield_

    exposure = await _lookup_exposure(get_exposure, org_id, investor.id, signal.geo_id)
    if exposure is not None and exposure.has_exposure:
        matched.append("exposure")
        raw += weights.exposure
        details["exposure"] = exposure.details or {"geo_id": signal.geo_id}

    confidence = signal.confidence_score
    scaled = min(max(raw, 0.0), 1.0) * confidence
    final = scaled
    risk_cap_applied = False
    if signal.signal_type in weights.risky_signal_types and mandate.risk_tolerance == "low":
        if final > weights.low_risk_cap:
            final = weights.low_risk_cap
            risk_cap_applied = True
        details["risk_note"] = "low_risk_tolerance_cap"

    if final < weights.threshold:
        reason = NO_MANDATE_OVERLAP if not matched and not mandate.is_open else BELOW_RELEVANCE_THRESHOLD
        return SkippedInvestor(
            investor_id=investor.id,
            reason=reason,
            detail=f"score {final:.3f} < threshold {weights.threshold:.2f}",
        )

    return RelevanceTarget(
        org_id=org_id,
        signal_id=signal.id,
        investor_id=investor.id,
        relevance_score=round(final, 6),
        matched_dimensions=matched,
        reason_payload={
            "matched": list(matched),
            "details": details,
            "raw_score": raw,
            "scaled_score": scaled,
            "confidence_score": confidence,
            "risk_cap_applied": risk_cap_applied,
            "weights": weights.as_payload(),
        },
    )


async def _score_guarded(
    org_id: str,
    signal: MarketSignal,
    investor: Investor | Mapping[str, Any],
    get_exposure: ExposureLookup,
    weights: RelevanceWeights,
) -> RelevanceTarget | SkippedInvestor:
    investor_id = _investor_id(investor)
    try:
        parsed = _coerce_investor(investor)
    except ScoringInputError as exc:
        logger.warning("Skipping investor %s: %s", investor_id or "<missing id>", exc)
        return SkippedInvestor(investor_id=investor_id, reason=INVALID_MANDATE, detail=str(exc))

    try:
        return await _score_investor(org_id, signal, parsed, get_exposure, weights)
    except ExposureLookupError as exc:
        logger.warning(
            "Exposure lookup failed for investor %s on %s: %s", investor_id, signal.geo_id, exc
        )
        return SkippedInvestor(
            investor_id=investor_id, reason=EXPOSURE_LOOKUP_FAILED, detail=str(exc)
        )


async def compute_targets_for_signal(
    *,
    org_id: str,
    signal: MarketSignal | Mapping[str, Any],
    investors: Iterable[Investor | Mapping[str, Any]],
    get_exposure: ExposureLookup,
    weights: RelevanceWeights = DEFAULT_WEIGHTS,
) -> TargetComputation:
    """Score ``signal`` against every investor.

    Every investor ends up in exactly one of ``rows`` or ``skipped``. A
    malformed signal skips the whole population with ``invalid_signal``.
    """

    population = list(investors)
    result = TargetComputation()

    try:
        parsed_signal = _coerce_signal(signal)
    except ScoringInputError as exc:
        logger.warning("Skipping signal for %s investors: %s", len(population), exc)
        result.skipped = [
            SkippedInvestor(investor_id=_investor_id(inv), reason=INVALID_SIGNAL, detail=str(exc))
            for inv in population
        ]
        return result

    outcomes = await asyncio.gather(
        *(
            _score_guarded(org_id, parsed_signal, investor, get_exposure, weights)
            for investor in population
        )
    )
    for outcome in outcomes:
        if isinstance(outcome, RelevanceTarget):
            result.rows.append(outcome)
        else:
            result.skipped.append(outcome)

    logger.debug(
        "Signal %s: %s targets, %s skipped", parsed_signal.id, len(result.rows), len(result.skipped)
    )
    return result


__all__ = [
    "RelevanceWeights",
    "DEFAULT_WEIGHTS",
    "RISKY_SIGNAL_TYPES",
    "TargetComputation",
    "compute_targets_for_signal",
    "is_price_metric",
    "is_yield_metric",
    "segment_compatible",
    "NO_MANDATE_OVERLAP",
    "BELOW_RELEVANCE_THRESHOLD",
    "INVALID_MANDATE",
    "INVALID_SIGNAL",
    "EXPOSURE_LOOKUP_FAILED",
]
