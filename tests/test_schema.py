from datetime import date

import pytest
from pydantic import ValidationError

from pipelines.model import (
    InvestorMandate,
    IngestionResult,
    ListingSnapshotRow,
    MarketSignal,
    PipelineResult,
)


def _signal(**overrides) -> MarketSignal:
    values = {
        "id": "sig-1",
        "org_id": "org-1",
        "signal_type": "supply_spike",
        "geo_id": "jvc",
        "metric": "listing_count",
        "current_value": "42",
    }
    values.update(overrides)
    return MarketSignal(**values)


def test_market_signal_coerces_values_and_defaults_confidence():
    signal = _signal(confidence_score=None)

    assert signal.current_value == pytest.approx(42.0)
    assert signal.confidence_score == 1.0
    assert signal.model_dump()["timeframe"] == "7d"


@pytest.mark.parametrize(
    "overrides",
    [{"confidence_score": 1.5}, {"current_value": "lots"}, {"geo_id": ""}],
)
def test_market_signal_rejects_bad_input(overrides):
    with pytest.raises(ValidationError):
        _signal(**overrides)


def test_mandate_normalizes_risk_and_empty_preferences():
    mandate = InvestorMandate(risk_tolerance=" LOW ", preferred_geo_ids=None)

    assert mandate.risk_tolerance == "low"
    assert mandate.preferred_geo_ids == []
    assert mandate.is_open
    assert not InvestorMandate(preferred_segments=["Villa"]).is_open
    assert InvestorMandate(preferred_segments=["Villa"], open=True).is_open


def test_mandate_rejects_inverted_budget():
    with pytest.raises(ValidationError):
        InvestorMandate(budget_min=3_000_000, budget_max=1_000_000)


def test_listing_snapshot_key_includes_the_day():
    row = ListingSnapshotRow(
        org_id="org-1",
        geo_type="community",
        geo_id="jvc",
        geo_name="Jumeirah Village Circle",
        segment="1BR",
        portal="Bayut",
        listing_id="B-1",
        as_of_date=date(2025, 3, 10),
        price=1_200_000,
    )

    assert row.idempotency_key == ("org-1", "Bayut", "B-1", date(2025, 3, 10))
    with pytest.raises(ValidationError):
        row.price = 1


def test_pipeline_result_totals():
    result = PipelineResult(
        success=True,
        results=[
            IngestionResult(source="dld", success=True, fetched=10, ingested=9),
            IngestionResult(source="bayut", success=True, fetched=5, ingested=5, price_cuts_detected=2),
        ],
    )

    assert result.total_fetched == 15
    assert result.total_ingested == 14
    assert result.total_price_cuts == 2
