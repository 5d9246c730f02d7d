import asyncio
from datetime import date

import pytest

from pipelines.errors import FatalUpstreamError, TransformError, TransientUpstreamError
from pipelines.mock_data import (
    generate_mock_dld_transactions,
    generate_mock_ejari_contracts,
    generate_mock_portal_listings,
)
from pipelines.ratelimit import RateLimiter
from pipelines.sources.base import SourceSettings, TransformContext, fetch_all, fetch_page
from pipelines.sources.dld import build_dld_adapter, transform_dld_transaction
from pipelines.sources.ejari import transform_ejari_contract
from pipelines.sources.portals import (
    BAYUT,
    build_bayut_params,
    build_propertyfinder_params,
    canonical_portal,
    detect_price_cut,
    transform_portal_listing,
)

AS_OF = date(2025, 3, 10)
CONTEXT = TransformContext(org_id="org-1", as_of_date=AS_OF)


def _settings(**overrides) -> SourceSettings:
    values = {
        "name": "dld",
        "base_url": "https://example.test/dld",
        "api_key": "secret",
        "page_size": 2,
        "max_pages": 10,
        "max_retries": 2,
        "initial_delay": 0.0,
    }
    values.update(overrides)
    return SourceSettings(**values)


class StubFetch:
    """Serves queued payloads (or raises queued errors) and records calls."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def __call__(self, url, *, headers=None, params=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "params": params})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _adapter(fetch, **settings):
    return build_dld_adapter(
        _settings(**settings), fetch=fetch, limiter=RateLimiter(1000, 1.0)
    )


def test_fetch_page_sends_auth_and_params():
    fetch = StubFetch({"success": True, "data": [{"transaction_id": "1"}], "total": 1})
    adapter = _adapter(fetch)

    page = asyncio.run(fetch_page(adapter, {"from_date": date(2025, 1, 1)}, offset=4))

    assert page.rows == [{"transaction_id": "1"}]
    assert page.error is None
    call = fetch.calls[0]
    assert call["url"] == "https://example.test/dld/transactions"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["params"] == {
        "transaction_type": "Sales",
        "limit": 2,
        "offset": 4,
        "from_date": "2025-01-01",
    }


def test_fetch_page_retries_transient_then_succeeds():
    fetch = StubFetch(
        TransientUpstreamError("502"),
        {"success": True, "data": [], "total": 0},
    )

    page = asyncio.run(fetch_page(_adapter(fetch), {}))

    assert page.error is None
    assert len(fetch.calls) == 2


def test_fetch_page_returns_error_instead_of_raising():
    fetch = StubFetch(FatalUpstreamError("401 Unauthorized", status_code=401))

    page = asyncio.run(fetch_page(_adapter(fetch), {}))

    assert page.rows == []
    assert "401" in page.error
    assert len(fetch.calls) == 1


@pytest.mark.parametrize("payload", [["not", "an", "object"], {"success": True, "data": "oops"}])
def test_malformed_envelope_is_reported(payload):
    fetch = StubFetch(payload)

    page = asyncio.run(fetch_page(_adapter(fetch, max_retries=1), {}))

    assert page.error is not None
    assert "Malformed envelope" in page.error
    assert len(fetch.calls) == 2


def test_upstream_failure_flag_is_not_retried():
    fetch = StubFetch({"success": False, "error": "quota exceeded"})

    page = asyncio.run(fetch_page(_adapter(fetch), {}))

    assert "quota exceeded" in page.error
    assert len(fetch.calls) == 1


def test_fetch_all_paginates_until_short_page():
    fetch = StubFetch(
        {"success": True, "data": [{"id": 1}, {"id": 2}], "total": 3, "hasMore": True},
        {"success": True, "data": [{"id": 3}], "total": 3, "hasMore": False},
    )
    progress: list[str] = []

    result = asyncio.run(
        fetch_all(_adapter(fetch), {}, on_progress=lambda message, *_: progress.append(message))
    )

    assert [row["id"] for row in result.rows] == [1, 2, 3]
    assert result.error is None
    assert [call["params"]["offset"] for call in fetch.calls] == [0, 2]
    assert progress[-1] == "[dld] Fetched 3/3"


def test_fetch_all_stops_at_page_cap():
    fetch = StubFetch({"success": True, "data": [{"id": 1}, {"id": 2}], "total": 99, "hasMore": True})

    result = asyncio.run(fetch_all(_adapter(fetch, max_pages=3), {}))

    assert result.pages == 3
    assert len(result.rows) == 6
    assert len(fetch.calls) == 3


def test_fetch_all_keeps_partial_rows_on_failure():
    fetch = StubFetch(
        {"success": True, "data": [{"id": 1}, {"id": 2}], "total": 4, "hasMore": True},
        FatalUpstreamError("403 Forbidden", status_code=403),
    )

    result = asyncio.run(fetch_all(_adapter(fetch), {}))

    assert [row["id"] for row in result.rows] == [1, 2]
    assert "403" in result.error


def test_failing_progress_callback_is_ignored():
    fetch = StubFetch({"success": True, "data": [{"id": 1}], "total": 1})

    def explode(*_args):
        raise RuntimeError("ui went away")

    result = asyncio.run(fetch_all(_adapter(fetch), {}, on_progress=explode))

    assert len(result.rows) == 1


def test_dld_transform_derives_area_and_price_per_sqft():
    row = transform_dld_transaction(
        {
            "transaction_id": "T-1",
            "transaction_date": "2025-03-01T10:00:00",
            "area_name_en": "JVC",
            "property_type": "Unit",
            "rooms": "1 B/R",
            "procedure_area": 100,
            "transaction_value": "1,076,390",
        },
        CONTEXT,
    )

    assert row.transaction_date == date(2025, 3, 1)
    assert row.geo_id == "jvc"
    assert row.segment == "1BR"
    assert row.area_sqft == pytest.approx(1076.39)
    assert row.price_per_sqft == pytest.approx(1000.0)
    assert row.idempotency_key == ("org-1", "T-1")


@pytest.mark.parametrize(
    "raw",
    [
        {"transaction_date": "2025-03-01", "transaction_value": 10},
        {"transaction_id": "T-2", "transaction_date": "yesterday", "transaction_value": 10},
        {"transaction_id": "T-3", "transaction_date": "2025-03-01", "transaction_value": 0},
    ],
)
def test_dld_transform_rejects_unusable_records(raw):
    with pytest.raises(TransformError):
        transform_dld_transaction(raw, CONTEXT)


def test_ejari_transform_computes_monthly_rent():
    row = transform_ejari_contract(
        {
            "contract_id": "E-1",
            "contract_start": "2025-02-01",
            "contract_end": "2026-01-31",
            "area_name": "Dubai Marina",
            "property_type": "Apartment",
            "rooms": "2 B/R",
            "annual_rent": 120000,
            "property_size": 100,
            "property_usage": "Residential",
        },
        CONTEXT,
    )

    assert row.monthly_rent == pytest.approx(10000.0)
    assert row.segment == "2BR"
    assert row.contract_duration_months == 12
    assert row.property_usage == "residential"
    assert row.size_sqft == pytest.approx(1076.39)


def test_portal_transform_detects_cut_against_previous_day():
    context = TransformContext(
        org_id="org-1", as_of_date=AS_OF, previous_prices={"B-1": 2_900_000}, portal=BAYUT
    )

    row = transform_portal_listing(
        {
            "listing_id": "B-1",
            "location": {"community": "Jumeirah Village Circle"},
            "property_type": "Apartment",
            "bedrooms": 1,
            "size_sqm": 100,
            "price": 2_600_000,
            "listed_date": "2025-02-08",
        },
        context,
    )

    assert row.portal == BAYUT
    assert row.geo_id == "jvc"
    assert row.had_price_cut is True
    assert row.price_cut_pct == pytest.approx(300_000 / 2_900_000)
    assert row.previous_price == 2_900_000
    assert row.days_on_market == 30
    assert row.size_sqft == pytest.approx(1076.39)


def test_detect_price_cut_rules():
    assert detect_price_cut(2_600_000, None, 2_900_000)[0] is True
    assert detect_price_cut(2_900_000, None, 2_900_000) == (False, None)
    assert detect_price_cut(3_000_000, None, 2_900_000) == (False, None)
    assert detect_price_cut(3_000_000, 3_300_000, 2_900_000)[0] is True
    assert detect_price_cut(1_000_000, None, None) == (False, None)


def test_portal_days_on_market_falls_back_to_upstream_value():
    raw = {"listing_id": "P-1", "portal": "PropertyFinder", "price": 900_000, "days_on_market": 12}

    row = transform_portal_listing(raw, CONTEXT)

    assert row.days_on_market == 12
    assert row.portal == "PropertyFinder"
    assert row.geo_id == "unknown"


def test_canonical_portal_names():
    assert canonical_portal("bayut") == BAYUT
    assert canonical_portal(" Property Finder ") == "PropertyFinder"
    with pytest.raises(ValueError):
        canonical_portal("dubizzle")


def test_portal_param_builders():
    assert build_bayut_params({"area": "JVC"}, 200, 100) == {
        "purpose": "for-sale",
        "hits": 100,
        "page": 2,
        "location": "JVC",
    }
    assert build_propertyfinder_params({"listing_type": "rent"}, 0, 50)["category"] == "rent"
    assert build_propertyfinder_params({}, 100, 50)["page"] == 3


def test_mock_generators_are_deterministic_and_transformable():
    today = date(2025, 3, 10)

    assert generate_mock_dld_transactions(20, today=today) == generate_mock_dld_transactions(
        20, today=today
    )
    for raw in generate_mock_dld_transactions(20, today=today):
        transform_dld_transaction(raw, CONTEXT)
    for raw in generate_mock_ejari_contracts(20, today=today):
        transform_ejari_contract(raw, CONTEXT)
    for raw in generate_mock_portal_listings(BAYUT, 20, today=today):
        assert transform_portal_listing(raw, CONTEXT).portal == BAYUT


def test_mock_listings_age_between_daily_snapshots():
    today = date(2025, 3, 10)
    first = generate_mock_portal_listings(BAYUT, 10, today=today)
    second = generate_mock_portal_listings(BAYUT, 10, today=date(2025, 3, 11))

    assert [l["listing_id"] for l in first] == [l["listing_id"] for l in second]
    assert [l["listed_date"] for l in first] == [l["listed_date"] for l in second]
    assert all(b["days_on_market"] == a["days_on_market"] + 1 for a, b in zip(first, second))
