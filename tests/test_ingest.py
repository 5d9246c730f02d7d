import asyncio
from datetime import date, timedelta

import duckdb
import pytest

import jobs.ingest as ingest_module
from jobs.config import IngestionConfig
from jobs.ingest import (
    ingest_dld_transactions,
    ingest_ejari_contracts,
    ingest_portal_listings,
    resolve_date_range,
    run_ingestion_pipeline,
)
from pipelines.sources.base import SourceSettings
from storage.db import (
    DLD_TRANSACTIONS_TABLE,
    PORTAL_LISTINGS_TABLE,
    connect,
    count_rows,
    fetch_rows,
    get_ingestion_stats,
    get_last_ingestion_date,
)

AS_OF = date(2025, 3, 10)
FULL_YEAR = (AS_OF - timedelta(days=365), AS_OF)


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "market.duckdb")
    try:
        yield connection
    finally:
        connection.close()


def _settings(name: str) -> SourceSettings:
    return SourceSettings(
        name=name,
        base_url=f"https://example.test/{name.lower()}",
        api_key="test-key",
        initial_delay=0.0,
        max_retries=1,
    )


class ListingFeed:
    """Serves one page of listings whose prices can change between runs."""

    def __init__(self, listings):
        self.listings = listings

    async def __call__(self, url, *, headers=None, params=None, timeout=None):
        return {"success": True, "data": list(self.listings), "total": len(self.listings)}


def test_default_date_range_is_last_seven_days():
    assert resolve_date_range(None, today=AS_OF) == (date(2025, 3, 3), AS_OF)
    with pytest.raises(ValueError):
        resolve_date_range((AS_OF, date(2025, 1, 1)))


def test_mock_ingestion_is_idempotent(conn):
    first = asyncio.run(
        ingest_dld_transactions(
            "org-1", date_range=FULL_YEAR, use_mock_data=True, as_of=AS_OF, conn=conn, mock_count=40
        )
    )
    count_after_first = count_rows(conn, DLD_TRANSACTIONS_TABLE, org_id="org-1")
    second = asyncio.run(
        ingest_dld_transactions(
            "org-1", date_range=FULL_YEAR, use_mock_data=True, as_of=AS_OF, conn=conn, mock_count=40
        )
    )

    assert first.success and second.success
    assert first.ingested == second.ingested == 40
    assert count_rows(conn, DLD_TRANSACTIONS_TABLE, org_id="org-1") == count_after_first == 40


def test_reingesting_same_input_leaves_rows_unchanged(conn):
    def run():
        asyncio.run(
            ingest_dld_transactions(
                "org-1", date_range=FULL_YEAR, use_mock_data=True, as_of=AS_OF, conn=conn, mock_count=5
            )
        )
        return fetch_rows(conn, DLD_TRANSACTIONS_TABLE, org_id="org-1")

    first = run()
    second = run()

    assert len(first) == 5
    assert second == first


def test_mock_data_is_filtered_to_date_range(conn):
    window = (AS_OF - timedelta(days=30), AS_OF)

    result = asyncio.run(
        ingest_ejari_contracts(
            "org-1", date_range=window, use_mock_data=True, as_of=AS_OF, conn=conn, mock_count=200
        )
    )

    assert 0 < result.fetched < 200
    starts = {row["contract_start"] for row in fetch_rows(conn, "ejari_contracts")}
    assert all(window[0] <= start <= window[1] for start in starts)


def test_missing_credentials_short_circuit(conn, monkeypatch):
    monkeypatch.delenv("BAYUT_API_KEY", raising=False)

    dld = asyncio.run(
        ingest_dld_transactions(
            "org-1",
            conn=conn,
            settings=SourceSettings(name="dld", base_url="https://example.test"),
        )
    )
    bayut = asyncio.run(ingest_portal_listings("org-1", "Bayut", conn=conn))

    assert dld.success is False
    assert dld.errors == ["DLD_API_KEY not configured"]
    assert dld.fetched == 0
    assert bayut.errors == ["BAYUT_API_KEY not configured"]


def test_price_cut_detected_against_previous_snapshot(conn):
    listing = {
        "listing_id": "B-100",
        "location": {"community": "JVC"},
        "property_type": "Apartment",
        "bedrooms": 1,
        "size_sqft": 800,
        "price": 2_900_000,
        "listed_date": "2025-02-01",
    }
    feed = ListingFeed([listing])

    def run(as_of):
        return asyncio.run(
            ingest_portal_listings(
                "org-1",
                "Bayut",
                as_of=as_of,
                conn=conn,
                settings=_settings("Bayut"),
                fetch=feed,
                areas=["JVC"],
            )
        )

    day_one = run(AS_OF - timedelta(days=1))
    feed.listings = [{**listing, "price": 2_600_000}]
    day_two = run(AS_OF)

    assert day_one.price_cuts_detected == 0
    assert day_two.price_cuts_detected == 1
    rows = {row["as_of_date"]: row for row in fetch_rows(conn, PORTAL_LISTINGS_TABLE)}
    assert len(rows) == 2
    latest = rows[AS_OF]
    assert latest["had_price_cut"] is True
    assert latest["previous_price"] == 2_900_000
    assert latest["price_cut_pct"] == pytest.approx(300_000 / 2_900_000)
    assert latest["days_on_market"] == 37
    assert latest["geo_id"] == "jvc"


def test_price_increase_is_not_a_cut(conn):
    listing = {"listing_id": "B-7", "price": 1_000_000, "location": {"area": "Business Bay"}}
    feed = ListingFeed([listing])
    options = dict(conn=conn, settings=_settings("Bayut"), fetch=feed, areas=["Business Bay"])

    asyncio.run(ingest_portal_listings("org-1", "Bayut", as_of=AS_OF - timedelta(days=1), **options))
    feed.listings = [{**listing, "price": 1_100_000}]
    result = asyncio.run(ingest_portal_listings("org-1", "Bayut", as_of=AS_OF, **options))

    assert result.price_cuts_detected == 0


def test_transform_errors_are_counted_not_raised(conn):
    feed = ListingFeed(
        [
            {"listing_id": "ok-1", "price": 900_000},
            {"price": 900_000},
            {"listing_id": "ok-2", "price": 1_200_000},
        ]
    )

    result = asyncio.run(
        ingest_portal_listings(
            "org-1",
            "PropertyFinder",
            as_of=AS_OF,
            conn=conn,
            settings=_settings("PropertyFinder"),
            fetch=feed,
            areas=["Dubai Marina"],
        )
    )

    assert result.fetched == 3
    assert result.ingested == 2
    assert result.skipped == 1
    assert result.success is False
    assert result.errors[0].startswith("Transform error")


def test_failed_batch_does_not_stop_later_batches(conn, monkeypatch):
    real_upsert = ingest_module.upsert_rows
    calls = {"n": 0}

    def flaky_upsert(connection, table, rows):
        calls["n"] += 1
        if calls["n"] == 2:
            raise duckdb.Error("disk full")
        return real_upsert(connection, table, rows)

    monkeypatch.setattr(ingest_module, "upsert_rows", flaky_upsert)

    result = asyncio.run(
        ingest_dld_transactions(
            "org-1",
            date_range=FULL_YEAR,
            use_mock_data=True,
            as_of=AS_OF,
            conn=conn,
            mock_count=50,
            batch_size=10,
        )
    )

    assert calls["n"] == 5
    assert result.ingested == 40
    assert result.skipped == 10
    assert result.errors == ["Upsert error (batch 2): disk full"]
    assert result.success is False
    assert count_rows(conn, DLD_TRANSACTIONS_TABLE) == 40


def test_pipeline_runs_every_source_with_mock_data(conn):
    progress: list[str] = []

    result = asyncio.run(
        run_ingestion_pipeline(
            "org-1",
            use_mock_data=True,
            as_of=AS_OF,
            conn=conn,
            date_range=FULL_YEAR,
            on_progress=lambda message, *_: progress.append(message),
            config=IngestionConfig(mock_count=25),
        )
    )

    assert result.success
    assert [r.source for r in result.results] == ["dld", "ejari", "bayut", "propertyfinder"]
    assert result.total_fetched == 100
    assert result.total_ingested == 100
    assert result.skipped_sources == []
    assert "[bayut] Using mock data" in progress
    assert get_last_ingestion_date(conn, PORTAL_LISTINGS_TABLE, org_id="org-1") == AS_OF

    stats = get_ingestion_stats(conn, PORTAL_LISTINGS_TABLE, org_id="org-1")
    assert stats["row_count"] == 50
    assert 0.0 <= stats["price_cut_rate"] <= 1.0
    assert stats["top_areas"]


def test_pipeline_reports_skipped_sources(conn):
    result = asyncio.run(
        run_ingestion_pipeline(
            "org-1", sources=["dld"], use_mock_data=True, as_of=AS_OF, conn=conn
        )
    )

    assert [r.source for r in result.results] == ["dld"]
    assert result.skipped_sources == ["ejari", "portals"]


def test_unexpected_source_failure_does_not_stop_pipeline(conn, monkeypatch):
    async def boom(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(ingest_module, "ingest_ejari_contracts", boom)

    result = asyncio.run(
        run_ingestion_pipeline(
            "org-1", sources=["dld", "ejari"], use_mock_data=True, as_of=AS_OF, conn=conn
        )
    )

    assert result.success is False
    by_source = {r.source: r for r in result.results}
    assert by_source["dld"].success is True
    assert by_source["ejari"].errors == ["Unexpected error: boom"]


def test_portal_names_are_matched_case_insensitively(conn):
    result = asyncio.run(
        ingest_portal_listings(
            "org-1", "bayut", use_mock_data=True, as_of=AS_OF, conn=conn, mock_count=5
        )
    )

    assert result.success
    assert result.ingested == 5
    assert {row["portal"] for row in fetch_rows(conn, PORTAL_LISTINGS_TABLE)} == {"Bayut"}
    with pytest.raises(ValueError, match="Unsupported portal"):
        asyncio.run(ingest_portal_listings("org-1", "dubizzle", use_mock_data=True, conn=conn))
