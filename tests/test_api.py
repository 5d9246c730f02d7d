import asyncio
import tempfile
from datetime import date, timedelta

import duckdb
import pytest
from fastapi.testclient import TestClient

from api.main import app
from jobs.ingest import ingest_dld_transactions
from pipelines.model import MarketSignal
from storage.db import connect, insert_market_signals, upsert_investors

ORG = "org-1"
AS_OF = date(2025, 3, 10)


@pytest.fixture()
def populated_db(monkeypatch, tmp_path):
    db_path = tmp_path / "market.duckdb"
    monkeypatch.setenv("MARKET_DATA_DB_PATH", str(db_path))

    conn = connect()
    try:
        asyncio.run(
            ingest_dld_transactions(
                ORG,
                date_range=(AS_OF - timedelta(days=365), AS_OF),
                use_mock_data=True,
                as_of=AS_OF,
                conn=conn,
                mock_count=10,
            )
        )
        upsert_investors(
            conn,
            [
                {
                    "org_id": ORG,
                    "id": "inv-jvc",
                    "name": "JVC buyer",
                    "mandate": {"preferred_geo_ids": ["jvc"], "budget_max": 3_000_000},
                }
            ],
        )
        insert_market_signals(
            conn,
            [
                MarketSignal(
                    id="s-1",
                    org_id=ORG,
                    signal_type="price_change",
                    geo_id="jvc",
                    metric="median_ask_price",
                    current_value=2_400_000,
                )
            ],
        )
    finally:
        conn.close()

    yield db_path


@pytest.fixture()
def client(populated_db):
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_rows_json(client):
    response = client.get("/rows/dld", params={"org_id": ORG, "limit": 5})

    assert response.status_code == 200
    payload = response.json()
    assert payload["count"] == 5
    assert {item["org_id"] for item in payload["items"]} == {ORG}
    assert "price_per_sqft" in payload["items"][0]


def test_rows_csv(client):
    response = client.get("/rows/dld", params={"org_id": ORG, "format": "csv"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.content.decode().strip().splitlines()
    assert lines[0].startswith("org_id,")
    assert len(lines) == 11


def test_rows_parquet(client):
    response = client.get("/rows/dld", params={"org_id": ORG, "format": "parquet"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.apache.parquet")

    with tempfile.NamedTemporaryFile(suffix=".parquet") as tmp:
        tmp.write(response.content)
        tmp.flush()
        con = duckdb.connect()
        try:
            count = con.execute("SELECT COUNT(*) FROM read_parquet(?)", [tmp.name]).fetchone()[0]
        finally:
            con.close()
    assert count == 10


def test_rows_rejects_unknown_source_and_format(client):
    assert client.get("/rows/zillow").status_code == 404
    assert client.get("/rows/dld", params={"format": "xml"}).status_code == 400


def test_ingest_endpoint_runs_selected_sources(client):
    response = client.post(
        "/jobs/ingest", json={"org_id": ORG, "sources": ["dld"], "use_mock_data": True}
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert [result["source"] for result in payload["results"]] == ["dld"]
    assert payload["skipped_sources"] == ["ejari", "portals"]


def test_ingest_endpoint_validates_input(client):
    unknown = client.post("/jobs/ingest", json={"org_id": ORG, "sources": ["mls"]})
    backwards = client.post(
        "/jobs/ingest",
        json={"org_id": ORG, "from_date": "2025-03-10", "to_date": "2025-03-01"},
    )

    assert unknown.status_code == 400
    assert backwards.status_code == 400


def test_map_signals_then_read_targets(client):
    response = client.post("/jobs/map-signals", json={"org_id": ORG})

    assert response.status_code == 200
    summary = response.json()
    assert summary["signals_processed"] == 1
    assert summary["targets_created"] == 1

    targets = client.get("/signals/s-1/targets", params={"org_id": ORG}).json()
    assert targets["count"] == 1
    item = targets["items"][0]
    assert item["investor_id"] == "inv-jvc"
    assert item["matched_dimensions"] == ["geo", "budget"]


def test_ingestion_stats(client):
    response = client.get("/ingestion/stats", params={"org_id": ORG})

    assert response.status_code == 200
    stats = response.json()
    assert stats["dld"]["row_count"] == 10
    assert stats["ejari"]["row_count"] == 0
    assert stats["portals"]["price_cut_rate"] == 0.0


def test_ingest_endpoint_normalizes_portal_names(client):
    response = client.post(
        "/jobs/ingest",
        json={"org_id": ORG, "sources": ["portals"], "portals": ["propertyfinder"], "use_mock_data": True},
    )
    rejected = client.post(
        "/jobs/ingest", json={"org_id": ORG, "sources": ["portals"], "portals": ["dubizzle"]}
    )

    assert response.status_code == 200
    assert [result["source"] for result in response.json()["results"]] == ["propertyfinder"]
    assert rejected.status_code == 422
