import asyncio

import pytest

from jobs.map_signals import map_signals_to_investors
from pipelines.model import MarketSignal, RelevanceTarget
from storage.db import (
    SIGNAL_TARGETS_TABLE,
    connect,
    count_rows,
    fetch_targets_for_signal,
    fetch_unmapped_signals,
    get_investor_geo_exposure,
    insert_market_signals,
    upsert_holdings,
    upsert_investors,
    upsert_relevance_targets,
)

ORG = "org-1"


def _signal(signal_id: str, geo_id: str = "jvc", **overrides) -> MarketSignal:
    values = {
        "id": signal_id,
        "org_id": ORG,
        "signal_type": "price_change",
        "geo_id": geo_id,
        "segment": "1BR",
        "metric": "median_ask_price",
        "current_value": 2_500_000,
        "confidence_score": 0.9,
    }
    values.update(overrides)
    return MarketSignal(**values)


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "signals.duckdb")
    upsert_investors(
        connection,
        [
            {
                "org_id": ORG,
                "id": "inv-jvc",
                "name": "JVC buyer",
                "mandate": {
                    "preferred_geo_ids": ["jvc", "dubai_marina"],
                    "budget_min": 1_500_000,
                    "budget_max": 3_000_000,
                },
            },
            {
                "org_id": ORG,
                "id": "inv-palm",
                "name": "Palm only",
                "mandate": {"preferred_geo_ids": ["palm_jumeirah"], "risk_tolerance": "Low"},
            },
            {"org_id": "other-org", "id": "inv-other", "mandate": {"open": True}},
        ],
    )
    try:
        yield connection
    finally:
        connection.close()


def test_maps_unmapped_signals_and_persists_targets(conn):
    insert_market_signals(
        conn,
        [
            _signal("s-1"),
            _signal("s-2", geo_id="palm_jumeirah", metric="listing_count", confidence_score=1.0),
        ],
    )

    summary = asyncio.run(map_signals_to_investors(ORG, conn=conn))

    assert summary.signals_processed == 2
    assert summary.targets_created == 2
    assert summary.targets_skipped == 2
    assert summary.next_cursor is None

    targets = fetch_targets_for_signal(conn, ORG, "s-1")
    assert [t["investor_id"] for t in targets] == ["inv-jvc"]
    assert targets[0]["matched_dimensions"] == ["geo", "budget"]
    assert targets[0]["status"] == "new"
    assert targets[0]["reason_payload"]["confidence_score"] == 0.9


def test_mapped_signals_are_not_reprocessed(conn):
    insert_market_signals(conn, [_signal("s-1")])
    asyncio.run(map_signals_to_investors(ORG, conn=conn))

    again = asyncio.run(map_signals_to_investors(ORG, conn=conn))

    assert again.signals_processed == 0
    assert count_rows(conn, SIGNAL_TARGETS_TABLE) == 1


def test_batches_follow_the_cursor(conn):
    insert_market_signals(conn, [_signal(f"s-{i}") for i in range(5)])

    summary = asyncio.run(map_signals_to_investors(ORG, conn=conn, batch_size=2, max_batches=2))

    assert summary.signals_processed == 4
    assert summary.next_cursor == "s-3"

    rest = asyncio.run(
        map_signals_to_investors(ORG, conn=conn, batch_size=2, cursor=summary.next_cursor)
    )
    assert rest.signals_processed == 1


def test_unmapped_signal_paging(conn):
    insert_market_signals(conn, [_signal("a"), _signal("b"), _signal("c")])

    page, cursor = fetch_unmapped_signals(conn, ORG, limit=2)

    assert [s["id"] for s in page] == ["a", "b"]
    assert cursor == "b"
    page, cursor = fetch_unmapped_signals(conn, ORG, limit=2, cursor=cursor)
    assert [s["id"] for s in page] == ["c"]
    assert cursor is None


def test_target_upsert_recomputes_instead_of_duplicating(conn):
    target = RelevanceTarget(
        org_id=ORG, signal_id="s-1", investor_id="inv-jvc", relevance_score=0.4
    )
    upsert_relevance_targets(conn, [target])
    upsert_relevance_targets(conn, [target.model_copy(update={"relevance_score": 0.7})])

    rows = fetch_targets_for_signal(conn, ORG, "s-1")

    assert len(rows) == 1
    assert rows[0]["relevance_score"] == pytest.approx(0.7)


def test_holdings_drive_exposure(conn):
    upsert_holdings(
        conn,
        [{"org_id": ORG, "investor_id": "inv-palm", "geo_id": "palm_jumeirah", "units": 3, "details": {"note": "legacy"}}],
    )

    exposure = get_investor_geo_exposure(conn, ORG, "inv-palm", "palm_jumeirah")
    missing = get_investor_geo_exposure(conn, ORG, "inv-palm", "business_bay")

    assert exposure.has_exposure is True
    assert exposure.details == {"units": 3, "note": "legacy"}
    assert missing.has_exposure is False

    insert_market_signals(
        conn,
        [_signal("s-9", geo_id="palm_jumeirah", metric="listing_count", confidence_score=1.0)],
    )
    asyncio.run(map_signals_to_investors(ORG, conn=conn))
    investors = {t["investor_id"]: t for t in fetch_targets_for_signal(conn, ORG, "s-9")}
    assert investors["inv-palm"]["matched_dimensions"] == ["geo", "exposure"]
