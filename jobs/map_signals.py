"""Map unmapped market signals to investors and persist the relevance targets."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import asdict, dataclass

import duckdb

from jobs.config import load_relevance_weights
from pipelines.relevance import RelevanceWeights, compute_targets_for_signal
from storage.db import (
    connect,
    fetch_investors,
    fetch_unmapped_signals,
    get_investor_geo_exposure,
    upsert_relevance_targets,
)

logger = logging.getLogger(__name__)


@dataclass
class MapSignalsSummary:
    signals_processed: int = 0
    targets_created: int = 0
    targets_skipped: int = 0
    next_cursor: str | None = None

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


async def map_signals_to_investors(
    org_id: str,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    batch_size: int = 50,
    max_batches: int = 10,
    cursor: str | None = None,
    weights: RelevanceWeights | None = None,
) -> MapSignalsSummary:
    """Score every signal without targets against the org's investors.

    Signals are read ``batch_size`` at a time, for at most ``max_batches``
    pages. A signal that fails to map is logged and counted as skipped; the
    remaining signals are still processed.
    """

    weights = weights or load_relevance_weights()
    own_conn = conn is None
    conn = conn or connect()
    summary = MapSignalsSummary(next_cursor=cursor)
    try:
        investors = fetch_investors(conn, org_id)
        get_exposure = functools.partial(get_investor_geo_exposure, conn)

        for _ in range(max_batches):
            signals, summary.next_cursor = fetch_unmapped_signals(
                conn, org_id, limit=batch_size, cursor=summary.next_cursor
            )
            if not signals:
                break

            for signal in signals:
                summary.signals_processed += 1
                try:
                    computed = await compute_targets_for_signal(
                        org_id=org_id,
                        signal=signal,
                        investors=investors,
                        get_exposure=get_exposure,
                        weights=weights,
                    )
                    if computed.rows:
                        upsert_relevance_targets(conn, computed.rows)
                except (duckdb.Error, ValueError) as exc:
                    logger.warning("Error mapping signal %s; skipping: %s", signal.get("id"), exc)
                    summary.targets_skipped += 1
                    continue
                summary.targets_created += len(computed.rows)
                summary.targets_skipped += len(computed.skipped)

            if summary.next_cursor is None:
                break
    finally:
        if own_conn:
            conn.close()

    logger.info(
        "Mapped %s signals for %s: %s targets, %s skipped",
        summary.signals_processed,
        org_id,
        summary.targets_created,
        summary.targets_skipped,
    )
    return summary


def run_map_signals(org_id: str, **kwargs) -> MapSignalsSummary:
    return asyncio.run(map_signals_to_investors(org_id, **kwargs))


__all__ = ["MapSignalsSummary", "map_signals_to_investors", "run_map_signals"]
