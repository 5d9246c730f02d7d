"""Ingestion jobs: fetch upstream records, normalize them and upsert them into DuckDB.

Each job returns an ``IngestionResult``. Bad records and failed batches are
counted and reported in ``errors`` rather than raised; only missing
credentials on a live run stop a job before it fetches anything.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Mapping, Sequence

import duckdb

from jobs.config import (
    ALL_SOURCES,
    DEFAULT_BATCH_SIZE,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_MOCK_COUNT,
    IngestionConfig,
    load_source_settings,
)
from pipelines.errors import ConfigurationError, PersistenceBatchError, TransformError
from pipelines.mock_data import (
    generate_mock_dld_transactions,
    generate_mock_ejari_contracts,
    generate_mock_portal_listings,
)
from pipelines.model import (
    CanonicalMarketRow,
    IngestionResult,
    ListingSnapshotRow,
    PipelineResult,
)
from pipelines.sources.base import (
    FetchFn,
    ProgressCallback,
    RawRecord,
    SourceAdapter,
    SourceSettings,
    TransformContext,
    fetch_all,
    notify_progress,
)
from pipelines.sources.dld import build_dld_adapter
from pipelines.sources.ejari import build_ejari_adapter
from pipelines.sources.portals import (
    DEFAULT_PORTAL_AREAS,
    build_portal_adapter,
    canonical_portal,
)
from storage.db import connect, fetch_previous_prices, upsert_rows

logger = logging.getLogger(__name__)

DateRange = tuple[date, date]


def resolve_date_range(
    date_range: DateRange | None,
    *,
    today: date | None = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> DateRange:
    """Default to the last ``lookback_days`` days ending today."""

    if date_range is not None:
        start, end = date_range
        if start > end:
            raise ValueError(f"Invalid date range: {start} is after {end}")
        return start, end
    today = today or date.today()
    return today - timedelta(days=lookback_days), today


def _in_range(value: Any, date_range: DateRange) -> bool:
    try:
        day = date.fromisoformat(str(value)[:10])
    except ValueError:
        # Left for the transform to reject and report.
        return True
    return date_range[0] <= day <= date_range[1]


def _filter_by_date(
    records: Iterable[RawRecord], field: str, date_range: DateRange
) -> list[RawRecord]:
    return [record for record in records if _in_range(record.get(field), date_range)]


def _transform_records(
    adapter: SourceAdapter,
    records: Sequence[RawRecord],
    context: TransformContext,
    result: IngestionResult,
) -> list[CanonicalMarketRow]:
    rows: dict[Any, CanonicalMarketRow] = {}
    for raw in records:
        try:
            row = adapter.transform(raw, context)
        except TransformError as exc:
            record_id = exc.record_id or adapter.record_id(raw) or "<unknown>"
            logger.warning("%s record %s dropped: %s", adapter.name, record_id, exc)
            result.errors.append(f"Transform error ({record_id}): {exc}")
            result.skipped += 1
            continue
        # Last observation wins when the upstream repeats a record within a run.
        rows[row.idempotency_key] = row
    return list(rows.values())


def _upsert_batch(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    batch: Sequence[CanonicalMarketRow],
    batch_number: int,
) -> int:
    try:
        return upsert_rows(conn, table, batch)
    except duckdb.Error as exc:
        raise PersistenceBatchError(str(exc), batch_number=batch_number, size=len(batch)) from exc


def _persist(
    conn: duckdb.DuckDBPyConnection,
    adapter: SourceAdapter,
    rows: Sequence[CanonicalMarketRow],
    result: IngestionResult,
    *,
    batch_size: int,
    on_progress: ProgressCallback | None,
) -> None:
    for start in range(0, len(rows), batch_size):
        batch = rows[start : start + batch_size]
        batch_number = start // batch_size + 1
        try:
            result.ingested += _upsert_batch(conn, adapter.table, batch, batch_number)
        except PersistenceBatchError as exc:
            logger.error("%s upsert batch %s failed: %s", adapter.name, batch_number, exc)
            result.errors.append(f"Upsert error (batch {exc.batch_number}): {exc}")
            result.skipped += exc.size
            continue
        notify_progress(
            on_progress,
            f"[{adapter.name}] Upserted {min(start + batch_size, len(rows))}/{len(rows)}",
            result.ingested,
            len(rows),
        )


async def _run_job(
    adapter: SourceAdapter,
    *,
    org_id: str,
    date_range: DateRange,
    as_of: date,
    use_mock_data: bool,
    mock_records: Callable[[], list[RawRecord]],
    queries: Sequence[Mapping[str, Any]],
    on_progress: ProgressCallback | None,
    conn: duckdb.DuckDBPyConnection | None,
    batch_size: int,
    portal: str | None = None,
) -> IngestionResult:
    started = time.monotonic()
    result = IngestionResult(
        source=adapter.name, success=False, date_range=date_range, as_of_date=as_of
    )

    if not use_mock_data:
        try:
            adapter.require_credentials()
        except ConfigurationError as exc:
            logger.error("%s ingestion aborted: %s", adapter.name, exc)
            result.errors.append(str(exc))
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return result

    raw_records: list[RawRecord] = []
    if use_mock_data:
        notify_progress(on_progress, f"[{adapter.name}] Using mock data")
        raw_records = mock_records()
    else:
        for query in queries:
            fetched = await fetch_all(adapter, query, on_progress=on_progress)
            raw_records.extend(fetched.rows)
            if fetched.error:
                result.errors.append(fetched.error)
    result.fetched = len(raw_records)
    logger.info("%s fetched %s records for %s", adapter.name, result.fetched, org_id)

    own_conn = conn is None
    conn = conn or connect()
    try:
        previous_prices: Mapping[str, float] = {}
        if portal:
            previous_prices = fetch_previous_prices(conn, org_id, portal, as_of)
            notify_progress(
                on_progress,
                f"[{adapter.name}] Loaded {len(previous_prices)} previous listings for comparison",
            )

        context = TransformContext(
            org_id=org_id,
            as_of_date=as_of,
            previous_prices=previous_prices,
            portal=portal,
        )
        rows = _transform_records(adapter, raw_records, context, result)
        result.price_cuts_detected = sum(
            1 for row in rows if isinstance(row, ListingSnapshotRow) and row.had_price_cut
        )
        _persist(conn, adapter, rows, result, batch_size=batch_size, on_progress=on_progress)
    finally:
        if own_conn:
            conn.close()

    result.success = not result.errors
    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "%s ingestion finished: fetched=%s ingested=%s skipped=%s errors=%s",
        adapter.name,
        result.fetched,
        result.ingested,
        result.skipped,
        len(result.errors),
    )
    return result


async def ingest_dld_transactions(
    org_id: str,
    *,
    date_range: DateRange | None = None,
    use_mock_data: bool = False,
    on_progress: ProgressCallback | None = None,
    as_of: date | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: SourceSettings | None = None,
    fetch: FetchFn | None = None,
    area_name: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    mock_count: int = DEFAULT_MOCK_COUNT,
) -> IngestionResult:
    """Ingest DLD sale transactions registered within ``date_range``."""

    as_of = as_of or date.today()
    date_range = resolve_date_range(date_range, today=as_of)
    settings = settings or load_source_settings("dld")
    adapter = build_dld_adapter(settings, **({"fetch": fetch} if fetch else {}))
    query = {"from_date": date_range[0], "to_date": date_range[1], "area_name": area_name}

    return await _run_job(
        adapter,
        org_id=org_id,
        date_range=date_range,
        as_of=as_of,
        use_mock_data=use_mock_data,
        mock_records=lambda: _filter_by_date(
            generate_mock_dld_transactions(mock_count, today=date_range[1]),
            "transaction_date",
            date_range,
        ),
        queries=[query],
        on_progress=on_progress,
        conn=conn,
        batch_size=batch_size,
    )


async def ingest_ejari_contracts(
    org_id: str,
    *,
    date_range: DateRange | None = None,
    use_mock_data: bool = False,
    on_progress: ProgressCallback | None = None,
    as_of: date | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: SourceSettings | None = None,
    fetch: FetchFn | None = None,
    area_name: str | None = None,
    property_usage: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    mock_count: int = DEFAULT_MOCK_COUNT,
) -> IngestionResult:
    """Ingest Ejari rental contracts starting within ``date_range``."""

    as_of = as_of or date.today()
    date_range = resolve_date_range(date_range, today=as_of)
    settings = settings or load_source_settings("ejari")
    adapter = build_ejari_adapter(settings, **({"fetch": fetch} if fetch else {}))
    query = {
        "from_date": date_range[0],
        "to_date": date_range[1],
        "area_name": area_name,
        "property_usage": property_usage,
    }

    return await _run_job(
        adapter,
        org_id=org_id,
        date_range=date_range,
        as_of=as_of,
        use_mock_data=use_mock_data,
        mock_records=lambda: _filter_by_date(
            generate_mock_ejari_contracts(mock_count, today=date_range[1]),
            "contract_start",
            date_range,
        ),
        queries=[query],
        on_progress=on_progress,
        conn=conn,
        batch_size=batch_size,
    )


async def ingest_portal_listings(
    org_id: str,
    portal: str,
    *,
    date_range: DateRange | None = None,
    use_mock_data: bool = False,
    on_progress: ProgressCallback | None = None,
    as_of: date | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: SourceSettings | None = None,
    fetch: FetchFn | None = None,
    areas: Sequence[str] | None = None,
    listing_type: str = "sale",
    batch_size: int = DEFAULT_BATCH_SIZE,
    mock_count: int = DEFAULT_MOCK_COUNT,
) -> IngestionResult:
    """Snapshot the active listings of one portal as of ``as_of``.

    Previous-day prices for the same portal are read before the snapshot is
    written so price cuts can be detected.
    """

    portal = canonical_portal(portal)
    as_of = as_of or date.today()
    date_range = resolve_date_range(date_range, today=as_of)
    settings = settings or load_source_settings(portal)
    adapter = build_portal_adapter(portal, settings, **({"fetch": fetch} if fetch else {}))
    queries = [
        {"area": area, "listing_type": listing_type}
        for area in (areas if areas is not None else DEFAULT_PORTAL_AREAS)
    ]

    return await _run_job(
        adapter,
        org_id=org_id,
        date_range=date_range,
        as_of=as_of,
        use_mock_data=use_mock_data,
        mock_records=lambda: generate_mock_portal_listings(portal, mock_count, today=as_of),
        queries=queries,
        on_progress=on_progress,
        conn=conn,
        batch_size=batch_size,
        portal=portal,
    )


async def _guarded(source: str, job: Callable[[], Any]) -> IngestionResult:
    try:
        return await job()
    except Exception as exc:  # noqa: BLE001 - one source must not stop the others
        logger.exception("%s ingestion failed unexpectedly", source)
        return IngestionResult(source=source, success=False, errors=[f"Unexpected error: {exc}"])


async def run_ingestion_pipeline(
    org_id: str,
    *,
    sources: Iterable[str] = ALL_SOURCES,
    date_range: DateRange | None = None,
    use_mock_data: bool = False,
    portals: Sequence[str] | None = None,
    on_progress: ProgressCallback | None = None,
    as_of: date | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    config: IngestionConfig | None = None,
) -> PipelineResult:
    """Run DLD, then Ejari, then each portal; skipped sources are reported."""

    started = time.monotonic()
    config = config or IngestionConfig()
    selected = {source.lower() for source in sources}
    unknown = selected - set(ALL_SOURCES)
    if unknown:
        raise ValueError(f"Unknown sources: {', '.join(sorted(unknown))}")

    as_of = as_of or date.today()
    options = {
        "date_range": resolve_date_range(
            date_range, today=as_of, lookback_days=config.lookback_days
        ),
        "use_mock_data": use_mock_data,
        "on_progress": on_progress,
        "as_of": as_of,
        "conn": conn,
        "batch_size": config.batch_size,
        "mock_count": config.mock_count,
    }
    pipeline = PipelineResult(success=True)

    if "dld" in selected:
        pipeline.results.append(
            await _guarded("dld", lambda: ingest_dld_transactions(org_id, **options))
        )
    else:
        pipeline.skipped_sources.append("dld")
        notify_progress(on_progress, "DLD skipped")

    if "ejari" in selected:
        pipeline.results.append(
            await _guarded("ejari", lambda: ingest_ejari_contracts(org_id, **options))
        )
    else:
        pipeline.skipped_sources.append("ejari")
        notify_progress(on_progress, "Ejari skipped")

    if "portals" in selected:
        for portal in portals or config.portals:
            pipeline.results.append(
                await _guarded(
                    portal.lower(),
                    lambda portal=portal: ingest_portal_listings(
                        org_id, portal, areas=config.portal_areas, **options
                    ),
                )
            )
    else:
        pipeline.skipped_sources.append("portals")
        notify_progress(on_progress, "Portals skipped")

    pipeline.success = all(result.success for result in pipeline.results)
    pipeline.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Ingestion pipeline finished for %s: success=%s fetched=%s ingested=%s price_cuts=%s",
        org_id,
        pipeline.success,
        pipeline.total_fetched,
        pipeline.total_ingested,
        pipeline.total_price_cuts,
    )
    return pipeline


def run_ingestion(org_id: str, **kwargs: Any) -> PipelineResult:
    """Synchronous entry point used by the CLI."""

    return asyncio.run(run_ingestion_pipeline(org_id, **kwargs))


__all__ = [
    "ingest_dld_transactions",
    "ingest_ejari_contracts",
    "ingest_portal_listings",
    "run_ingestion",
    "run_ingestion_pipeline",
    "resolve_date_range",
]
