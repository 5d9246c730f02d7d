"""FastAPI service for triggering jobs and reading ingested market data."""

from __future__ import annotations

import os
import tempfile
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Optional

import duckdb
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, field_validator

from jobs.config import ALL_SOURCES, load_ingestion_config
from jobs.ingest import run_ingestion_pipeline
from jobs.map_signals import map_signals_to_investors
from pipelines.sources.portals import canonical_portal
from storage.db import (
    DLD_TRANSACTIONS_TABLE,
    EJARI_CONTRACTS_TABLE,
    MARKET_SIGNALS_TABLE,
    PORTAL_LISTINGS_TABLE,
    SIGNAL_TARGETS_TABLE,
    connect,
    fetch_rows,
    fetch_targets_for_signal,
    get_ingestion_stats,
)
from storage.exports import EXPORT_FORMATS, export_to_csv, export_to_parquet, table_query

DEFAULT_LIMIT = 200
MAX_LIMIT = 2000
ALLOWED_FORMATS = {"json", *EXPORT_FORMATS}

ROW_SOURCES = {
    "dld": DLD_TRANSACTIONS_TABLE,
    "ejari": EJARI_CONTRACTS_TABLE,
    "portals": PORTAL_LISTINGS_TABLE,
    "signals": MARKET_SIGNALS_TABLE,
    "targets": SIGNAL_TARGETS_TABLE,
}
STATS_SOURCES = ("dld", "ejari", "portals")

load_dotenv()


@asynccontextmanager
async def lifespan(_: FastAPI):
    conn = connect()
    conn.close()
    yield


app = FastAPI(title="Market Data Pipeline API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


class IngestRequest(BaseModel):
    org_id: str = Field(..., min_length=1, description="Organization to ingest for.")
    sources: list[str] = Field(default_factory=lambda: list(ALL_SOURCES))
    portals: Optional[list[str]] = Field(default=None, description="Defaults to every portal.")
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    use_mock_data: bool = False

    @field_validator("portals")
    @classmethod
    def _canonical_portals(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        return [canonical_portal(name) for name in value]


class MapSignalsRequest(BaseModel):
    org_id: str = Field(..., min_length=1)
    batch_size: int = Field(50, ge=1, le=500)
    max_batches: int = Field(10, ge=1, le=100)
    cursor: Optional[str] = None


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs/ingest")
async def trigger_ingest(request: IngestRequest):
    unknown = {source.lower() for source in request.sources} - set(ALL_SOURCES)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown sources: {', '.join(sorted(unknown))}")

    date_range = None
    if request.from_date or request.to_date:
        end = request.to_date or date.today()
        start = request.from_date or end
        if start > end:
            raise HTTPException(status_code=400, detail="from_date must not be after to_date")
        date_range = (start, end)

    conn = connect()
    try:
        result = await run_ingestion_pipeline(
            request.org_id,
            sources=request.sources,
            date_range=date_range,
            use_mock_data=request.use_mock_data,
            portals=request.portals,
            conn=conn,
            config=load_ingestion_config(),
        )
    finally:
        conn.close()
    return JSONResponse(content=result.model_dump(mode="json"))


@app.post("/jobs/map-signals")
async def trigger_map_signals(request: MapSignalsRequest):
    conn = connect()
    try:
        summary = await map_signals_to_investors(
            request.org_id,
            conn=conn,
            batch_size=request.batch_size,
            max_batches=request.max_batches,
            cursor=request.cursor,
        )
    finally:
        conn.close()
    return summary.as_dict()


@app.get("/rows/{source}")
def get_rows(
    source: str,
    background_tasks: BackgroundTasks,
    org_id: str | None = Query(None, description="Restrict rows to one organization"),
    format: str = Query("json", description="Response format: json, csv, or parquet"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
):
    table = ROW_SOURCES.get(source.lower())
    if table is None:
        raise HTTPException(status_code=404, detail=f"Unknown source '{source}'")
    fmt = format.lower()
    if fmt not in ALLOWED_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}'.")

    conn = connect(read_only=True)
    try:
        if fmt == "json":
            rows = fetch_rows(conn, table, org_id=org_id, limit=limit)
            return JSONResponse(content=jsonable_encoder({"count": len(rows), "items": rows}))

        query, params = table_query(table, org_id=org_id)
        query += f" LIMIT {limit}"
        suffix = ".csv" if fmt == "csv" else ".parquet"
        media_type = "text/csv" if fmt == "csv" else "application/vnd.apache.parquet"
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
            dest = Path(tmp.name)

        if fmt == "csv":
            export_to_csv(conn, dest, query=query, params=params)
        else:
            export_to_parquet(conn, dest, query=query, params=params)

        def _cleanup(path: Path) -> None:
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        background_tasks.add_task(_cleanup, dest)
        return FileResponse(
            dest, media_type=media_type, filename=f"{source}{suffix}", background=background_tasks
        )
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    finally:
        conn.close()


@app.get("/signals/{signal_id}/targets")
def get_signal_targets(signal_id: str, org_id: str = Query(..., description="Owning organization")):
    conn = connect(read_only=True)
    try:
        targets = fetch_targets_for_signal(conn, org_id, signal_id)
    finally:
        conn.close()
    return JSONResponse(content=jsonable_encoder({"count": len(targets), "items": targets}))


@app.get("/ingestion/stats")
def ingestion_stats(org_id: str = Query(..., description="Owning organization")):
    conn = connect(read_only=True)
    try:
        stats = {
            source: get_ingestion_stats(conn, ROW_SOURCES[source], org_id=org_id)
            for source in STATS_SOURCES
        }
    finally:
        conn.close()
    return JSONResponse(content=jsonable_encoder(stats))
