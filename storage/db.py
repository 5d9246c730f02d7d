"""DuckDB persistence for canonical market rows, signals, investors and relevance targets."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import duckdb

from pipelines.model import (
    ExposureFact,
    ListingSnapshotRow,
    MarketSignal,
    RelevanceTarget,
    RentalContractRow,
    TransactionRow,
)

DB_ENV_VAR = "MARKET_DATA_DB_PATH"
DEFAULT_DB_PATH = Path("data/market_data.duckdb")

DLD_TRANSACTIONS_TABLE = "dld_transactions"
EJARI_CONTRACTS_TABLE = "ejari_contracts"
PORTAL_LISTINGS_TABLE = "portal_listings"
MARKET_SIGNALS_TABLE = "market_signals"
INVESTORS_TABLE = "investors"
INVESTOR_HOLDINGS_TABLE = "investor_holdings"
SIGNAL_TARGETS_TABLE = "market_signal_targets"

STALE_LISTING_DAYS = 60


@dataclass(frozen=True)
class TableSchema:
    """DDL and upsert statement of one table.

    ``preserved_columns`` keep the value written when the key was first seen.
    """

    name: str
    columns: tuple[tuple[str, str], ...]
    key: tuple[str, ...]
    date_column: str | None = None
    json_columns: frozenset[str] = frozenset()
    preserved_columns: frozenset[str] = frozenset()

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.columns)

    def create_sql(self) -> str:
        body = ",\n            ".join(f"{name} {sql_type}" for name, sql_type in self.columns)
        return (
            f"CREATE TABLE IF NOT EXISTS {self.name} (\n            {body},\n"
            f"            PRIMARY KEY ({', '.join(self.key)})\n        )"
        )

    def upsert_sql(self) -> str:
        names = self.column_names
        values = f"({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})"
        if not self.preserved_columns:
            return f"INSERT OR REPLACE INTO {self.name} {values}"
        updates = ", ".join(
            f"{name} = excluded.{name}"
            for name in names
            if name not in self.key and name not in self.preserved_columns
        )
        return (
            f"INSERT INTO {self.name} {values} "
            f"ON CONFLICT ({', '.join(self.key)}) DO UPDATE SET {updates}"
        )


_ROW_COLUMNS = (
    ("geo_type", "TEXT NOT NULL"),
    ("geo_id", "TEXT NOT NULL"),
    ("geo_name", "TEXT NOT NULL"),
    ("segment", "TEXT NOT NULL"),
    ("property_type", "TEXT"),
)

SCHEMAS: Mapping[str, TableSchema] = {
    DLD_TRANSACTIONS_TABLE: TableSchema(
        name=DLD_TRANSACTIONS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("external_id", "TEXT NOT NULL"),
            ("transaction_date", "DATE NOT NULL"),
            *_ROW_COLUMNS,
            ("sale_price", "DOUBLE NOT NULL"),
            ("area_sqft", "DOUBLE"),
            ("price_per_sqft", "DOUBLE"),
            ("is_offplan", "BOOLEAN"),
            ("is_freehold", "BOOLEAN"),
            ("currency", "TEXT"),
            ("metadata", "JSON"),
            ("ingested_at", "TIMESTAMP"),
        ),
        key=("org_id", "external_id"),
        date_column="transaction_date",
        json_columns=frozenset({"metadata"}),
        preserved_columns=frozenset({"ingested_at"}),
    ),
    EJARI_CONTRACTS_TABLE: TableSchema(
        name=EJARI_CONTRACTS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("external_id", "TEXT NOT NULL"),
            ("contract_start", "DATE NOT NULL"),
            ("contract_end", "DATE"),
            *_ROW_COLUMNS,
            ("property_usage", "TEXT"),
            ("annual_rent", "DOUBLE NOT NULL"),
            ("monthly_rent", "DOUBLE NOT NULL"),
            ("size_sqft", "DOUBLE"),
            ("contract_duration_months", "INTEGER"),
            ("is_renewal", "BOOLEAN"),
            ("currency", "TEXT"),
            ("metadata", "JSON"),
            ("ingested_at", "TIMESTAMP"),
        ),
        key=("org_id", "external_id"),
        date_column="contract_start",
        json_columns=frozenset({"metadata"}),
        preserved_columns=frozenset({"ingested_at"}),
    ),
    PORTAL_LISTINGS_TABLE: TableSchema(
        name=PORTAL_LISTINGS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("portal", "TEXT NOT NULL"),
            ("listing_id", "TEXT NOT NULL"),
            ("as_of_date", "DATE NOT NULL"),
            *_ROW_COLUMNS,
            ("listing_type", "TEXT"),
            ("price", "DOUBLE NOT NULL"),
            ("price_per_sqft", "DOUBLE"),
            ("original_price", "DOUBLE"),
            ("previous_price", "DOUBLE"),
            ("had_price_cut", "BOOLEAN"),
            ("price_cut_pct", "DOUBLE"),
            ("size_sqft", "DOUBLE"),
            ("bedrooms", "INTEGER"),
            ("bathrooms", "INTEGER"),
            ("is_active", "BOOLEAN"),
            ("days_on_market", "INTEGER"),
            ("listed_date", "DATE"),
            ("is_verified", "BOOLEAN"),
            ("metadata", "JSON"),
            ("ingested_at", "TIMESTAMP"),
        ),
        key=("org_id", "portal", "listing_id", "as_of_date"),
        date_column="as_of_date",
        json_columns=frozenset({"metadata"}),
        preserved_columns=frozenset({"ingested_at"}),
    ),
    MARKET_SIGNALS_TABLE: TableSchema(
        name=MARKET_SIGNALS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("id", "TEXT NOT NULL"),
            ("source_type", "TEXT"),
            ("source", "TEXT"),
            ("signal_type", "TEXT NOT NULL"),
            ("geo_type", "TEXT"),
            ("geo_id", "TEXT NOT NULL"),
            ("geo_name", "TEXT"),
            ("segment", "TEXT"),
            ("metric", "TEXT NOT NULL"),
            ("timeframe", "TEXT"),
            ("current_value", "DOUBLE NOT NULL"),
            ("prev_value", "DOUBLE"),
            ("delta_pct", "DOUBLE"),
            ("confidence_score", "DOUBLE"),
            ("evidence", "JSON"),
            ("signal_key", "TEXT"),
        ),
        key=("org_id", "id"),
        json_columns=frozenset({"evidence"}),
    ),
    INVESTORS_TABLE: TableSchema(
        name=INVESTORS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("id", "TEXT NOT NULL"),
            ("name", "TEXT"),
            ("mandate", "JSON"),
        ),
        key=("org_id", "id"),
        json_columns=frozenset({"mandate"}),
    ),
    INVESTOR_HOLDINGS_TABLE: TableSchema(
        name=INVESTOR_HOLDINGS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("investor_id", "TEXT NOT NULL"),
            ("geo_id", "TEXT NOT NULL"),
            ("units", "INTEGER"),
            ("details", "JSON"),
        ),
        key=("org_id", "investor_id", "geo_id"),
        json_columns=frozenset({"details"}),
    ),
    SIGNAL_TARGETS_TABLE: TableSchema(
        name=SIGNAL_TARGETS_TABLE,
        columns=(
            ("org_id", "TEXT NOT NULL"),
            ("signal_id", "TEXT NOT NULL"),
            ("investor_id", "TEXT NOT NULL"),
            ("relevance_score", "DOUBLE NOT NULL"),
            ("matched_dimensions", "JSON"),
            ("reason_payload", "JSON"),
            ("status", "TEXT"),
            ("created_at", "TIMESTAMP"),
        ),
        key=("org_id", "signal_id", "investor_id"),
        json_columns=frozenset({"matched_dimensions", "reason_payload"}),
        preserved_columns=frozenset({"created_at"}),
    ),
}


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _utc_naive(value: datetime | None = None) -> datetime:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_tables(conn)
    return conn


def ensure_tables(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every table if it does not already exist.

    Only primary keys are declared: DuckDB rejects ``INSERT OR REPLACE`` on
    rows covered by additional ART indexes.
    """

    for schema in SCHEMAS.values():
        conn.execute(schema.create_sql())


def _json_dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _json_loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _serialize(schema: TableSchema, record: Mapping[str, Any]) -> tuple:
    values = []
    for name in schema.column_names:
        value = record.get(name)
        if name in schema.json_columns:
            value = _json_dumps(value)
        elif isinstance(value, datetime):
            value = _utc_naive(value)
        values.append(value)
    return tuple(values)


def _decode(schema: TableSchema, row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        name: _json_loads(value) if name in schema.json_columns else value
        for name, value in row.items()
    }


def _fetch_dicts(cursor: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    names = [column[0] for column in cursor.description or ()]
    return [dict(zip(names, row)) for row in cursor.fetchall()]


def _write(conn: duckdb.DuckDBPyConnection, table: str, records: Sequence[Mapping[str, Any]]) -> int:
    if not records:
        return 0
    schema = SCHEMAS[table]
    conn.executemany(schema.upsert_sql(), [_serialize(schema, record) for record in records])
    return len(records)


def upsert_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    rows: Iterable[TransactionRow | RentalContractRow | ListingSnapshotRow],
) -> int:
    """Insert or replace canonical rows keyed by their idempotency key.

    Returns
    -------
    int
        Number of records written to the database.
    """

    ingested_at = _utc_naive()
    records = []
    for row in rows:
        record = row.model_dump()
        record["ingested_at"] = ingested_at
        records.append(record)
    return _write(conn, table, records)


def fetch_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    *,
    org_id: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Read raw rows of ``table`` (optionally scoped to one org) as dictionaries."""

    if table not in SCHEMAS:
        raise ValueError(f"Unknown table '{table}'.")
    schema = SCHEMAS[table]
    sql = f"SELECT * FROM {table}"
    params: list[Any] = []
    if org_id is not None:
        sql += " WHERE org_id = ?"
        params.append(org_id)
    sql += f" ORDER BY {', '.join(schema.key)}"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return [_decode(schema, row) for row in _fetch_dicts(conn.execute(sql, params))]


def count_rows(conn: duckdb.DuckDBPyConnection, table: str, *, org_id: str | None = None) -> int:
    if table not in SCHEMAS:
        raise ValueError(f"Unknown table '{table}'.")
    if org_id is None:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE org_id = ?", [org_id]).fetchone()[0]


def fetch_previous_prices(
    conn: duckdb.DuckDBPyConnection, org_id: str, portal: str, as_of_date: date
) -> dict[str, float]:
    """Prices stored for ``portal`` listings on the calendar day before ``as_of_date``."""

    cursor = conn.execute(
        f"""
        SELECT listing_id, price FROM {PORTAL_LISTINGS_TABLE}
        WHERE org_id = ? AND portal = ? AND as_of_date = ?
        """,
        [org_id, portal, as_of_date - timedelta(days=1)],
    )
    return {listing_id: price for listing_id, price in cursor.fetchall()}


def get_last_ingestion_date(
    conn: duckdb.DuckDBPyConnection, table: str, *, org_id: str
) -> date | None:
    date_column = SCHEMAS[table].date_column
    if date_column is None:
        raise ValueError(f"Table '{table}' has no ingestion date column.")
    return conn.execute(
        f"SELECT MAX({date_column}) FROM {table} WHERE org_id = ?", [org_id]
    ).fetchone()[0]


def get_ingestion_stats(
    conn: duckdb.DuckDBPyConnection, table: str, *, org_id: str, top_n: int = 5
) -> dict[str, Any]:
    """Row count, date coverage and busiest areas of one ingested table.

    Portal listings additionally report price-cut rate, average days on market
    and the number of stale listings.
    """

    date_column = SCHEMAS[table].date_column
    if date_column is None:
        raise ValueError(f"Table '{table}' has no ingestion date column.")

    count, first, last = conn.execute(
        f"SELECT COUNT(*), MIN({date_column}), MAX({date_column}) FROM {table} WHERE org_id = ?",
        [org_id],
    ).fetchone()
    top_areas = conn.execute(
        f"""
        SELECT geo_name, COUNT(*) AS n FROM {table}
        WHERE org_id = ?
        GROUP BY geo_name
        ORDER BY n DESC, geo_name
        LIMIT {int(top_n)}
        """,
        [org_id],
    ).fetchall()

    stats: dict[str, Any] = {
        "table": table,
        "row_count": count,
        "first_date": first,
        "last_date": last,
        "top_areas": [{"geo_name": name, "count": n} for name, n in top_areas],
    }
    if table == PORTAL_LISTINGS_TABLE:
        cut_rate, avg_dom, stale = conn.execute(
            f"""
            SELECT
                AVG(CASE WHEN had_price_cut THEN 1.0 ELSE 0.0 END),
                AVG(days_on_market),
                COUNT(*) FILTER (WHERE days_on_market >= {STALE_LISTING_DAYS})
            FROM {PORTAL_LISTINGS_TABLE}
            WHERE org_id = ?
            """,
            [org_id],
        ).fetchone()
        stats.update(
            price_cut_rate=cut_rate or 0.0,
            avg_days_on_market=avg_dom or 0.0,
            stale_listings=stale or 0,
        )
    return stats


def insert_market_signals(
    conn: duckdb.DuckDBPyConnection, signals: Iterable[MarketSignal]
) -> int:
    return _write(conn, MARKET_SIGNALS_TABLE, [signal.model_dump() for signal in signals])


def fetch_unmapped_signals(
    conn: duckdb.DuckDBPyConnection,
    org_id: str,
    *,
    limit: int = 50,
    cursor: str | None = None,
) -> tuple[list[dict[str, Any]], str | None]:
    """Page through signals that have no relevance targets yet.

    Signals are ordered by id; the returned cursor is the last id of a full
    page, or ``None`` once the scan is exhausted.
    """

    schema = SCHEMAS[MARKET_SIGNALS_TABLE]
    params: list[Any] = [org_id]
    sql = f"""
        SELECT s.* FROM {MARKET_SIGNALS_TABLE} s
        WHERE s.org_id = ?
          AND NOT EXISTS (
            SELECT 1 FROM {SIGNAL_TARGETS_TABLE} t
            WHERE t.org_id = s.org_id AND t.signal_id = s.id
          )
    """
    if cursor:
        sql += " AND s.id > ?"
        params.append(cursor)
    sql += f" ORDER BY s.id LIMIT {int(limit)}"

    signals = [_decode(schema, row) for row in _fetch_dicts(conn.execute(sql, params))]
    next_cursor = signals[-1]["id"] if len(signals) == limit else None
    return signals, next_cursor


def upsert_investors(conn: duckdb.DuckDBPyConnection, investors: Iterable[Mapping[str, Any]]) -> int:
    records = []
    for investor in investors:
        record = dict(investor)
        mandate = record.get("mandate")
        if hasattr(mandate, "model_dump"):
            record["mandate"] = mandate.model_dump()
        records.append(record)
    return _write(conn, INVESTORS_TABLE, records)


def fetch_investors(conn: duckdb.DuckDBPyConnection, org_id: str) -> list[dict[str, Any]]:
    """Investors with their raw mandates; validation is left to the scorer."""

    return fetch_rows(conn, INVESTORS_TABLE, org_id=org_id)


def upsert_holdings(conn: duckdb.DuckDBPyConnection, holdings: Iterable[Mapping[str, Any]]) -> int:
    return _write(conn, INVESTOR_HOLDINGS_TABLE, list(holdings))


def get_investor_geo_exposure(
    conn: duckdb.DuckDBPyConnection, org_id: str, investor_id: str, geo_id: str
) -> ExposureFact:
    row = conn.execute(
        f"""
        SELECT units, details FROM {INVESTOR_HOLDINGS_TABLE}
        WHERE org_id = ? AND investor_id = ? AND geo_id = ?
        """,
        [org_id, investor_id, geo_id],
    ).fetchone()
    if row is None:
        return ExposureFact(investor_id=investor_id, geo_id=geo_id)
    units, details = row
    return ExposureFact(
        investor_id=investor_id,
        geo_id=geo_id,
        has_exposure=(units or 0) > 0,
        details={"units": units, **(_json_loads(details) or {})},
    )


def upsert_relevance_targets(
    conn: duckdb.DuckDBPyConnection, targets: Iterable[RelevanceTarget]
) -> int:
    """Insert or refresh targets keyed by ``(org_id, signal_id, investor_id)``."""

    return _write(conn, SIGNAL_TARGETS_TABLE, [target.model_dump() for target in targets])


def fetch_targets_for_signal(
    conn: duckdb.DuckDBPyConnection, org_id: str, signal_id: str
) -> list[dict[str, Any]]:
    schema = SCHEMAS[SIGNAL_TARGETS_TABLE]
    cursor = conn.execute(
        f"""
        SELECT * FROM {SIGNAL_TARGETS_TABLE}
        WHERE org_id = ? AND signal_id = ?
        ORDER BY relevance_score DESC, investor_id
        """,
        [org_id, signal_id],
    )
    return [_decode(schema, row) for row in _fetch_dicts(cursor)]


__all__ = [
    "DB_ENV_VAR",
    "DEFAULT_DB_PATH",
    "DLD_TRANSACTIONS_TABLE",
    "EJARI_CONTRACTS_TABLE",
    "PORTAL_LISTINGS_TABLE",
    "MARKET_SIGNALS_TABLE",
    "INVESTORS_TABLE",
    "INVESTOR_HOLDINGS_TABLE",
    "SIGNAL_TARGETS_TABLE",
    "SCHEMAS",
    "TableSchema",
    "connect",
    "ensure_tables",
    "get_database_path",
    "upsert_rows",
    "fetch_rows",
    "count_rows",
    "fetch_previous_prices",
    "get_last_ingestion_date",
    "get_ingestion_stats",
    "insert_market_signals",
    "fetch_unmapped_signals",
    "upsert_investors",
    "fetch_investors",
    "upsert_holdings",
    "get_investor_geo_exposure",
    "upsert_relevance_targets",
    "fetch_targets_for_signal",
]
