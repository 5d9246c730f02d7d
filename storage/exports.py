"""Export helpers for tables persisted inside DuckDB."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import duckdb

from storage.db import SCHEMAS

EXPORT_FORMATS = ("csv", "parquet")


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def table_query(table: str, *, org_id: str | None = None) -> tuple[str, list[Any]]:
    """Build the ordered ``SELECT`` used to export one table."""

    if table not in SCHEMAS:
        raise ValueError(f"Unknown table '{table}'.")
    schema = SCHEMAS[table]
    sql = f"SELECT * FROM {table}"
    params: list[Any] = []
    if org_id is not None:
        sql += " WHERE org_id = ?"
        params.append(org_id)
    sql += f" ORDER BY {', '.join(schema.key)}"
    return sql, params


def _literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def _inline_params(sql: str, params: Sequence[Any] | None) -> str:
    """COPY statements cannot be prepared, so placeholders are rendered as literals."""

    params = list(params or [])
    parts = sql.split("?")
    if len(parts) - 1 != len(params):
        raise ValueError("Placeholder count does not match the number of parameters.")
    rendered = [parts[0]]
    for value, part in zip(params, parts[1:]):
        rendered.append(_literal(value))
        rendered.append(part)
    return "".join(rendered)


def _copy(
    conn: duckdb.DuckDBPyConnection,
    destination: Path,
    sql: str,
    params: Sequence[Any] | None,
    options: str,
) -> Path:
    _ensure_parent(destination)
    sanitized_path = str(destination).replace("'", "''")
    conn.execute(f"COPY ({_inline_params(sql, params)}) TO '{sanitized_path}' ({options})")
    return destination


def export_to_csv(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    table: str | None = None,
    query: str | None = None,
    params: Sequence[Any] | None = None,
    org_id: str | None = None,
    include_header: bool = True,
) -> Path:
    """Materialize a table or query into a CSV file using DuckDB's COPY command."""

    if query is None:
        if table is None:
            raise ValueError("Either table or query is required.")
        query, params = table_query(table, org_id=org_id)
    return _copy(
        conn,
        Path(destination),
        query,
        params,
        f"FORMAT CSV, HEADER {'TRUE' if include_header else 'FALSE'}",
    )


def export_to_parquet(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    table: str | None = None,
    query: str | None = None,
    params: Sequence[Any] | None = None,
    org_id: str | None = None,
) -> Path:
    if query is None:
        if table is None:
            raise ValueError("Either table or query is required.")
        query, params = table_query(table, org_id=org_id)
    return _copy(conn, Path(destination), query, params, "FORMAT PARQUET")


__all__ = ["EXPORT_FORMATS", "export_to_csv", "export_to_parquet", "table_query"]
