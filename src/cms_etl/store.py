"""cms_etl.store

Destination-store helpers.

Every ETL table carries a uniqueness constraint on its natural key, so a
write is a single INSERT ... ON CONFLICT ... DO UPDATE statement.  Whether
the row was inserted or updated comes back from the same round-trip via
Postgres' xmax system column (0 for a freshly inserted tuple).
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

import psycopg
from psycopg import sql


def fetch_ccn_map(conn: psycopg.Connection) -> dict[str, str]:
    """Return {ccn: community_id} for every community linked to a CCN."""
    rows = conn.execute(
        "SELECT ccn, id FROM community WHERE ccn IS NOT NULL ORDER BY ccn"
    ).fetchall()
    return {r[0]: str(r[1]) for r in rows}


def upsert_row(
    conn: psycopg.Connection,
    table: str,
    key_columns: Sequence[str],
    values: dict[str, Any],
    insert_only_columns: Iterable[str] = (),
) -> tuple[str, bool]:
    """Insert values into table, or update the row sharing its key columns.

    Columns named in insert_only_columns (plus the key columns) are written
    on insert and never overwritten on update.  updated_at is bumped on
    every update.

    Returns (row id, inserted).
    """
    missing = [k for k in key_columns if values.get(k) is None]
    if missing:
        raise ValueError(f"upsert into {table} missing key columns: {missing}")

    columns = list(values.keys())
    frozen = set(key_columns) | set(insert_only_columns)
    mutable = [c for c in columns if c not in frozen]

    assignments = [
        sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in mutable
    ]
    assignments.append(sql.SQL("updated_at = now()"))

    query = sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
        "ON CONFLICT ({keys}) DO UPDATE SET {assignments} "
        "RETURNING id, (xmax = 0) AS inserted"
    ).format(
        table=sql.Identifier(table),
        columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        placeholders=sql.SQL(", ").join(sql.Placeholder(c) for c in columns),
        keys=sql.SQL(", ").join(sql.Identifier(k) for k in key_columns),
        assignments=sql.SQL(", ").join(assignments),
    )
    row = conn.execute(query, values).fetchone()
    return str(row[0]), bool(row[1])
