"""cms_etl.health_check

Data-freshness report for the ETL tables.

Each table is checked for row count and most recent updated_at.  A table
is flagged "warning" when it is empty or when its newest row is older than
twice the region's refresh cadence for that dataset, and "error" when it
cannot be queried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import psycopg

from cms_etl.config import RegionConfig

# (table, refresh_cadence_days key)
ETL_TABLES: list[tuple[str, str]] = [
    ("community", "provider_info"),
    ("community_ownership", "ownership"),
    ("community_deficiency", "deficiencies"),
    ("inspection_report", "inspection_reports"),
    ("community_staffing", "staffing"),
    ("community_quality_measures", "quality"),
]

STALE_FACTOR = 2


@dataclass
class TableHealth:
    table: str
    status: str                  # healthy | warning | error
    row_count: int = 0
    last_updated: datetime | None = None
    days_since_update: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "status": self.status,
            "row_count": self.row_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "days_since_update": self.days_since_update,
            "message": self.message,
        }


def assess_table(
    table: str,
    row_count: int,
    last_updated: datetime | None,
    cadence_days: int,
    now: datetime,
) -> TableHealth:
    """Classify one table's freshness."""
    if row_count == 0 or last_updated is None:
        return TableHealth(table, "warning", row_count, last_updated, None, "no data")
    days = (now - last_updated).days
    if days > cadence_days * STALE_FACTOR:
        return TableHealth(
            table, "warning", row_count, last_updated, days,
            f"stale: {days} days since update (cadence {cadence_days} days)",
        )
    return TableHealth(table, "healthy", row_count, last_updated, days)


def check_data_freshness(
    conn: psycopg.Connection,
    config: RegionConfig,
    now: datetime | None = None,
) -> list[TableHealth]:
    now = now or datetime.now(timezone.utc)
    results: list[TableHealth] = []
    for table, cadence_key in ETL_TABLES:
        cadence = config.refresh_cadence_days.get(cadence_key, 7)
        try:
            with conn.transaction():
                row = conn.execute(
                    f"SELECT count(*), max(updated_at) FROM {table}"
                ).fetchone()
        except psycopg.Error as exc:
            results.append(TableHealth(table, "error", message=str(exc).strip()))
            continue
        results.append(assess_table(table, int(row[0]), row[1], cadence, now))
    return results


def build_health_report(results: list[TableHealth]) -> str:
    lines = [
        "=" * 60,
        "CMS Data Health Check",
        "=" * 60,
    ]
    for h in results:
        age = f"{h.days_since_update}d" if h.days_since_update is not None else "-"
        lines.append(f"  {h.table:<28} {h.status:<8} rows={h.row_count:<7} age={age}")
        if h.message:
            lines.append(f"    {h.message}")
    healthy = sum(1 for h in results if h.status == "healthy")
    lines.append(f"\n{healthy}/{len(results)} tables healthy")
    lines.append("=" * 60)
    return "\n".join(lines)
