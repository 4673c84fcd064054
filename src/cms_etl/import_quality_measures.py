"""cms_etl.import_quality_measures

CMS MDS Quality Measures -> community_quality_measures.

The source has one row per (facility, measure).  Measures we track are
pivoted into one row per (CCN, quarter_ending) with a column per measure.
"""

from __future__ import annotations

from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.normalize import first_present, parse_cms_date, parse_score
from cms_etl.shared import Dropped, EtlResult

MEASURE_CODE_MAP: dict[str, str] = {
    "401": "pressure_ulcers_percent",     # new or worsened pressure ulcers
    "402": "falls_with_injury_percent",   # falls with major injury
    "408": "antipsychotic_use_percent",
    "419": "hospitalization_rate",        # per 1000 resident days
    "424": "emergency_room_visits_rate",  # per 1000 resident days
    "434": "catheter_infections_rate",
    "435": "uti_rate",
    "451": "function_decline_percent",
    "452": "improved_function_percent",
}

_CCN_KEYS = ("cms_certification_number_ccn", "federal_provider_number", "provnum")
_SCORE_KEYS = ("score", "four_quarter_average_score", "measure_score")
_QUARTER_KEYS = ("quarter_ending", "processing_date")


def measure_ccn(raw: dict[str, Any]) -> str | None:
    return first_present(raw, *_CCN_KEYS)


def measure_in_scope(raw: dict[str, Any], ctx: ConnectorContext) -> bool:
    return ctx.community_id(measure_ccn(raw)) is not None


def consolidate_measures(
    records: list[dict[str, Any]], ctx: ConnectorContext
) -> list[dict[str, Any]]:
    """Pivot tracked measure rows into one row per (CCN, quarter_ending).

    Unknown measure codes and unparseable scores are ignored.  A missing
    quarter date falls back to the run date.
    """
    pivot: dict[tuple[str, str], dict[str, Any]] = {}
    for raw in records:
        ccn = measure_ccn(raw)
        column = MEASURE_CODE_MAP.get(first_present(raw, "measure_code") or "")
        if ccn is None or column is None:
            continue
        score = parse_score(first_present(raw, *_SCORE_KEYS))
        if score is None:
            continue
        quarter = parse_cms_date(first_present(raw, *_QUARTER_KEYS)) or ctx.run_date.isoformat()
        entry = pivot.setdefault((ccn, quarter), {"ccn": ccn, "quarter_ending": quarter})
        entry[column] = score
    return list(pivot.values())


def transform_measures(row: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    community_id = ctx.community_id(row.get("ccn"))
    if community_id is None:
        return Dropped("community_not_found")
    return {**row, "community_id": community_id}


QUALITY_MEASURES = SourceSpec(
    name="quality_measures",
    table="community_quality_measures",
    key_columns=("ccn", "quarter_ending"),
    transform=transform_measures,
    endpoint_key="quality_measures",
    scope=measure_in_scope,
    consolidate=consolidate_measures,
)


def import_quality_measures(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(conn, QUALITY_MEASURES, config, session=session, throttle=throttle)
