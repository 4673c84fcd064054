"""cms_etl.import_inspection_reports

Inspection report links -> inspection_report.

CMS does not publish stable CMS-2567 PDF URLs, so each distinct survey
(CCN, survey date, survey type) already loaded into community_deficiency
gets a row pointing at the facility's Care Compare inspection-reports page.
Run after the deficiencies import.
"""

from __future__ import annotations

from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.normalize import care_compare_inspection_url
from cms_etl.shared import Dropped, EtlResult


def load_surveys(ctx: ConnectorContext) -> list[dict[str, Any]]:
    rows = ctx.conn.execute(
        """
        SELECT DISTINCT ccn, survey_date, survey_type
        FROM community_deficiency
        ORDER BY ccn, survey_date, survey_type
        """
    ).fetchall()
    return [
        {"ccn": r[0], "survey_date": r[1].isoformat(), "survey_type": r[2]}
        for r in rows
    ]


def transform_survey(row: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    community_id = ctx.community_id(row.get("ccn"))
    if community_id is None:
        return Dropped("community_not_found")
    return {
        "ccn": row["ccn"],
        "community_id": community_id,
        "survey_date": row["survey_date"],
        "survey_type": row.get("survey_type") or "standard",
        "pdf_url": care_compare_inspection_url(row["ccn"]),
    }


INSPECTION_REPORTS = SourceSpec(
    name="inspection_reports",
    table="inspection_report",
    key_columns=("ccn", "survey_date", "survey_type"),
    transform=transform_survey,
    load=load_surveys,
)


def import_inspection_reports(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(conn, INSPECTION_REPORTS, config, session=session, throttle=throttle)
