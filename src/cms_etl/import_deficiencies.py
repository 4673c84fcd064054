"""cms_etl.import_deficiencies

CMS Health Deficiencies -> community_deficiency.

Only deficiencies for known communities whose survey date falls inside the
region's lookback window (deficiency_lookback_years) are loaded.  One row
per (CCN, survey date, deficiency tag).
"""

from __future__ import annotations

from datetime import date
from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.normalize import first_present, normalize_space, parse_cms_date, trim
from cms_etl.shared import Dropped, EtlResult

DEFAULT_SURVEY_TYPE = "standard"

_CCN_KEYS = ("federal_provider_number", "cms_certification_number_ccn", "provnum")


def deficiency_ccn(raw: dict[str, Any]) -> str | None:
    return first_present(raw, *_CCN_KEYS)


def deficiency_in_scope(raw: dict[str, Any], ctx: ConnectorContext) -> bool:
    return ctx.community_id(deficiency_ccn(raw)) is not None


def lookback_cutoff(run_date: date, years: int) -> date:
    try:
        return run_date.replace(year=run_date.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return run_date.replace(year=run_date.year - years, day=28)


def transform_deficiency(raw: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    ccn = deficiency_ccn(raw)
    if ccn is None:
        return Dropped("missing_ccn")
    survey_date = parse_cms_date(
        first_present(raw, "survey_date_output", "standard_survey_date", "survey_date")
    )
    if survey_date is None:
        return Dropped("missing_survey_date")
    community_id = ctx.community_id(ccn)
    if community_id is None:
        return Dropped("community_not_found")

    cutoff = lookback_cutoff(ctx.run_date, ctx.config.deficiency_lookback_years)
    if date.fromisoformat(survey_date) < cutoff:
        return Dropped("outside_lookback_window")

    row = {
        "ccn": ccn,
        "community_id": community_id,
        "survey_date": survey_date,
        "survey_type": trim(raw.get("survey_type")) or DEFAULT_SURVEY_TYPE,
        "deficiency_tag": trim(raw.get("deficiency_tag")) or "",
        "scope_severity": trim(raw.get("scope_severity_code")) or "",
        "deficiency_description": normalize_space(raw.get("inspection_text")),
        "correction_date": parse_cms_date(raw.get("deficiency_corrected_date")),
    }
    return {k: v for k, v in row.items() if v is not None}


DEFICIENCIES = SourceSpec(
    name="deficiencies",
    table="community_deficiency",
    key_columns=("ccn", "survey_date", "deficiency_tag"),
    transform=transform_deficiency,
    endpoint_key="deficiencies",
    scope=deficiency_in_scope,
)


def import_deficiencies(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(conn, DEFICIENCIES, config, session=session, throttle=throttle)
