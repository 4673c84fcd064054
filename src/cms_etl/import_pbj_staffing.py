"""cms_etl.import_pbj_staffing

PBJ Daily Nurse Staffing -> community_staffing.

Daily records come from the newest PBJ quarters in the CMS catalog (or a
CSV already on disk), are rolled up per facility by
staffing_rollup.compute_staffing_rollups, and stored as one row per
(CCN, quarter_ending).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.pbj_csv import fetch_latest_pbj_data, read_pbj_csv_file
from cms_etl.shared import Dropped, EtlResult
from cms_etl.staffing_rollup import PbjDailyRecord, compute_staffing_rollups

log = logging.getLogger(__name__)


def rollup_rows(records: list[PbjDailyRecord], config: RegionConfig) -> list[dict[str, Any]]:
    aggregates = compute_staffing_rollups(
        records,
        window_records=config.staffing.window_records,
        min_records=config.staffing.min_records,
    )
    facilities = len({r.ccn for r in records})
    log.info(
        "computed staffing rollups for %d of %d facilities", len(aggregates), facilities
    )
    return [a.to_row() for a in aggregates]


def transform_staffing(row: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    community_id = ctx.community_id(row.get("ccn"))
    if community_id is None:
        return Dropped("community_not_found")
    return {**row, "community_id": community_id}


def pbj_staffing_spec(csv_path: Path | None = None) -> SourceSpec:
    """Build the staffing source, reading csv_path instead of downloading when given."""

    def load(ctx: ConnectorContext) -> list[dict[str, Any]]:
        if csv_path is not None:
            records = read_pbj_csv_file(csv_path, ctx.config)
        else:
            records = fetch_latest_pbj_data(ctx.session, ctx.config, ctx.throttle)
        log.info("loaded %d in-scope PBJ daily records", len(records))
        return rollup_rows(records, ctx.config)

    return SourceSpec(
        name="pbj_staffing",
        table="community_staffing",
        key_columns=("ccn", "quarter_ending"),
        transform=transform_staffing,
        load=load,
    )


def import_pbj_staffing(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    csv_path: Path | None = None,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(
        conn, pbj_staffing_spec(csv_path), config, session=session, throttle=throttle
    )
