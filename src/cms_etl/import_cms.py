"""cms_etl.import_cms

Unified CMS ingestion CLI.

    cms-etl --mode provider_info --db-dsn "$CMS_ETL_DB_DSN"
    cms-etl --mode all --region-config my_region.yml --dry-run
    cms-etl --mode pbj_staffing --pbj-csv-path PBJ_Daily_Nurse_Staffing_Q2_2024.csv
    cms-etl --mode health_check

Each connector runs in its own transaction: committed when it finishes
without a critical error, rolled back otherwise (and always on --dry-run).
The process exits non-zero when any connector run is not successful.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import click
import psycopg

from cms_etl.config import RegionConfig, RegionConfigError, load_region_config
from cms_etl.fetch import RequestThrottle, build_session
from cms_etl.health_check import build_health_report, check_data_freshness
from cms_etl.import_deficiencies import import_deficiencies
from cms_etl.import_inspection_reports import import_inspection_reports
from cms_etl.import_ownership import import_ownership
from cms_etl.import_pbj_staffing import import_pbj_staffing
from cms_etl.import_provider_info import import_provider_info
from cms_etl.import_quality_measures import import_quality_measures
from cms_etl.shared import EtlResult, build_etl_report, write_run_report

CONNECTORS: dict[str, Callable[..., EtlResult]] = {
    "provider_info": import_provider_info,
    "ownership": import_ownership,
    "deficiencies": import_deficiencies,
    "quality_measures": import_quality_measures,
    "pbj_staffing": import_pbj_staffing,
    "inspection_reports": import_inspection_reports,
}

# PBJ downloads are several hundred MB; run that mode explicitly.
ALL_SEQUENCE = [
    "provider_info",
    "ownership",
    "deficiencies",
    "quality_measures",
    "inspection_reports",
]


def _run_job(
    job: str,
    conn: psycopg.Connection,
    config: RegionConfig,
    pbj_csv_path: Path | None,
    **http,
) -> EtlResult:
    if job == "pbj_staffing":
        return import_pbj_staffing(conn, config, csv_path=pbj_csv_path, **http)
    return CONNECTORS[job](conn, config, **http)


@click.command()
@click.option(
    "--mode",
    default="provider_info",
    type=click.Choice([*CONNECTORS, "all", "health_check"]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", required=True, envvar="CMS_ETL_DB_DSN", help="PostgreSQL DSN")
@click.option(
    "--region-config",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Region YAML (default: bundled cleveland region)",
)
@click.option(
    "--pbj-csv-path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="[pbj_staffing] Read a downloaded PBJ CSV instead of fetching the latest quarters",
)
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    type=click.Path(file_okay=False, path_type=Path),
    show_default=True,
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False)
def main(
    mode: str,
    db_dsn: str,
    region_config: Path | None,
    pbj_csv_path: Path | None,
    report_dir: Path,
    dry_run: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Unified CMS nursing-home ingestion CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_region_config(region_config)
    except (RegionConfigError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot load region config: {exc}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Starting {mode} run region={config.region} (dry_run={dry_run})")

    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)

    results: list[EtlResult] = []
    try:
        if mode == "health_check":
            health = check_data_freshness(conn, config)
            conn.rollback()
            click.echo(build_health_report(health))
            if any(h.status == "error" for h in health):
                sys.exit(1)
            return

        http = {
            "session": build_session(),
            "throttle": RequestThrottle(config.rate_limit.max_requests_per_minute),
        }
        jobs = ALL_SEQUENCE if mode == "all" else [mode]
        for job in jobs:
            click.echo(f"[{run_id}] Running {job}")
            result = _run_job(job, conn, config, pbj_csv_path, **http)
            results.append(result)
            click.echo(build_etl_report(result, dry_run=dry_run))
            if dry_run or result.has_critical_error:
                conn.rollback()
            else:
                conn.commit()
    finally:
        conn.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run, config.region, results, report_dir=report_dir
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    failed = [r.job_name for r in results if not r.success]
    if failed:
        click.echo(f"[{run_id}] Failed: {', '.join(failed)}; exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
