"""cms_etl.pbj_csv

PBJ (Payroll-Based Journal) Daily Nurse Staffing CSV support.

The quarterly PBJ files are published as large (100MB+) CSV downloads
listed in the CMS data.json catalog.  This module discovers the newest
quarters, streams each CSV line by line, and keeps only rows inside the
region scope.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

import requests

from cms_etl.config import RegionConfig
from cms_etl.fetch import RequestThrottle, fetch_json, fetch_with_retry
from cms_etl.normalize import is_weekend, parse_cms_date, parse_hours, trim
from cms_etl.staffing_rollup import PbjDailyRecord

log = logging.getLogger(__name__)

PBJ_TITLE_MARKERS = ("PBJ", "Daily Nurse Staffing")
PBJ_TITLE_EXCLUDE = "Employee"
DEFAULT_QUARTERS = 2
PROGRESS_EVERY = 10_000


# ---------------------------------------------------------------------------
# Catalog discovery
# ---------------------------------------------------------------------------

def _csv_download_url(dataset: dict[str, Any]) -> str | None:
    for dist in dataset.get("distribution") or []:
        if not isinstance(dist, dict):
            continue
        url = dist.get("downloadURL")
        if not url:
            continue
        if (
            dist.get("mediaType") == "text/csv"
            or dist.get("format") == "CSV"
            or url.lower().endswith(".csv")
        ):
            return url
    return None


def select_pbj_csv_urls(catalog: Any, quarters: int = DEFAULT_QUARTERS) -> list[str]:
    """Pick CSV URLs of the newest PBJ daily nurse-staffing datasets in a data.json catalog."""
    datasets = catalog.get("dataset") if isinstance(catalog, dict) else None
    if not isinstance(datasets, list):
        log.error("invalid catalog format: no dataset list")
        return []

    pbj = [
        d for d in datasets
        if isinstance(d, dict)
        and all(m in (d.get("title") or "") for m in PBJ_TITLE_MARKERS)
        and PBJ_TITLE_EXCLUDE not in (d.get("title") or "")
    ]
    log.info("found %d PBJ datasets in catalog", len(pbj))
    pbj.sort(key=lambda d: d.get("modified") or d.get("issued") or "", reverse=True)

    urls: list[str] = []
    for dataset in pbj[:quarters]:
        url = _csv_download_url(dataset)
        if url:
            log.info("found CSV for %s", dataset.get("title"))
            urls.append(url)
    return urls


def discover_latest_pbj_quarters(
    session: requests.Session,
    config: RegionConfig,
    throttle: RequestThrottle | None = None,
    quarters: int = DEFAULT_QUARTERS,
) -> list[str]:
    catalog = fetch_json(
        session,
        config.endpoint("data_catalog"),
        retry_attempts=config.rate_limit.retry_attempts,
        retry_delay=config.rate_limit.retry_delay_seconds,
        timeout=config.rate_limit.timeout_seconds,
        throttle=throttle,
    )
    return select_pbj_csv_urls(catalog, quarters)


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def row_in_scope(row: dict[str, Any], config: RegionConfig) -> bool:
    state = trim(row.get("STATE"))
    if state is None or state.upper() != config.state:
        return False
    return config.contains_county(name=row.get("COUNTY_NAME"), code=row.get("COUNTY_FIPS"))


def parse_pbj_row(row: dict[str, Any]) -> PbjDailyRecord | None:
    """Convert one PBJ CSV row; None when the CCN or work date is unusable."""
    ccn = trim(row.get("PROVNUM"))
    work_date = parse_cms_date(row.get("WorkDate"))
    if ccn is None or work_date is None:
        return None
    return PbjDailyRecord(
        ccn=ccn,
        work_date=work_date,
        census=parse_hours(row.get("MDScensus")),
        hrs_rn_dir=parse_hours(row.get("Hrs_RNDIR")),
        hrs_rn_oth=parse_hours(row.get("Hrs_RNOTH")),
        hrs_lpn_dir=parse_hours(row.get("Hrs_LPNDIR")),
        hrs_lpn_oth=parse_hours(row.get("Hrs_LPNOTH")),
        hrs_cna_dir=parse_hours(row.get("Hrs_CNADIR")),
        hrs_cna_oth=parse_hours(row.get("Hrs_CNAOTH")),
        is_weekend=is_weekend(work_date),
    )


def parse_pbj_lines(lines: Iterable[str], config: RegionConfig) -> Iterator[PbjDailyRecord]:
    """Yield in-scope daily records from CSV text lines (header first)."""
    reader = csv.DictReader(line for line in lines if line.strip())
    seen = kept = 0
    for row in reader:
        seen += 1
        if seen % PROGRESS_EVERY == 0:
            log.info("processed %d rows, kept %d in-scope records", seen, kept)
        if not row_in_scope(row, config):
            continue
        record = parse_pbj_row(row)
        if record is None:
            continue
        kept += 1
        yield record
    log.info("completed parsing: %d rows, %d in-scope records", seen, kept)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

def download_and_parse_pbj_csv(
    session: requests.Session,
    url: str,
    config: RegionConfig,
    throttle: RequestThrottle | None = None,
) -> list[PbjDailyRecord]:
    log.info("downloading PBJ CSV from %s", url[:100])
    resp = fetch_with_retry(
        session,
        url,
        retry_attempts=config.rate_limit.retry_attempts,
        retry_delay=config.rate_limit.retry_delay_seconds,
        timeout=config.rate_limit.timeout_seconds,
        throttle=throttle,
        stream=True,
    )
    try:
        resp.encoding = "utf-8-sig"
        return list(parse_pbj_lines(resp.iter_lines(decode_unicode=True), config))
    finally:
        resp.close()


def read_pbj_csv_file(path: Path, config: RegionConfig) -> list[PbjDailyRecord]:
    """Parse a PBJ CSV already downloaded to disk."""
    with open(path, newline="", encoding="utf-8-sig") as fh:
        return list(parse_pbj_lines(fh, config))


def fetch_latest_pbj_data(
    session: requests.Session,
    config: RegionConfig,
    throttle: RequestThrottle | None = None,
    quarters: int = DEFAULT_QUARTERS,
) -> list[PbjDailyRecord]:
    """Discover, download and parse the newest PBJ quarters for the region."""
    urls = discover_latest_pbj_quarters(session, config, throttle, quarters)
    if not urls:
        raise ValueError("no PBJ CSV files found in CMS catalog")
    records: list[PbjDailyRecord] = []
    for url in urls:
        records.extend(download_and_parse_pbj_csv(session, url, config, throttle))
    log.info("total PBJ records across %d quarters: %d", len(urls), len(records))
    return records
