"""cms_etl.connector

Generic source connector.

Every CMS dataset is synchronized by the same control flow; what differs
per dataset is described by a SourceSpec:

    FETCH_PAGE -> FILTER_BY_SCOPE   (repeat until short page or offset cap)
    -> CONSOLIDATE (optional) -> TRANSFORM -> UPSERT (chunked) -> SUMMARIZE

Failure semantics:
  - Anything that fails before the first record is processed (community
    lookup, fetch after retries, catalog discovery) is a single critical
    error; the run reports zero processed records.
  - A transform that returns Dropped (or raises) is a silent skip.
  - An upsert failure is captured as PersistFailed and the run continues.
    Each upsert runs in its own savepoint so one failing record cannot
    abort the surrounding transaction.

run_connector never raises; callers inspect the returned EtlResult.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

import psycopg
import requests

from cms_etl.config import PaginationConfig, RateLimitConfig, RegionConfig
from cms_etl.fetch import RequestThrottle, build_session, fetch_json
from cms_etl.shared import (
    Dropped,
    EtlError,
    EtlResult,
    PersistFailed,
    RecordOutcome,
    Upserted,
    build_etl_report,
    chunked,
)
from cms_etl.store import fetch_ccn_map, upsert_row

log = logging.getLogger(__name__)

Row = dict[str, Any]


# ---------------------------------------------------------------------------
# Strategy types
# ---------------------------------------------------------------------------

@dataclass
class ConnectorContext:
    """Everything a SourceSpec hook may need during one run."""

    conn: psycopg.Connection
    config: RegionConfig
    run_date: date
    session: requests.Session
    throttle: RequestThrottle
    ccn_map: dict[str, str] = field(default_factory=dict)

    def community_id(self, ccn: str | None) -> str | None:
        if ccn is None:
            return None
        return self.ccn_map.get(ccn)


@dataclass
class SourceSpec:
    """Per-dataset parameters for run_connector.

    Either endpoint_key (a paginated datastore endpoint in the region's
    endpoints map) or load (a custom loader) supplies the raw records.
    """

    name: str
    table: str
    key_columns: tuple[str, ...]
    transform: Callable[[Row, ConnectorContext], Row | Dropped]
    endpoint_key: str | None = None
    query_params: Callable[[RegionConfig], dict[str, Any]] | None = None
    load: Callable[[ConnectorContext], list[Row]] | None = None
    scope: Callable[[Row, ConnectorContext], bool] | None = None
    consolidate: Callable[[list[Row], ConnectorContext], list[Row]] | None = None
    insert_only_columns: tuple[str, ...] = ()
    # Child datasets cannot be loaded before any community has a CCN.
    requires_communities: bool = True


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

def fetch_all_pages(
    session: requests.Session,
    url: str,
    params: dict[str, Any],
    pagination: PaginationConfig,
    rate_limit: RateLimitConfig,
    throttle: RequestThrottle | None = None,
) -> list[Row]:
    """Page through a datastore query endpoint by offset/limit.

    Expects {"results": [...], "count": N} envelopes.  Stops when a page is
    shorter than page_size * short_page_fraction, when offset reaches the
    reported count, or at pagination.max_offset.
    """
    records: list[Row] = []
    page_size = pagination.page_size
    short_page = page_size * pagination.short_page_fraction
    offset = 0

    while True:
        page_params = dict(params)
        page_params.update({"limit": page_size, "offset": offset})
        log.info("fetching %s (offset=%d)", url, offset)
        payload = fetch_json(
            session,
            url,
            params=page_params,
            retry_attempts=rate_limit.retry_attempts,
            retry_delay=rate_limit.retry_delay_seconds,
            timeout=rate_limit.timeout_seconds,
            throttle=throttle,
        )
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            log.warning("unexpected payload from %s at offset %d; stopping", url, offset)
            break

        records.extend(results)
        offset += page_size

        if len(results) < short_page:
            break
        count = payload.get("count")
        if isinstance(count, int) and offset >= count:
            break
        if offset >= pagination.max_offset:
            log.warning("reached offset cap %d for %s", pagination.max_offset, url)
            break

    log.info("fetched %d records from %s", len(records), url)
    return records


# ---------------------------------------------------------------------------
# Per-record processing
# ---------------------------------------------------------------------------

def process_record(
    conn: psycopg.Connection,
    spec: SourceSpec,
    raw: Row,
    ctx: ConnectorContext,
) -> RecordOutcome:
    try:
        row = spec.transform(raw, ctx)
    except Exception as exc:
        log.debug("%s: transform failed: %s", spec.name, exc)
        return Dropped(f"transform_error:{type(exc).__name__}")

    if isinstance(row, Dropped):
        return row

    try:
        with conn.transaction():
            _, inserted = upsert_row(
                conn, spec.table, spec.key_columns, row, spec.insert_only_columns
            )
    except Exception as exc:
        log.warning("%s: upsert into %s failed: %s", spec.name, spec.table, exc)
        return PersistFailed(
            EtlError(message=f"Upsert error: {exc}", record=row)
        )
    return Upserted(inserted=inserted)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _load_records(spec: SourceSpec, ctx: ConnectorContext) -> list[Row]:
    if spec.load is not None:
        raw = spec.load(ctx)
    elif spec.endpoint_key is not None:
        params = spec.query_params(ctx.config) if spec.query_params else {}
        raw = fetch_all_pages(
            ctx.session,
            ctx.config.endpoint(spec.endpoint_key),
            params,
            ctx.config.pagination,
            ctx.config.rate_limit,
            ctx.throttle,
        )
    else:
        raise ValueError(f"source {spec.name!r} has neither endpoint_key nor load")

    if spec.scope is not None:
        before = len(raw)
        raw = [r for r in raw if spec.scope(r, ctx)]
        log.info("%s: %d of %d records in %s scope", spec.name, len(raw), before, ctx.config.region)
    if spec.consolidate is not None:
        raw = spec.consolidate(raw, ctx)
        log.info("%s: consolidated to %d records", spec.name, len(raw))
    return raw


def run_connector(
    conn: psycopg.Connection,
    spec: SourceSpec,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
    run_date: date | None = None,
) -> EtlResult:
    """Synchronize one dataset into its destination table."""
    result = EtlResult(job_name=spec.name)
    ctx = ConnectorContext(
        conn=conn,
        config=config,
        run_date=run_date or date.today(),
        session=session or build_session(),
        throttle=throttle or RequestThrottle(config.rate_limit.max_requests_per_minute),
    )
    log.info("starting %s import for region %s", spec.name, config.region)

    try:
        ctx.ccn_map = fetch_ccn_map(conn)
        if spec.requires_communities and not ctx.ccn_map:
            result.add_critical("No communities with CCNs found")
            return _finish(result)
        records = _load_records(spec, ctx)
    except Exception as exc:
        log.error("%s: critical error before processing: %s", spec.name, exc)
        result.add_critical(f"Critical error: {exc}")
        return _finish(result)

    if not records:
        log.warning("%s: no source records fetched", spec.name)
        return _finish(result)

    batches = list(chunked(records, config.batch_size))
    for i, batch in enumerate(batches, start=1):
        log.info("%s: processing batch %d/%d", spec.name, i, len(batches))
        for raw in batch:
            result.record(process_record(conn, spec, raw, ctx))

    return _finish(result)


def _finish(result: EtlResult) -> EtlResult:
    result.finish()
    log.info("\n%s", build_etl_report(result))
    return result
