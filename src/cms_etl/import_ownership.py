"""cms_etl.import_ownership

CMS Nursing Home Ownership -> community_ownership.

The source has one row per (facility, owner role).  Rows for known
communities are consolidated into a single snapshot per CCN and stored
under the run date as effective_date, so re-running on the same day
updates that day's snapshot.
"""

from __future__ import annotations

from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.normalize import first_present, normalize_space
from cms_etl.shared import Dropped, EtlResult

_CCN_KEYS = ("provnum", "cms_certification_number_ccn", "federal_provider_number")


def ownership_ccn(raw: dict[str, Any]) -> str | None:
    return first_present(raw, *_CCN_KEYS)


def ownership_in_scope(raw: dict[str, Any], ctx: ConnectorContext) -> bool:
    return ctx.community_id(ownership_ccn(raw)) is not None


def classify_ownership_type(value: Any) -> str | None:
    """Map CMS ownership type text onto for-profit / non-profit / government."""
    raw = normalize_space(value)
    if raw is None:
        return None
    t = raw.lower()
    if "non-profit" in t or "nonprofit" in t or "non profit" in t:
        return "non-profit"
    if "profit" in t:
        return "for-profit"
    if "government" in t:
        return "government"
    return raw


def consolidate_ownership(
    records: list[dict[str, Any]], ctx: ConnectorContext
) -> list[dict[str, Any]]:
    """Fold per-role rows into one ownership snapshot per CCN."""
    by_ccn: dict[str, dict[str, Any]] = {}
    effective_date = ctx.run_date.isoformat()

    for raw in records:
        ccn = ownership_ccn(raw)
        if ccn is None:
            continue
        entry = by_ccn.setdefault(ccn, {"ccn": ccn, "effective_date": effective_date})

        role = (normalize_space(raw.get("role_description")) or "").upper()
        owner_name = normalize_space(raw.get("owner_name"))
        provider_name = normalize_space(raw.get("provider_name"))
        if "OPERATOR" in role:
            entry["operator_name"] = owner_name or provider_name
        if "OWNER" in role and owner_name:
            entry["owner_name"] = owner_name

        org = normalize_space(raw.get("organization_name"))
        if org and org != provider_name:
            entry["chain_name"] = org

        ownership_type = classify_ownership_type(raw.get("ownership_type"))
        if ownership_type:
            entry["ownership_type"] = ownership_type

    return list(by_ccn.values())


def transform_ownership(row: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    community_id = ctx.community_id(row.get("ccn"))
    if community_id is None:
        return Dropped("community_not_found")
    return {**row, "community_id": community_id}


OWNERSHIP = SourceSpec(
    name="ownership",
    table="community_ownership",
    key_columns=("ccn", "effective_date"),
    transform=transform_ownership,
    endpoint_key="ownership",
    scope=ownership_in_scope,
    consolidate=consolidate_ownership,
)


def import_ownership(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(conn, OWNERSHIP, config, session=session, throttle=throttle)
