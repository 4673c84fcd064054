"""cms_etl.import_provider_info

CMS Nursing Home Provider Information -> community.

Source: data.cms.gov provider-data datastore (dataset 4pq5-n9py), queried
for the region's state and filtered locally by county name.  Every in-scope
provider becomes (or updates) one community row keyed by CCN.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import psycopg
import requests

from cms_etl.config import RegionConfig
from cms_etl.connector import ConnectorContext, SourceSpec, run_connector
from cms_etl.fetch import RequestThrottle
from cms_etl.normalize import (
    care_compare_url,
    clean_phone_number,
    first_present,
    normalize_facility_name,
    parse_cms_boolean,
    parse_cms_date,
    parse_int,
    parse_star_rating,
    slug_name,
    trim,
)
from cms_etl.shared import Dropped, EtlResult

FACILITY_TYPE = "skilled-nursing"


def provider_query_params(config: RegionConfig) -> dict[str, Any]:
    return {"filters[provider_state]": config.state}


def provider_in_scope(raw: dict[str, Any], ctx: ConnectorContext) -> bool:
    return ctx.config.contains_county(name=first_present(raw, "countyparish", "county_name"))


def normalize_provider(raw: dict[str, Any], default_state: str) -> dict[str, Any] | Dropped:
    """Map a raw provider record to community columns.

    Fields that normalize to None are left out so an update never blanks a
    value the source simply omitted.
    """
    ccn = first_present(raw, "cms_certification_number_ccn", "federal_provider_number")
    if ccn is None:
        return Dropped("missing_ccn")
    name = normalize_facility_name(raw.get("provider_name"))
    if name is None:
        return Dropped("missing_name")

    row: dict[str, Any] = {
        "ccn": ccn,
        "name": name,
        "address": trim(raw.get("provider_address")),
        "city": first_present(raw, "citytown", "provider_city"),
        "state": first_present(raw, "state", "provider_state") or default_state,
        "zip": first_present(raw, "zip_code", "provider_zip_code"),
        "phone": clean_phone_number(
            first_present(raw, "telephone_number", "provider_phone_number")
        ),
        "bed_count": parse_int(raw.get("number_of_certified_beds")),
        "accepts_medicare": True,
        "accepts_medicaid": True,
        "facility_type": FACILITY_TYPE,
        "overall_rating": parse_star_rating(raw.get("overall_rating")),
        "health_inspection_rating": parse_star_rating(raw.get("health_inspection_rating")),
        "staffing_rating": parse_star_rating(raw.get("staffing_rating")),
        "quality_rating": parse_star_rating(raw.get("quality_measure_rating")),
        "abuse_icon": parse_cms_boolean(raw.get("abuse_icon")),
        "special_focus_facility": parse_cms_boolean(raw.get("special_focus_facility")),
        "last_inspection_date": parse_cms_date(raw.get("standard_health_inspection_date")),
        "care_compare_url": care_compare_url(ccn),
    }
    return {k: v for k, v in row.items() if v is not None}


def transform_provider(raw: dict[str, Any], ctx: ConnectorContext) -> dict[str, Any] | Dropped:
    row = normalize_provider(raw, ctx.config.state)
    if isinstance(row, Dropped):
        return row
    # id, slug and city_slug are written on insert only
    row["id"] = str(uuid.uuid4())
    row["slug"] = slug_name(row["name"])
    row["city_slug"] = slug_name(row.get("city"))
    row["cms_last_updated"] = datetime.now(timezone.utc)
    return {k: v for k, v in row.items() if v is not None}


PROVIDER_INFO = SourceSpec(
    name="provider_info",
    table="community",
    key_columns=("ccn",),
    transform=transform_provider,
    endpoint_key="provider_info",
    query_params=provider_query_params,
    scope=provider_in_scope,
    insert_only_columns=("id", "slug", "city_slug"),
    requires_communities=False,
)


def import_provider_info(
    conn: psycopg.Connection,
    config: RegionConfig,
    *,
    session: requests.Session | None = None,
    throttle: RequestThrottle | None = None,
) -> EtlResult:
    return run_connector(conn, PROVIDER_INFO, config, session=session, throttle=throttle)
