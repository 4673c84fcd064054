"""cms_etl.config

Region configuration for CMS ingestion.

A region file (bundled as cms_etl/regions/<region>.yml, or any path passed
to --region-config) declares the geographic
allow-list that every connector filters against, the CMS endpoints, refresh
cadences and the rate-limit / pagination / batching knobs.  The parsed
RegionConfig is passed explicitly into each connector run so one code path
can serve any deployment region.

Usage:
    from cms_etl.config import load_region_config

    config = load_region_config(Path("my_region.yml"))
    config.contains_county(name="Cuyahoga")         # True
    config.contains_county(code="035")               # True (short form)
    config.contains_county(code="39035")             # True (FIPS form)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from cms_etl.normalize import trim

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

# bundled as package data
DEFAULT_REGION_PATH = Path(__file__).parent / "regions" / "cleveland.yml"

DEFAULT_ENDPOINTS: dict[str, str] = {
    "provider_info": "https://data.cms.gov/provider-data/api/1/datastore/query/4pq5-n9py/0",
    "ownership": "https://data.cms.gov/provider-data/api/1/datastore/query/q5iq-5g6h/0",
    "deficiencies": "https://data.cms.gov/provider-data/api/1/datastore/query/r5xi-yzqa/0",
    "quality_measures": "https://data.cms.gov/provider-data/api/1/datastore/query/djen-97ju/0",
    "data_catalog": "https://data.cms.gov/data.json",
}

DEFAULT_REFRESH_CADENCE_DAYS: dict[str, int] = {
    "provider_info": 7,
    "ownership": 7,
    "deficiencies": 7,
    "inspection_reports": 7,
    "staffing": 90,
    "quality": 90,
}

REQUIRED_YAML_KEYS = frozenset({"region", "state", "counties"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RegionConfigError(ValueError):
    """Raised when a region YAML file fails validation."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class County:
    name: str    # upper-case, e.g. "CUYAHOGA"
    fips: str    # state + county, e.g. "39035"
    code: str    # county only, e.g. "035"


@dataclass
class RateLimitConfig:
    max_requests_per_minute: int = 30
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 60.0


@dataclass
class PaginationConfig:
    page_size: int = 1000
    # A page shorter than page_size * short_page_fraction ends pagination.
    short_page_fraction: float = 0.1
    # Hard stop on total offset, whatever the API keeps returning.
    max_offset: int = 50_000


@dataclass
class StaffingConfig:
    window_records: int = 90
    min_records: int = 30


@dataclass
class MatchingConfig:
    name_weight: float = 0.6
    address_weight: float = 0.4
    min_score: float = 0.6


@dataclass
class RegionConfig:
    region: str
    state: str
    counties: list[County]
    endpoints: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))
    refresh_cadence_days: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_REFRESH_CADENCE_DAYS)
    )
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    staffing: StaffingConfig = field(default_factory=StaffingConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    batch_size: int = 50
    deficiency_lookback_years: int = 3

    @property
    def county_names(self) -> frozenset[str]:
        return frozenset(c.name for c in self.counties)

    @property
    def county_fips_codes(self) -> frozenset[str]:
        return frozenset(c.fips for c in self.counties)

    @property
    def county_short_codes(self) -> frozenset[str]:
        return frozenset(c.code for c in self.counties)

    def contains_county(self, name: Any = None, code: Any = None) -> bool:
        """True if either the county name or county code is in the allow-list.

        Codes are accepted in both long (state+county FIPS, 5 digits) and
        short (county only, 3 digits) forms.
        """
        n = trim(name)
        if n is not None and n.upper() in self.county_names:
            return True
        c = trim(code)
        if c is None or not c.isdigit():
            return False
        if len(c) == 5:
            return c in self.county_fips_codes
        return c.zfill(3) in self.county_short_codes

    def endpoint(self, key: str) -> str:
        try:
            return self.endpoints[key]
        except KeyError:
            raise RegionConfigError(
                f"region {self.region!r} has no endpoint configured for {key!r}"
            ) from None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_region_config(yaml_path: Path | None = None) -> RegionConfig:
    """Load, validate, and return a RegionConfig from a YAML file.

    Args:
        yaml_path: Path to the region file.  None loads the bundled default
                   (cms_etl/regions/cleveland.yml).

    Raises:
        RegionConfigError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_REGION_PATH
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return region_config_from_dict(data)


def region_config_from_dict(data: Any) -> RegionConfig:
    validate_region_config(data)
    state = str(data["state"]).strip().upper()
    counties = [_parse_county(state, c) for c in data["counties"]]

    endpoints = dict(DEFAULT_ENDPOINTS)
    endpoints.update({k: str(v) for k, v in (data.get("endpoints") or {}).items()})
    cadence = dict(DEFAULT_REFRESH_CADENCE_DAYS)
    cadence.update({k: int(v) for k, v in (data.get("refresh_cadence_days") or {}).items()})

    return RegionConfig(
        region=str(data["region"]),
        state=state,
        counties=counties,
        endpoints=endpoints,
        refresh_cadence_days=cadence,
        rate_limit=_section(RateLimitConfig, data.get("rate_limit")),
        pagination=_section(PaginationConfig, data.get("pagination")),
        staffing=_section(StaffingConfig, data.get("staffing")),
        matching=_section(MatchingConfig, data.get("matching")),
        batch_size=int(data.get("batch_size", 50)),
        deficiency_lookback_years=int(data.get("deficiency_lookback_years", 3)),
    )


def validate_region_config(data: Any) -> None:
    """Raise RegionConfigError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - state is a two-letter code
      - at least one county, each with name and a numeric FIPS/code
      - numeric knobs are positive; matching weights sum to 1
    """
    if not isinstance(data, dict):
        raise RegionConfigError("region config must be a YAML mapping")

    missing = REQUIRED_YAML_KEYS - data.keys()
    if missing:
        raise RegionConfigError(f"missing required keys: {sorted(missing)}")

    state = str(data["state"]).strip()
    if len(state) != 2 or not state.isalpha():
        raise RegionConfigError(f"state must be a two-letter code, got {state!r}")

    counties = data["counties"]
    if not isinstance(counties, list) or not counties:
        raise RegionConfigError("counties must be a non-empty list")
    for c in counties:
        if not isinstance(c, dict) or not trim(c.get("name")):
            raise RegionConfigError(f"county entry missing name: {c!r}")
        fips = trim(c.get("fips"))
        code = trim(c.get("code"))
        if fips is None and code is None:
            raise RegionConfigError(f"county {c['name']!r} needs fips or code")
        for v in (fips, code):
            if v is not None and not v.isdigit():
                raise RegionConfigError(f"county {c['name']!r} code {v!r} is not numeric")

    if int(data.get("batch_size", 50)) <= 0:
        raise RegionConfigError("batch_size must be positive")

    pagination = data.get("pagination") or {}
    if int(pagination.get("page_size", 1000)) <= 0:
        raise RegionConfigError("pagination.page_size must be positive")
    fraction = float(pagination.get("short_page_fraction", 0.1))
    if not 0 < fraction <= 1:
        raise RegionConfigError("pagination.short_page_fraction must be in (0, 1]")

    staffing = data.get("staffing") or {}
    window = int(staffing.get("window_records", 90))
    minimum = int(staffing.get("min_records", 30))
    if minimum <= 0 or window < minimum:
        raise RegionConfigError(
            "staffing.min_records must be positive and <= staffing.window_records"
        )

    matching = data.get("matching") or {}
    nw = float(matching.get("name_weight", 0.6))
    aw = float(matching.get("address_weight", 0.4))
    if nw < 0 or aw < 0 or abs(nw + aw - 1.0) > 1e-9:
        raise RegionConfigError("matching weights must be non-negative and sum to 1")
    if not 0 <= float(matching.get("min_score", 0.6)) <= 1:
        raise RegionConfigError("matching.min_score must be in [0, 1]")


def _parse_county(state: str, raw: dict[str, Any]) -> County:
    fips = trim(raw.get("fips"))
    code = trim(raw.get("code"))
    if code is None:
        code = fips[-3:]  # type: ignore[index]
    code = code.zfill(3)
    if fips is None:
        fips = _STATE_FIPS.get(state, "") + code
    return County(name=str(raw["name"]).strip().upper(), fips=fips, code=code)


def _section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build a config section dataclass, ignoring unknown keys."""
    defaults = cls()
    if not raw:
        return defaults
    values = {}
    for key, default in defaults.__dict__.items():
        if key in raw:
            values[key] = type(default)(raw[key])
    return cls(**values)


# State FIPS prefixes, used when a county entry omits its full FIPS code.
_STATE_FIPS: dict[str, str] = {
    "AL": "01", "AK": "02", "AZ": "04", "AR": "05", "CA": "06", "CO": "08",
    "CT": "09", "DE": "10", "DC": "11", "FL": "12", "GA": "13", "HI": "15",
    "ID": "16", "IL": "17", "IN": "18", "IA": "19", "KS": "20", "KY": "21",
    "LA": "22", "ME": "23", "MD": "24", "MA": "25", "MI": "26", "MN": "27",
    "MS": "28", "MO": "29", "MT": "30", "NE": "31", "NV": "32", "NH": "33",
    "NJ": "34", "NM": "35", "NY": "36", "NC": "37", "ND": "38", "OH": "39",
    "OK": "40", "OR": "41", "PA": "42", "RI": "44", "SC": "45", "SD": "46",
    "TN": "47", "TX": "48", "UT": "49", "VT": "50", "VA": "51", "WA": "53",
    "WV": "54", "WI": "55", "WY": "56",
}
