"""Normalization functions for CMS provider-data ingestion.

All functions are total: they accept loosely-typed source values (str,
number, bool or None) and return the normalized type or None.  A None
result means "skip this field", never "use a default".
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_TRUTHY_TOKENS = frozenset({"Y", "YES", "TRUE", "1"})

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")

# Tried in order after the ISO and US slash forms.
_FALLBACK_DATE_FORMATS = (
    "%Y%m%d",
    "%m-%d-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y/%m/%d",
    "%a, %d %b %Y %H:%M:%S %Z",
)

CARE_COMPARE_BASE = "https://www.medicare.gov/care-compare"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def first_present(raw: dict[str, Any], *keys: str) -> str | None:
    """Return the first trimmed, non-empty value among keys.

    CMS renames columns between dataset releases, so most fields are read
    through a short list of known aliases.
    """
    for key in keys:
        v = trim(raw.get(key))
        if v is not None:
            return v
    return None


# ---------------------------------------------------------------------------
# Rule 3: parse_star_rating
# ---------------------------------------------------------------------------

def round_half_up(value: float, places: int) -> float:
    """Round like a spreadsheet would (2.25 -> 2.3), not banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def parse_star_rating(value: Any) -> float | None:
    """Return a rating in [1, 5] rounded to one decimal, else None."""
    if value is None or isinstance(value, bool):
        return None
    v = trim(value)
    if v is None:
        return None
    try:
        num = float(v)
    except ValueError:
        return None
    if math.isnan(num) or num < 1 or num > 5:
        return None
    return round_half_up(num, 1)


# ---------------------------------------------------------------------------
# Rule 4: parse_cms_boolean
# ---------------------------------------------------------------------------

def parse_cms_boolean(value: Any) -> bool:
    """CMS Y/N flags.  Only Y, YES, TRUE and 1 (any case) are true."""
    if isinstance(value, bool):
        return value
    v = trim(value)
    if v is None:
        return False
    return v.upper() in _TRUTHY_TOKENS


# ---------------------------------------------------------------------------
# Rule 5: parse_cms_date
# ---------------------------------------------------------------------------

def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_cms_date(value: Any) -> str | None:
    """Return an ISO calendar date string (YYYY-MM-DD) or None.

    Accepts ISO dates (time component ignored), US M/D/YYYY, and a few
    other spellings seen in CMS downloads (e.g. PBJ's YYYYMMDD).
    Re-parsing an already-normalized value returns it unchanged.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    v = trim(value)
    if v is None:
        return None

    m = _ISO_DATE_RE.match(v)
    if m:
        d = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return d.isoformat() if d else None

    m = _US_DATE_RE.match(v)
    if m:
        d = _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
        return d.isoformat() if d else None

    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def is_weekend(iso_date: str) -> bool:
    """True for Saturday/Sunday.  Expects a value already run through parse_cms_date."""
    return date.fromisoformat(iso_date).weekday() >= 5


# ---------------------------------------------------------------------------
# Rule 6: clean_phone_number
# ---------------------------------------------------------------------------

def clean_phone_number(value: Any) -> str | None:
    """Digits only; None when fewer than 10 digits remain."""
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    return digits if len(digits) >= 10 else None


# ---------------------------------------------------------------------------
# Rule 7: normalize_facility_name
# ---------------------------------------------------------------------------

def _title_word(word: str) -> str:
    # Short all-caps words are acronyms (SNF, HCR, LLC) and are preserved.
    if word.upper() == word and len(word) <= 4:
        return word
    return word[:1].upper() + word[1:].lower()


def normalize_facility_name(value: Any) -> str | None:
    """Collapse whitespace and title-case each word, preserving acronyms.

    "st. mary's  NURSING home" -> "St. Mary's Nursing Home"
    """
    v = normalize_space(value)
    if v is None:
        return None
    return " ".join(_title_word(w) for w in v.split(" "))


# ---------------------------------------------------------------------------
# Rule 8: slug_name  (URL-safe slugs for community pages)
# ---------------------------------------------------------------------------

def slug_name(value: Any) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 9: numeric helpers
# ---------------------------------------------------------------------------

def parse_score(value: Any) -> float | None:
    """Parse a measure score, tolerating a trailing '%'."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            num = float(value)
        else:
            v = trim(str(value).replace("%", ""))
            if v is None:
                return None
            num = float(Decimal(v))
    except (InvalidOperation, ValueError, OverflowError):
        return None
    # out-of-range exponents overflow to inf
    return num if math.isfinite(num) else None


def parse_hours(value: Any) -> float:
    """PBJ hour/census columns: unparseable or blank counts as zero."""
    parsed = parse_score(value)
    return parsed if parsed is not None else 0.0


def parse_int(value: Any) -> int | None:
    parsed = parse_score(value)
    if parsed is None:
        return None
    return int(parsed)


# ---------------------------------------------------------------------------
# Care Compare links
# ---------------------------------------------------------------------------

def care_compare_url(ccn: str) -> str:
    return f"{CARE_COMPARE_BASE}/details/nursing-home/{ccn}"


def care_compare_inspection_url(ccn: str) -> str:
    return f"{CARE_COMPARE_BASE}/profile/nursing-home/{ccn}/inspection-reports"
