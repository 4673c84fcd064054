"""cms_etl.staffing_rollup

Rolling staffing averages from PBJ daily nurse-staffing records.

For each facility the most recent `window_records` daily records (a
record-count window, not a calendar window) are summarized into hours per
resident day (HPRD) per nursing role, plus the weekend-vs-weekday delta:

    delta = (weekend_hprd - weekday_hprd) / weekday_hprd * 100

Facilities with fewer than `min_records` records are skipped.  HPRD with
zero census is 0, and a delta with a zero weekday HPRD is 0.  All stored
values are rounded to two decimals.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

from cms_etl.normalize import round_half_up

log = logging.getLogger(__name__)

DEFAULT_WINDOW_RECORDS = 90
DEFAULT_MIN_RECORDS = 30


@dataclass(frozen=True)
class PbjDailyRecord:
    ccn: str
    work_date: str          # ISO date
    census: float
    hrs_rn_dir: float = 0.0
    hrs_rn_oth: float = 0.0
    hrs_lpn_dir: float = 0.0
    hrs_lpn_oth: float = 0.0
    hrs_cna_dir: float = 0.0
    hrs_cna_oth: float = 0.0
    is_weekend: bool = False

    @property
    def rn_hours(self) -> float:
        return self.hrs_rn_dir + self.hrs_rn_oth

    @property
    def lpn_hours(self) -> float:
        return self.hrs_lpn_dir + self.hrs_lpn_oth

    @property
    def cna_hours(self) -> float:
        return self.hrs_cna_dir + self.hrs_cna_oth

    @property
    def total_hours(self) -> float:
        return self.rn_hours + self.lpn_hours + self.cna_hours


@dataclass(frozen=True)
class StaffingAggregate:
    ccn: str
    quarter_ending: str
    record_count: int
    avg_rn_hprd: float
    avg_lpn_hprd: float
    avg_cna_hprd: float
    avg_total_nurse_hprd: float
    weekend_rn_delta: float
    weekend_total_delta: float

    def to_row(self) -> dict[str, Any]:
        return {
            "ccn": self.ccn,
            "quarter_ending": self.quarter_ending,
            "record_count": self.record_count,
            "avg_rn_hprd": self.avg_rn_hprd,
            "avg_lpn_hprd": self.avg_lpn_hprd,
            "avg_cna_hprd": self.avg_cna_hprd,
            "avg_total_nurse_hprd": self.avg_total_nurse_hprd,
            "weekend_rn_delta": self.weekend_rn_delta,
            "weekend_total_delta": self.weekend_total_delta,
        }


def calculate_hprd(hours: float, census: float) -> float:
    if census == 0:
        return 0.0
    return hours / census


def weekend_delta(weekday_hprd: float, weekend_hprd: float) -> float:
    """Percent change of weekend vs weekday HPRD; 0 when weekday HPRD is 0."""
    if weekday_hprd <= 0:
        return 0.0
    return (weekend_hprd - weekday_hprd) / weekday_hprd * 100


@dataclass
class _Totals:
    rn: float = 0.0
    lpn: float = 0.0
    cna: float = 0.0
    census: float = 0.0

    @property
    def total(self) -> float:
        return self.rn + self.lpn + self.cna

    def add(self, r: PbjDailyRecord) -> None:
        self.rn += r.rn_hours
        self.lpn += r.lpn_hours
        self.cna += r.cna_hours
        self.census += r.census


def summarize_window(ccn: str, window: list[PbjDailyRecord]) -> StaffingAggregate:
    """Aggregate one facility's (already windowed, date-sorted) records."""
    overall, weekday, weekend = _Totals(), _Totals(), _Totals()
    for r in window:
        overall.add(r)
        (weekend if r.is_weekend else weekday).add(r)

    rn = calculate_hprd(overall.rn, overall.census)
    lpn = calculate_hprd(overall.lpn, overall.census)
    cna = calculate_hprd(overall.cna, overall.census)

    rn_delta = weekend_delta(
        calculate_hprd(weekday.rn, weekday.census),
        calculate_hprd(weekend.rn, weekend.census),
    )
    total_delta = weekend_delta(
        calculate_hprd(weekday.total, weekday.census),
        calculate_hprd(weekend.total, weekend.census),
    )

    return StaffingAggregate(
        ccn=ccn,
        quarter_ending=window[-1].work_date,
        record_count=len(window),
        avg_rn_hprd=round_half_up(rn, 2),
        avg_lpn_hprd=round_half_up(lpn, 2),
        avg_cna_hprd=round_half_up(cna, 2),
        avg_total_nurse_hprd=round_half_up(rn + lpn + cna, 2),
        weekend_rn_delta=round_half_up(rn_delta, 2),
        weekend_total_delta=round_half_up(total_delta, 2),
    )


def compute_staffing_rollups(
    records: Iterable[PbjDailyRecord],
    window_records: int = DEFAULT_WINDOW_RECORDS,
    min_records: int = DEFAULT_MIN_RECORDS,
) -> list[StaffingAggregate]:
    """Group records by facility and summarize each trailing window."""
    by_ccn: dict[str, list[PbjDailyRecord]] = defaultdict(list)
    for r in records:
        by_ccn[r.ccn].append(r)

    aggregates: list[StaffingAggregate] = []
    for ccn in sorted(by_ccn):
        history = sorted(by_ccn[ccn], key=lambda r: r.work_date)
        window = history[-window_records:]
        if len(window) < min_records:
            log.info("skipping %s: insufficient data (%d records)", ccn, len(window))
            continue
        aggregates.append(summarize_window(ccn, window))
    return aggregates
