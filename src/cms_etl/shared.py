"""cms_etl.shared

Shared run-result types used by every connector: the per-record outcome
variants, EtlResult counters, report rendering and the JSON run-report
writer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, TypeVar, Union

T = TypeVar("T")

MAX_REPORTED_ERRORS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors captured during a run
# ---------------------------------------------------------------------------

@dataclass
class EtlError:
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    record: dict[str, Any] | None = None
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "record": self.record,
            "critical": self.critical,
        }


# ---------------------------------------------------------------------------
# Per-record outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Upserted:
    inserted: bool


@dataclass(frozen=True)
class Dropped:
    """Record intentionally not loaded (missing key, out of scope, too little data)."""

    reason: str


@dataclass(frozen=True)
class PersistFailed:
    """Record failed to write; needs investigation."""

    error: EtlError


RecordOutcome = Union[Upserted, Dropped, PersistFailed]


# ---------------------------------------------------------------------------
# EtlResult
# ---------------------------------------------------------------------------

@dataclass
class EtlResult:
    job_name: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    # skipped = dropped + persist failures
    records_skipped: int = 0
    records_dropped: int = 0
    drop_reasons: dict[str, int] = field(default_factory=dict)
    errors: list[EtlError] = field(default_factory=list)

    def record(self, outcome: RecordOutcome) -> None:
        self.records_processed += 1
        if isinstance(outcome, Upserted):
            if outcome.inserted:
                self.records_inserted += 1
            else:
                self.records_updated += 1
        elif isinstance(outcome, Dropped):
            self.records_skipped += 1
            self.records_dropped += 1
            self.drop_reasons[outcome.reason] = self.drop_reasons.get(outcome.reason, 0) + 1
        elif isinstance(outcome, PersistFailed):
            self.records_skipped += 1
            self.errors.append(outcome.error)
        else:
            raise TypeError(f"unknown record outcome: {outcome!r}")

    def add_critical(self, message: str) -> None:
        self.errors.append(EtlError(message=message, critical=True))

    def finish(self) -> EtlResult:
        self.finished_at = utcnow()
        return self

    @property
    def has_critical_error(self) -> bool:
        return any(e.critical for e in self.errors)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        if self.has_critical_error:
            return False
        return not self.errors or (self.records_inserted + self.records_updated) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "records_processed": self.records_processed,
            "records_inserted": self.records_inserted,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "records_dropped": self.records_dropped,
            "drop_reasons": dict(self.drop_reasons),
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most size items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_etl_report(result: EtlResult, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"CMS ETL Report: {result.job_name}",
        f"  status:  {'SUCCESS' if result.success else 'FAILED'}",
        f"  dry_run: {dry_run}",
        f"  duration: {result.duration_seconds:.1f}s",
        "=" * 60,
        f"  records processed:   {result.records_processed}",
        f"    → inserted:        {result.records_inserted}",
        f"    → updated:         {result.records_updated}",
        f"    → skipped:         {result.records_skipped}",
        f"  dropped (data):      {result.records_dropped}",
    ]
    for reason, count in sorted(result.drop_reasons.items()):
        lines.append(f"    {reason}: {count}")
    if result.errors:
        lines.append(f"\nErrors ({len(result.errors)}):")
        for e in result.errors[:MAX_REPORTED_ERRORS]:
            prefix = "[critical] " if e.critical else ""
            lines.append(f"  {e.timestamp.isoformat()} {prefix}{e.message}")
        if len(result.errors) > MAX_REPORTED_ERRORS:
            lines.append(f"  ... and {len(result.errors) - MAX_REPORTED_ERRORS} more errors")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    region: str,
    results: list[EtlResult],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "region": region,
        "started_at": started_at,
        "finished_at": utcnow().isoformat(),
        "dry_run": dry_run,
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
