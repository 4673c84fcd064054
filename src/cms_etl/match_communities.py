"""cms_etl.match_communities

CCN match suggestions for communities that have no CCN.

For every community without a CCN, CMS-linked communities (rows that do
carry a CCN, i.e. loaded by the provider-info import) in the same city and
state are scored by name and address similarity.  Suggestions above the
region's min_score are written as CSV for manual review; nothing is ever
written back to the database.

Usage:
    python -m cms_etl.match_communities --db-dsn "$CMS_ETL_DB_DSN" > matches.csv
"""

from __future__ import annotations

import csv
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Iterable

import click
import psycopg
from rapidfuzz.distance import Levenshtein

from cms_etl.config import MatchingConfig, load_region_config

log = logging.getLogger(__name__)

CSV_HEADERS = [
    "Community ID",
    "Community Name",
    "Community Address",
    "Suggested CCN",
    "CMS Facility Name",
    "CMS Facility Address",
    "Match Score",
    "Match Reason",
]

_NAME_NOISE_RE = re.compile(r"\b(inc|llc|ltd|corp|corporation|the)\b")
_STREET_SUFFIXES = {
    "street": "st",
    "avenue": "ave",
    "road": "rd",
    "drive": "dr",
    "lane": "ln",
    "boulevard": "blvd",
}
_STREET_SUFFIX_RE = re.compile(r"\b(" + "|".join(_STREET_SUFFIXES) + r")\b")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Facility:
    id: str
    name: str
    address: str | None
    city: str | None
    state: str | None
    ccn: str | None = None


@dataclass(frozen=True)
class MatchSuggestion:
    community_id: str
    community_name: str
    community_address: str
    suggested_ccn: str
    cms_facility_name: str
    cms_facility_address: str
    match_score: float
    match_reason: str

    def to_csv_row(self) -> list[Any]:
        return [
            self.community_id,
            self.community_name,
            self.community_address,
            self.suggested_ccn,
            self.cms_facility_name,
            self.cms_facility_address,
            f"{self.match_score:.2f}",
            self.match_reason,
        ]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _collapse(value: str) -> str:
    value = re.sub(r"[^a-z0-9\s]", "", value)
    return re.sub(r"\s+", " ", value).strip()


def normalize_match_name(name: str) -> str:
    """Lowercase, drop corporate noise words and punctuation."""
    return _collapse(_NAME_NOISE_RE.sub("", name.lower()))


def normalize_match_address(address: str) -> str:
    """Lowercase, abbreviate street suffixes, drop punctuation."""
    lowered = address.lower()
    lowered = _STREET_SUFFIX_RE.sub(lambda m: _STREET_SUFFIXES[m.group(1)], lowered)
    return _collapse(lowered)


def similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); identical strings score 1.0."""
    a = a.lower().strip()
    b = b.lower().strip()
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - Levenshtein.distance(a, b) / longest


def score_candidate(
    community: Facility,
    candidate: Facility,
    matching: MatchingConfig | None = None,
) -> MatchSuggestion | None:
    """Score one candidate; None when the combined score is not above min_score."""
    matching = matching or MatchingConfig()
    name_sim = similarity(
        normalize_match_name(community.name), normalize_match_name(candidate.name)
    )

    address_sim: float | None = None
    if community.address and candidate.address:
        address_sim = similarity(
            normalize_match_address(community.address),
            normalize_match_address(candidate.address),
        )
        score = matching.name_weight * name_sim + matching.address_weight * address_sim
    else:
        score = name_sim

    if score <= matching.min_score:
        return None

    reason = f"Name similarity: {name_sim * 100:.0f}%"
    if address_sim is not None:
        reason += f", Address similarity: {address_sim * 100:.0f}%"

    return MatchSuggestion(
        community_id=community.id,
        community_name=community.name,
        community_address=community.address or "",
        suggested_ccn=candidate.ccn or "",
        cms_facility_name=candidate.name,
        cms_facility_address=candidate.address or "",
        match_score=round(score, 2),
        match_reason=reason,
    )


def rank_candidates(
    community: Facility,
    candidates: Iterable[Facility],
    matching: MatchingConfig | None = None,
) -> list[MatchSuggestion]:
    suggestions = [
        s for s in (score_candidate(community, c, matching) for c in candidates) if s
    ]
    suggestions.sort(key=lambda s: s.match_score, reverse=True)
    return suggestions


# ---------------------------------------------------------------------------
# DB access (read-only)
# ---------------------------------------------------------------------------

def _facility(row: tuple) -> Facility:
    return Facility(
        id=str(row[0]), name=row[1], address=row[2], city=row[3], state=row[4], ccn=row[5]
    )


def fetch_unlinked_communities(conn: psycopg.Connection) -> list[Facility]:
    rows = conn.execute(
        """
        SELECT id, name, address, city, state, ccn
        FROM community
        WHERE ccn IS NULL
        ORDER BY name, id
        """
    ).fetchall()
    return [_facility(r) for r in rows]


def fetch_cms_candidates(conn: psycopg.Connection, city: str | None, state: str | None) -> list[Facility]:
    if not city or not state:
        return []
    rows = conn.execute(
        """
        SELECT id, name, address, city, state, ccn
        FROM community
        WHERE ccn IS NOT NULL
          AND lower(city) = lower(%s)
          AND upper(state) = upper(%s)
        ORDER BY ccn
        """,
        (city, state),
    ).fetchall()
    return [_facility(r) for r in rows]


def suggest_ccn_matches(
    conn: psycopg.Connection,
    matching: MatchingConfig | None = None,
) -> list[MatchSuggestion]:
    communities = fetch_unlinked_communities(conn)
    if not communities:
        log.info("no communities without CCNs found")
        return []
    log.info("found %d communities without CCNs", len(communities))

    suggestions: list[MatchSuggestion] = []
    for community in communities:
        candidates = fetch_cms_candidates(conn, community.city, community.state)
        suggestions.extend(rank_candidates(community, candidates, matching))

    log.info("generated %d match suggestions", len(suggestions))
    return suggestions


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

def write_matches_csv(matches: Iterable[MatchSuggestion], out: IO[str]) -> int:
    writer = csv.writer(out)
    writer.writerow(CSV_HEADERS)
    n = 0
    for m in matches:
        writer.writerow(m.to_csv_row())
        n += 1
    return n


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--db-dsn", required=True, envvar="CMS_ETL_DB_DSN", help="PostgreSQL DSN")
@click.option(
    "--region-config",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Region YAML (matching weights and threshold)",
)
@click.option("--verbose", is_flag=True, default=False)
def main(db_dsn: str, region_config: Path | None, verbose: bool) -> None:
    """Print CCN match suggestions as CSV on stdout."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_region_config(region_config)
    with psycopg.connect(db_dsn) as conn:
        matches = suggest_ccn_matches(conn, config.matching)
    write_matches_csv(matches, sys.stdout)
    click.echo(f"{len(matches)} suggestions generated", err=True)


if __name__ == "__main__":
    main()
