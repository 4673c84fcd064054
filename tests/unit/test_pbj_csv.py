"""Unit tests for cms_etl.pbj_csv."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cms_etl.config import load_region_config
from cms_etl.pbj_csv import (
    download_and_parse_pbj_csv,
    fetch_latest_pbj_data,
    parse_pbj_lines,
    parse_pbj_row,
    read_pbj_csv_file,
    row_in_scope,
    select_pbj_csv_urls,
)

HEADER = (
    "PROVNUM,PROVNAME,STATE,COUNTY_NAME,COUNTY_FIPS,WorkDate,MDScensus,"
    "Hrs_RNDIR,Hrs_RNOTH,Hrs_LPNDIR,Hrs_LPNOTH,Hrs_CNADIR,Hrs_CNAOTH"
)
LINES = [
    HEADER,
    "365001,ALPHA,OH,Cuyahoga,35,20240706,100,40,10,60,20,200,50",
    "365002,BETA,OH,Franklin,49,20240706,80,30,0,50,0,150,0",
    "015009,GAMMA,AL,Cuyahoga,35,20240706,50,10,0,10,0,50,0",
    "365003,DELTA,OH,,153,20240708,90,30,5,40,5,180,20",
    ",NOKEY,OH,Lake,85,20240708,90,30,5,40,5,180,20",
]


@pytest.fixture
def config():
    return load_region_config()


def _catalog() -> dict:
    return {
        "dataset": [
            {
                "title": "Payroll Based Journal (PBJ) Daily Nurse Staffing - Q1 2024",
                "modified": "2024-07-01",
                "distribution": [{"mediaType": "text/csv", "downloadURL": "https://x/q1.csv"}],
            },
            {
                "title": "Payroll Based Journal (PBJ) Daily Nurse Staffing - Q2 2024",
                "modified": "2024-10-01",
                "distribution": [
                    {"format": "API", "downloadURL": "https://x/q2-api"},
                    {"format": "CSV", "downloadURL": "https://x/q2.csv"},
                ],
            },
            {
                "title": "Payroll Based Journal (PBJ) Daily Nurse Staffing - Q4 2023",
                "modified": "2024-04-01",
                "distribution": [{"downloadURL": "https://x/q4.CSV"}],
            },
            {
                "title": "Payroll Based Journal (PBJ) Employee Detail Nurse Staffing",
                "modified": "2024-12-01",
                "distribution": [{"downloadURL": "https://x/employee.csv"}],
            },
            {"title": "Hospital General Information", "modified": "2025-01-01"},
        ]
    }


class TestSelectPbjCsvUrls:
    def test_newest_two_quarters(self):
        assert select_pbj_csv_urls(_catalog()) == ["https://x/q2.csv", "https://x/q1.csv"]

    def test_quarters_argument(self):
        assert len(select_pbj_csv_urls(_catalog(), quarters=3)) == 3

    def test_invalid_catalog(self):
        assert select_pbj_csv_urls({"foo": []}) == []
        assert select_pbj_csv_urls(None) == []


class TestParseRows:
    def test_row_in_scope_by_name_or_short_fips(self, config):
        assert row_in_scope({"STATE": "OH", "COUNTY_NAME": "Cuyahoga"}, config)
        assert row_in_scope({"STATE": "OH", "COUNTY_NAME": "", "COUNTY_FIPS": "153"}, config)
        assert not row_in_scope({"STATE": "OH", "COUNTY_NAME": "Franklin", "COUNTY_FIPS": "49"}, config)
        assert not row_in_scope({"STATE": "AL", "COUNTY_NAME": "Cuyahoga"}, config)

    def test_parse_row(self):
        row = dict(zip(HEADER.split(","), LINES[1].split(",")))
        record = parse_pbj_row(row)
        assert record.ccn == "365001"
        assert record.work_date == "2024-07-06"
        assert record.is_weekend is True
        assert record.census == 100.0
        assert record.rn_hours == 50.0
        assert record.total_hours == 380.0

    def test_parse_row_missing_ccn(self):
        row = dict(zip(HEADER.split(","), LINES[5].split(",")))
        assert parse_pbj_row(row) is None

    def test_parse_lines_filters_scope(self, config):
        records = list(parse_pbj_lines(LINES, config))
        assert [r.ccn for r in records] == ["365001", "365003"]
        assert records[1].is_weekend is False

    def test_read_file_with_bom(self, config, tmp_path: Path):
        path = tmp_path / "pbj.csv"
        path.write_text("\ufeff" + "\n".join(LINES) + "\n", encoding="utf-8")
        records = read_pbj_csv_file(path, config)
        assert [r.ccn for r in records] == ["365001", "365003"]


class TestDownload:
    def test_streams_response(self, config):
        resp = MagicMock()
        resp.iter_lines.return_value = iter(LINES)
        with patch("cms_etl.pbj_csv.fetch_with_retry", return_value=resp) as mock_fetch:
            records = download_and_parse_pbj_csv(MagicMock(), "https://x/q2.csv", config)
        assert len(records) == 2
        assert mock_fetch.call_args.kwargs["stream"] is True
        resp.close.assert_called_once()

    def test_fetch_latest_combines_quarters(self, config):
        with patch("cms_etl.pbj_csv.fetch_json", return_value=_catalog()), \
             patch("cms_etl.pbj_csv.download_and_parse_pbj_csv", return_value=["r"]) as mock_dl:
            records = fetch_latest_pbj_data(MagicMock(), config)
        assert records == ["r", "r"]
        assert mock_dl.call_count == 2

    def test_fetch_latest_without_datasets_raises(self, config):
        with patch("cms_etl.pbj_csv.fetch_json", return_value={"dataset": []}):
            with pytest.raises(ValueError, match="no PBJ CSV"):
                fetch_latest_pbj_data(MagicMock(), config)
