"""Unit tests for cms_etl.connector control flow (no database, no network)."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from cms_etl.config import region_config_from_dict
from cms_etl.connector import (
    ConnectorContext,
    SourceSpec,
    fetch_all_pages,
    process_record,
    run_connector,
)
from cms_etl.fetch import FetchError
from cms_etl.shared import Dropped, PersistFailed, Upserted


@pytest.fixture
def config():
    return region_config_from_dict({
        "region": "test",
        "state": "OH",
        "counties": [{"name": "Cuyahoga", "fips": "39035"}],
        "batch_size": 2,
        "pagination": {"page_size": 10, "short_page_fraction": 0.1, "max_offset": 50},
    })


class FakeStore:
    """Stands in for store.upsert_row: a dict keyed by the key-column tuple."""

    def __init__(self, fail_on: set | None = None):
        self.rows: dict[tuple, dict] = {}
        self.fail_on = fail_on or set()

    def upsert_row(self, conn, table, key_columns, values, insert_only_columns=()):
        key = (table,) + tuple(values[k] for k in key_columns)
        if values.get("ccn") in self.fail_on:
            raise RuntimeError(f"constraint violated for {values['ccn']}")
        if key in self.rows:
            existing = self.rows[key]
            existing.update({k: v for k, v in values.items() if k not in insert_only_columns})
            return existing["id"], False
        self.rows[key] = dict(values, id=f"id-{len(self.rows) + 1}")
        return self.rows[key]["id"], True


class FakeConn:
    def __init__(self):
        self.transactions = 0

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


def _transform(raw, ctx):
    ccn = (raw.get("ccn") or "").strip()
    if not ccn:
        return Dropped("missing_ccn")
    if not raw.get("name"):
        return Dropped("missing_name")
    return {"ccn": ccn, "name": raw["name"]}


def _spec(records, **kwargs) -> SourceSpec:
    defaults = dict(
        name="test_source",
        table="community",
        key_columns=("ccn",),
        transform=_transform,
        load=lambda ctx: list(records),
        requires_communities=False,
    )
    defaults.update(kwargs)
    return SourceSpec(**defaults)


def _run(spec, config, store, ccn_map=None):
    with patch("cms_etl.connector.fetch_ccn_map", return_value=ccn_map or {}), \
         patch("cms_etl.connector.upsert_row", side_effect=store.upsert_row):
        return run_connector(FakeConn(), spec, config, session=MagicMock(), throttle=MagicMock())


RECORDS = [
    {"ccn": "365001", "name": "Alpha"},
    {"ccn": "365002", "name": "Beta"},
    {"ccn": "365003", "name": "Gamma"},
]


# ---------------------------------------------------------------------------
# run_connector
# ---------------------------------------------------------------------------

class TestRunConnector:
    def test_inserts_then_idempotent_rerun(self, config):
        store = FakeStore()
        first = _run(_spec(RECORDS), config, store)
        assert (first.records_processed, first.records_inserted, first.records_updated) == (3, 3, 0)

        second = _run(_spec(RECORDS), config, store)
        assert second.records_inserted == 0
        assert second.records_updated == first.records_inserted
        assert len(store.rows) == 3
        assert second.success

    def test_dropped_records_are_skipped_not_errors(self, config):
        records = RECORDS + [{"ccn": "  ", "name": "No Key"}, {"ccn": "365009", "name": ""}]
        result = _run(_spec(records), config, FakeStore())
        assert result.records_processed == 5
        assert result.records_inserted == 3
        assert result.records_skipped == 2
        assert result.records_dropped == 2
        assert result.drop_reasons == {"missing_ccn": 1, "missing_name": 1}
        assert result.errors == []

    def test_transform_exception_is_a_silent_drop(self, config):
        def boom(raw, ctx):
            raise KeyError("provider_name")

        result = _run(_spec(RECORDS, transform=boom), config, FakeStore())
        assert result.records_skipped == 3
        assert result.errors == []
        assert set(result.drop_reasons) == {"transform_error:KeyError"}

    def test_upsert_failure_captured_per_record(self, config):
        store = FakeStore(fail_on={"365002"})
        result = _run(_spec(RECORDS), config, store)
        assert result.records_inserted == 2
        assert result.records_skipped == 1
        assert result.records_dropped == 0
        assert len(result.errors) == 1
        err = result.errors[0]
        assert not err.critical
        assert err.record == {"ccn": "365002", "name": "Beta"}
        assert "constraint violated" in err.message
        assert result.success

    def test_all_upserts_fail_is_not_success(self, config):
        store = FakeStore(fail_on={"365001", "365002", "365003"})
        result = _run(_spec(RECORDS), config, store)
        assert len(result.errors) == 3
        assert not result.success

    def test_setup_failure_is_single_critical_error(self, config):
        def failing_load(ctx):
            raise FetchError("HTTP 503 fetching catalog", status_code=503)

        result = _run(_spec([], load=failing_load), config, FakeStore())
        assert result.records_processed == 0
        assert len(result.errors) == 1
        assert result.errors[0].critical
        assert "503" in result.errors[0].message
        assert not result.success
        assert result.finished_at is not None

    def test_ccn_lookup_failure_is_critical(self, config):
        with patch("cms_etl.connector.fetch_ccn_map", side_effect=RuntimeError("db down")):
            result = run_connector(FakeConn(), _spec(RECORDS), config,
                                   session=MagicMock(), throttle=MagicMock())
        assert result.records_processed == 0
        assert result.has_critical_error

    def test_child_source_requires_communities(self, config):
        result = _run(_spec(RECORDS, requires_communities=True), config, FakeStore())
        assert result.errors[0].message == "No communities with CCNs found"
        assert result.errors[0].critical

    def test_empty_fetch_is_clean(self, config):
        result = _run(_spec([]), config, FakeStore())
        assert result.records_processed == 0
        assert result.success

    def test_scope_and_consolidate(self, config):
        def consolidate(records, ctx):
            return [dict(r, name=r["name"].upper()) for r in records]

        spec = _spec(
            RECORDS,
            scope=lambda raw, ctx: raw["ccn"] in ctx.ccn_map,
            consolidate=consolidate,
            requires_communities=True,
        )
        store = FakeStore()
        result = _run(spec, config, store, ccn_map={"365001": "c-1", "365003": "c-3"})
        assert result.records_processed == 2
        assert {r["name"] for r in store.rows.values()} == {"ALPHA", "GAMMA"}

    def test_each_upsert_in_own_transaction(self, config):
        conn = FakeConn()
        store = FakeStore()
        with patch("cms_etl.connector.fetch_ccn_map", return_value={}), \
             patch("cms_etl.connector.upsert_row", side_effect=store.upsert_row):
            run_connector(conn, _spec(RECORDS), config, session=MagicMock(), throttle=MagicMock())
        assert conn.transactions == 3


class TestProcessRecord:
    def _ctx(self, config):
        return ConnectorContext(
            conn=FakeConn(), config=config, run_date=date(2024, 7, 1),
            session=MagicMock(), throttle=MagicMock(),
        )

    def test_outcomes(self, config):
        store = FakeStore(fail_on={"365002"})
        spec = _spec([])
        ctx = self._ctx(config)
        with patch("cms_etl.connector.upsert_row", side_effect=store.upsert_row):
            assert process_record(ctx.conn, spec, RECORDS[0], ctx) == Upserted(inserted=True)
            assert process_record(ctx.conn, spec, RECORDS[0], ctx) == Upserted(inserted=False)
            assert isinstance(process_record(ctx.conn, spec, RECORDS[1], ctx), PersistFailed)
            assert process_record(ctx.conn, spec, {"ccn": ""}, ctx) == Dropped("missing_ccn")


# ---------------------------------------------------------------------------
# fetch_all_pages
# ---------------------------------------------------------------------------

def _page(n: int, count: int | None = None) -> dict:
    payload = {"results": [{"i": i} for i in range(n)]}
    if count is not None:
        payload["count"] = count
    return payload


class TestFetchAllPages:
    def _fetch(self, config, pages):
        with patch("cms_etl.connector.fetch_json", side_effect=pages) as mock_fetch:
            records = fetch_all_pages(
                MagicMock(), "https://example.test/q", {"filters[provider_state]": "OH"},
                config.pagination, config.rate_limit,
            )
        return records, mock_fetch

    def test_stops_on_short_page(self, config):
        records, mock_fetch = self._fetch(config, [_page(10), _page(10), _page(0)])
        assert len(records) == 20
        assert mock_fetch.call_count == 3

    def test_partial_page_above_fraction_continues(self, config):
        records, mock_fetch = self._fetch(config, [_page(10), _page(5), _page(0)])
        assert len(records) == 15
        assert mock_fetch.call_count == 3

    def test_stops_at_reported_count(self, config):
        records, mock_fetch = self._fetch(config, [_page(10, count=20), _page(10, count=20)])
        assert len(records) == 20
        assert mock_fetch.call_count == 2

    def test_offset_cap(self, config):
        records, mock_fetch = self._fetch(config, [_page(10)] * 10)
        assert mock_fetch.call_count == 5
        assert len(records) == 50

    def test_offsets_and_params(self, config):
        _, mock_fetch = self._fetch(config, [_page(10), _page(0)])
        params = [c.kwargs["params"] for c in mock_fetch.call_args_list]
        assert [p["offset"] for p in params] == [0, 10]
        assert all(p["limit"] == 10 for p in params)
        assert params[0]["filters[provider_state]"] == "OH"

    def test_unexpected_payload_stops(self, config):
        records, _ = self._fetch(config, [{"error": "bad"}])
        assert records == []
