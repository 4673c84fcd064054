"""Unit tests for cms_etl.fetch (retry policy with a mocked session)."""

from __future__ import annotations

from unittest.mock import MagicMock, call, patch

import pytest
import requests

from cms_etl.fetch import FetchError, RequestThrottle, fetch_json, fetch_with_retry

URL = "https://data.cms.gov/provider-data/api/1/datastore/query/4pq5-n9py/0"


def _resp(status: int, headers: dict | None = None, payload=None) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.headers = headers or {}
    r.json.return_value = payload
    return r


def _session(*responses) -> MagicMock:
    s = MagicMock()
    s.request.side_effect = list(responses)
    return s


# ---------------------------------------------------------------------------
# fetch_with_retry
# ---------------------------------------------------------------------------

class TestFetchWithRetry:
    @patch("cms_etl.fetch.time.sleep")
    def test_success_first_try(self, mock_sleep):
        ok = _resp(200)
        session = _session(ok)
        assert fetch_with_retry(session, URL) is ok
        mock_sleep.assert_not_called()
        assert session.request.call_count == 1

    @patch("cms_etl.fetch.time.sleep")
    def test_retries_5xx_with_linear_backoff(self, mock_sleep):
        ok = _resp(200)
        session = _session(_resp(503), _resp(502), ok)
        assert fetch_with_retry(session, URL, retry_attempts=3, retry_delay=2.0) is ok
        assert mock_sleep.call_args_list == [call(2.0), call(4.0)]

    @patch("cms_etl.fetch.time.sleep")
    def test_429_honours_retry_after(self, mock_sleep):
        ok = _resp(200)
        session = _session(_resp(429, {"Retry-After": "7"}), ok)
        assert fetch_with_retry(session, URL, retry_delay=1.0) is ok
        mock_sleep.assert_called_once_with(7.0)

    @patch("cms_etl.fetch.time.sleep")
    def test_429_without_header_uses_backoff(self, mock_sleep):
        session = _session(_resp(429), _resp(200))
        fetch_with_retry(session, URL, retry_delay=1.5)
        mock_sleep.assert_called_once_with(1.5)

    @patch("cms_etl.fetch.time.sleep")
    def test_other_4xx_fails_immediately(self, mock_sleep):
        session = _session(_resp(404), _resp(200))
        with pytest.raises(FetchError) as exc_info:
            fetch_with_retry(session, URL, retry_attempts=3)
        assert exc_info.value.status_code == 404
        assert session.request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("cms_etl.fetch.time.sleep")
    def test_exhaustion_raises_last_error(self, mock_sleep):
        session = _session(_resp(500), _resp(502), _resp(503))
        with pytest.raises(FetchError) as exc_info:
            fetch_with_retry(session, URL, retry_attempts=3)
        assert exc_info.value.status_code == 503
        assert session.request.call_count == 3
        # no sleep after the final attempt
        assert mock_sleep.call_count == 2

    @patch("cms_etl.fetch.time.sleep")
    def test_zero_attempt_budget_still_tries_once(self, mock_sleep):
        session = _session(_resp(500))
        with pytest.raises(FetchError) as exc_info:
            fetch_with_retry(session, URL, retry_attempts=0)
        assert exc_info.value.status_code == 500
        assert session.request.call_count == 1
        mock_sleep.assert_not_called()

    @patch("cms_etl.fetch.time.sleep")
    def test_network_error_is_retried(self, mock_sleep):
        ok = _resp(200)
        session = _session(requests.ConnectionError("reset"), ok)
        assert fetch_with_retry(session, URL) is ok

    @patch("cms_etl.fetch.time.sleep")
    def test_network_error_exhaustion(self, mock_sleep):
        session = _session(requests.Timeout("t1"), requests.Timeout("t2"))
        with pytest.raises(FetchError, match="t2"):
            fetch_with_retry(session, URL, retry_attempts=2)

    @patch("cms_etl.fetch.time.sleep")
    def test_passes_params_and_method(self, mock_sleep):
        session = _session(_resp(200))
        fetch_with_retry(session, URL, method="POST", params={"limit": 10}, json_body={"a": 1})
        args, kwargs = session.request.call_args
        assert args == ("POST", URL)
        assert kwargs["params"] == {"limit": 10}
        assert kwargs["json"] == {"a": 1}

    @patch("cms_etl.fetch.time.sleep")
    def test_throttle_waits_before_each_attempt(self, mock_sleep):
        throttle = MagicMock()
        session = _session(_resp(500), _resp(200))
        fetch_with_retry(session, URL, throttle=throttle)
        assert throttle.wait.call_count == 2


class TestFetchJson:
    @patch("cms_etl.fetch.time.sleep")
    def test_decodes(self, mock_sleep):
        session = _session(_resp(200, payload={"results": [], "count": 0}))
        assert fetch_json(session, URL) == {"results": [], "count": 0}

    @patch("cms_etl.fetch.time.sleep")
    def test_invalid_json(self, mock_sleep):
        bad = _resp(200)
        bad.json.side_effect = ValueError("Expecting value")
        with pytest.raises(FetchError, match="invalid JSON"):
            fetch_json(_session(bad), URL)


# ---------------------------------------------------------------------------
# RequestThrottle
# ---------------------------------------------------------------------------

class TestRequestThrottle:
    def test_min_interval(self):
        assert RequestThrottle(30).min_interval == 2.0
        assert RequestThrottle(0).min_interval == 0.0

    @patch("cms_etl.fetch.time.sleep")
    @patch("cms_etl.fetch.time.monotonic")
    def test_first_call_does_not_sleep(self, mock_monotonic, mock_sleep):
        mock_monotonic.return_value = 100.0
        RequestThrottle(30).wait()
        mock_sleep.assert_not_called()

    @patch("cms_etl.fetch.time.sleep")
    @patch("cms_etl.fetch.time.monotonic")
    def test_spaces_requests(self, mock_monotonic, mock_sleep):
        mock_monotonic.side_effect = [100.0, 100.0, 100.5, 102.0]
        throttle = RequestThrottle(30)
        throttle.wait()
        throttle.wait()
        mock_sleep.assert_called_once_with(pytest.approx(1.5))
