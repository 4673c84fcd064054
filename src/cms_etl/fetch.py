"""cms_etl.fetch

Retry-capable HTTP fetch for the CMS open-data APIs.

Retry policy:
  - HTTP 429 and 5xx are retried.  The wait before the next attempt is the
    server's Retry-After header when present, else retry_delay * attempt.
  - Network errors (connection reset, timeout) are retried with the same wait.
  - Any other 4xx fails immediately.
  - When the attempt budget is exhausted the last error is raised.

All requests go through one session, one at a time.  RequestThrottle spaces
them so the region's max_requests_per_minute is never exceeded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import requests

log = logging.getLogger(__name__)

USER_AGENT = "cms-etl/0.1 (+https://data.cms.gov provider-data ingestion)"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """Raised when a request fails after retries or with a non-retryable status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------

@dataclass
class RequestThrottle:
    """Single-thread request spacing: at most max_requests_per_minute."""

    max_requests_per_minute: int = 30
    _last_request_at: float | None = field(default=None, init=False, repr=False)

    @property
    def min_interval(self) -> float:
        if self.max_requests_per_minute <= 0:
            return 0.0
        return 60.0 / self.max_requests_per_minute

    def wait(self) -> None:
        now = time.monotonic()
        if self._last_request_at is not None:
            remaining = self.min_interval - (now - self._last_request_at)
            if remaining > 0:
                time.sleep(remaining)
        self._last_request_at = time.monotonic()


def build_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    return session


# ---------------------------------------------------------------------------
# Fetch with retry
# ---------------------------------------------------------------------------

def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _retry_after_seconds(resp: requests.Response) -> float | None:
    """Parse a Retry-After header given in seconds.  HTTP-date values are ignored."""
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def fetch_with_retry(
    session: requests.Session,
    url: str,
    *,
    method: str = "GET",
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
    timeout: float = 60.0,
    throttle: RequestThrottle | None = None,
    stream: bool = False,
) -> requests.Response:
    """Perform an HTTP request, retrying transient failures.

    Returns the successful (2xx/3xx) response.

    Raises:
        FetchError: On a non-retryable 4xx, or when every attempt failed.
    """
    attempts = max(1, retry_attempts)
    last_error = FetchError(f"fetch of {url} failed after {attempts} attempts")

    for attempt in range(1, attempts + 1):
        if throttle is not None:
            throttle.wait()

        delay = retry_delay * attempt
        try:
            resp = session.request(
                method, url, params=params, json=json_body, timeout=timeout, stream=stream
            )
        except requests.RequestException as exc:
            last_error = FetchError(f"network error fetching {url}: {exc}")
            log.warning("attempt %d/%d: %s", attempt, attempts, last_error)
        else:
            if resp.status_code < 400:
                return resp
            if not _is_retryable(resp.status_code):
                raise FetchError(
                    f"HTTP {resp.status_code} fetching {url}", status_code=resp.status_code
                )
            last_error = FetchError(
                f"HTTP {resp.status_code} fetching {url}", status_code=resp.status_code
            )
            retry_after = _retry_after_seconds(resp)
            if retry_after is not None:
                delay = retry_after
            log.warning(
                "attempt %d/%d: HTTP %d from %s", attempt, attempts, resp.status_code, url
            )
            resp.close()

        if attempt < attempts:
            log.info("retrying in %.1fs", delay)
            time.sleep(delay)

    raise last_error


def fetch_json(
    session: requests.Session,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
    timeout: float = 60.0,
    throttle: RequestThrottle | None = None,
) -> Any:
    """GET url and decode its JSON body."""
    resp = fetch_with_retry(
        session,
        url,
        params=params,
        retry_attempts=retry_attempts,
        retry_delay=retry_delay,
        timeout=timeout,
        throttle=throttle,
    )
    try:
        return resp.json()
    except ValueError as exc:
        raise FetchError(f"invalid JSON from {url}: {exc}", status_code=resp.status_code) from exc
