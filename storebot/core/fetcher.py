from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping

import httpx

from storebot.core.errors import UpstreamError, UpstreamHTTPError, UpstreamTimeout
from storebot.core.metrics import metrics
from storebot.core.settings import SETTINGS

logger = logging.getLogger(__name__)

BACKOFF_BASE_SEC = 0.25


def _backoff_sec(attempt: int) -> float:
    return BACKOFF_BASE_SEC * (2**attempt)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host or "unknown"
    except httpx.InvalidURL:
        return "unknown"


def _retryable(error: UpstreamError) -> bool:
    if isinstance(error, UpstreamTimeout):
        return True
    status_code = getattr(error, "status_code", None)
    return status_code is None or status_code >= 500 or status_code == 429


def _default_headers(extra: Mapping[str, str] | None) -> dict[str, str]:
    headers = {"user-agent": SETTINGS.user_agent, "accept": "application/json"}
    if extra:
        headers.update(extra)
    return headers


async def fetch_json(
    url: str,
    *,
    timeout_ms: int,
    max_retries: int = 1,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    verify: bool = True,
) -> Any:
    """GET ``url`` and decode its JSON body.

    Each attempt is bounded by ``timeout_ms``. Timeouts, network errors, 429 and
    5xx responses are retried ``max_retries`` more times with exponential
    backoff starting at 250ms; other 4xx responses fail immediately. Raises the
    last observed ``UpstreamTimeout`` / ``UpstreamHTTPError``.
    """
    if timeout_ms is None or timeout_ms <= 0:
        raise ValueError("timeout_ms must be a positive bound")
    timeout_sec = timeout_ms / 1000.0
    host = _host(url)
    request_headers = _default_headers(headers)
    last_error: UpstreamError | None = None

    for attempt in range(max(0, max_retries) + 1):
        started = time.perf_counter()
        try:
            with metrics.timer("sb_upstream_request", {"host": host}):
                async with httpx.AsyncClient(verify=verify) as client:
                    response = await client.get(url, params=params, headers=request_headers, timeout=timeout_sec)
        except httpx.TimeoutException as exc:
            last_error = UpstreamTimeout(f"{host} timed out after {timeout_ms}ms: {exc}")
            outcome = "timeout"
        except httpx.HTTPError as exc:
            last_error = UpstreamHTTPError(f"{host} request failed: {exc}", code="upstream_network_error")
            outcome = "network_error"
        else:
            status_code = int(response.status_code)
            if status_code >= 400:
                last_error = UpstreamHTTPError(f"{host} returned {status_code}", status_code=status_code)
                outcome = f"http_{status_code}"
            else:
                try:
                    data = response.json()
                except ValueError:
                    last_error = UpstreamHTTPError(f"{host} returned an undecodable body", status_code=status_code)
                    outcome = "invalid_json"
                else:
                    took_ms = int((time.perf_counter() - started) * 1000)
                    metrics.inc("sb_upstream_request_total", {"host": host, "result": "ok"})
                    logger.debug("upstream_ok host=%s attempt=%s took_ms=%s", host, attempt, took_ms)
                    return data

        metrics.inc("sb_upstream_request_total", {"host": host, "result": outcome})
        logger.debug("upstream_fail host=%s attempt=%s result=%s", host, attempt, outcome)
        if attempt < max_retries and _retryable(last_error):
            await _sleep(_backoff_sec(attempt))
            continue
        break

    raise last_error or UpstreamHTTPError(f"{host} request failed")


async def probe(url: str, *, timeout_ms: int) -> bool:
    """Return True when ``url`` answers a HEAD request without an error status."""
    if not url:
        return False
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.head(url, headers=_default_headers(None), timeout=timeout_ms / 1000.0)
    except httpx.HTTPError as exc:
        logger.debug("probe_fail url=%s error=%s", url, exc)
        return False
    return int(response.status_code) < 400
