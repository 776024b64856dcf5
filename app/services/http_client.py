"""
Shared HTTP client helpers with timeouts and optional retries for the marketplace API.
Callers may pass an existing httpx.AsyncClient (connection reuse, test transports);
otherwise a short-lived client is opened per request.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = settings.MARKETPLACE_HTTP_TIMEOUT_SEC
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds


def new_client(timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


async def get_http_client():
    """FastAPI dependency: one client per request, closed afterwards."""
    client = new_client()
    try:
        yield client
    finally:
        await client.aclose()


async def _sleep_backoff(attempt: int) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


async def _send(
    client: Optional[httpx.AsyncClient], method: str, url: str, timeout: float, **kwargs: Any
) -> httpx.Response:
    if client is not None:
        return await client.request(method, url, timeout=timeout, **kwargs)
    async with httpx.AsyncClient(timeout=timeout) as own:
        return await own.request(method, url, **kwargs)


async def request_with_retry(
    method: str,
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = (502, 503, 504),
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and optional retries for server/network errors.
    Retries only on retry_on status codes and on connection errors.
    """
    last_exc: Optional[Exception] = None
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            resp = await _send(client, method, url, timeout, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s returned %s, retrying", method, url, resp.status_code)
                await _sleep_backoff(attempt + 1)
                continue
            return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            last_exc = e
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1)
            else:
                raise
    if last_exc:
        raise last_exc
    return resp  # type: ignore


async def get_with_retry(
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
) -> httpx.Response:
    """GET with retries on 5xx and connection errors."""
    return await request_with_retry(
        "GET", url, client=client, params=params, headers=headers, timeout=timeout, max_retries=max_retries
    )


async def post_form_no_retry(
    url: str,
    *,
    data: dict,
    client: Optional[httpx.AsyncClient] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> httpx.Response:
    """Form-encoded POST with no retries (non-idempotent, e.g. OAuth grants)."""
    hdrs = {"Accept": "application/json"}
    hdrs.update(headers or {})
    return await _send(client, "POST", url, timeout, data=data, headers=hdrs)
