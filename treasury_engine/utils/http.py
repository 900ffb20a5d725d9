"""aiohttp JSON helper with certifi TLS and transient-error retries."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..results import VenueNotFoundError, VenueRequestError, VenueResponseError
from .retry import retry_async

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class _RetryableStatus(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, _RetryableStatus))


async def request_json(
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    payload: Any = None,
    timeout: float = 20,
    max_retries: int = 3,
) -> Any:
    """Perform an HTTP request and decode the JSON body.

    Transient failures (connection errors, timeouts, 429 and 5xx) are retried
    with exponential backoff. Raises ``VenueRequestError`` once retries are
    exhausted and ``VenueResponseError`` for any other non-2xx answer.
    """
    ssl_context = ssl.create_default_context(cafile=certifi.where())

    async def _once() -> Any:
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.request(
                method,
                url,
                params=params,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status in _RETRYABLE_STATUS:
                    raise _RetryableStatus(response.status, await response.text())
                if response.status == 404:
                    raise VenueNotFoundError(f"HTTP 404: {url}")
                if response.status >= 400:
                    body = await response.text()
                    raise VenueResponseError(f"HTTP {response.status}: {body[:300]}")
                return await response.json(content_type=None)

    try:
        return await retry_async(
            _once,
            max_retries=max_retries,
            should_retry=_is_transient,
            label=f"{method} {url}",
        )
    except VenueResponseError:
        raise
    except Exception as e:
        if _is_transient(e):
            raise VenueRequestError(f"{method} {url} failed: {e}") from e
        raise
