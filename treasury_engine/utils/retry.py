"""Exponential backoff helpers shared by venue clients and the registry."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def exponential_backoff_s(
    attempt: int, *, base_delay_s: float = 0.5, max_delay_s: float | None = None
) -> float:
    delay_s = base_delay_s * (2**attempt)
    if max_delay_s is not None:
        delay_s = min(delay_s, max_delay_s)
    return delay_s


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_s: float = 0.5,
    max_delay_s: float | None = 8.0,
    should_retry: Callable[[Exception], bool] | None = None,
    label: str = "",
) -> T:
    """Await ``fn`` up to ``max_retries`` times, sleeping between attempts."""
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries - 1:
                raise
            if should_retry is not None and not should_retry(exc):
                raise
            delay_s = exponential_backoff_s(
                attempt, base_delay_s=base_delay_s, max_delay_s=max_delay_s
            )
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label or "call",
                attempt + 1,
                max_retries,
                exc,
                delay_s,
            )
            await asyncio.sleep(delay_s)

    raise RuntimeError("retry_async exhausted retries")
