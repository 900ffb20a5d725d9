"""Refreshable, seed-backed registry cache.

Each venue's tradable set lives in one ``RegistryCache``. A successful fetch
replaces the entries and bumps ``generation``; a failed fetch keeps serving
the last good entries (or the seed list) and pushes the next live attempt
out with exponential backoff.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from ..utils.retry import exponential_backoff_s

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RegistryCache(Generic[T]):
    def __init__(
        self,
        name: str,
        fetcher: Callable[[], Awaitable[list[T]]],
        seed: list[T] | None = None,
        ttl_seconds: float = 3600.0,
        fetch_timeout: float = 15.0,
        backoff_base_s: float = 30.0,
        backoff_max_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._fetcher = fetcher
        self._seed = list(seed or [])
        self._ttl = ttl_seconds
        self._fetch_timeout = fetch_timeout
        self._backoff_base = backoff_base_s
        self._backoff_max = backoff_max_s
        self._clock = clock
        self._lock = asyncio.Lock()

        self._entries: list[T] = []
        self._fetched_at: float | None = None
        self.generation = 0
        self.failure_count = 0
        self.next_attempt_at = 0.0

    @property
    def source(self) -> str:
        """``live`` within TTL, ``cache`` when older, ``seed`` when never fetched."""
        if self._fetched_at is None:
            return "seed"
        if self._clock() - self._fetched_at <= self._ttl:
            return "live"
        return "cache"

    def entries(self) -> list[T]:
        """Current entries without triggering a fetch."""
        return list(self._entries) if self._fetched_at is not None else list(self._seed)

    async def refresh(self, force: bool = False) -> list[T]:
        async with self._lock:
            now = self._clock()
            if (
                not force
                and self._fetched_at is not None
                and now - self._fetched_at <= self._ttl
            ):
                return list(self._entries)
            if now < self.next_attempt_at:
                logger.debug(
                    "Registry %s in backoff for %.0fs more",
                    self.name,
                    self.next_attempt_at - now,
                )
                return self.entries()

            try:
                fetched = await asyncio.wait_for(self._fetcher(), self._fetch_timeout)
            except Exception as e:
                delay = exponential_backoff_s(
                    self.failure_count,
                    base_delay_s=self._backoff_base,
                    max_delay_s=self._backoff_max,
                )
                self.failure_count += 1
                self.next_attempt_at = now + delay
                logger.warning(
                    "Registry %s refresh failed (%d in a row, next attempt in %.0fs): %s",
                    self.name,
                    self.failure_count,
                    delay,
                    e,
                )
                return self.entries()

            if not fetched:
                logger.warning("Registry %s returned no entries; keeping previous", self.name)
                return self.entries()

            self._entries = list(fetched)
            self._fetched_at = now
            self.failure_count = 0
            self.next_attempt_at = 0.0
            self.generation += 1
            logger.info(
                "Registry %s refreshed: %d entries (generation %d)",
                self.name,
                len(self._entries),
                self.generation,
            )
            return list(self._entries)
