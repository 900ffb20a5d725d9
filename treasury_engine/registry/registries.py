"""Reserve and pool registries built on ``RegistryCache``."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..models import Pool, Reserve
from .cache import RegistryCache

logger = logging.getLogger(__name__)

RESERVE_TTL_SECONDS = 3600.0
POOL_TTL_SECONDS = 7200.0


def short_address(address: str) -> str:
    """Label for an unresolved asset, e.g. ``0x1234…abcd``."""
    if len(address) > 12:
        return f"{address[:6]}…{address[-4:]}"
    return address or "UNKNOWN"


class ReserveRegistry:
    """Lending reserves for one market, looked up by symbol or address."""

    def __init__(
        self,
        venue: str,
        fetcher: Callable[[], Awaitable[list[Reserve]]],
        seed: list[Reserve] | None = None,
        ttl_seconds: float = RESERVE_TTL_SECONDS,
        **cache_kwargs: float,
    ) -> None:
        self.cache: RegistryCache[Reserve] = RegistryCache(
            f"{venue}-reserves", fetcher, seed=seed, ttl_seconds=ttl_seconds, **cache_kwargs
        )

    async def refresh(self, force: bool = False) -> list[Reserve]:
        return await self.cache.refresh(force)

    def all(self) -> list[Reserve]:
        return self.cache.entries()

    def by_symbol(self, symbol: str) -> Reserve | None:
        symbol = symbol.upper()
        return next((r for r in self.all() if r.symbol == symbol), None)

    def by_address(self, address: str) -> Reserve | None:
        address = address.lower()
        return next((r for r in self.all() if r.key == address), None)

    def label(self, address: str) -> tuple[str, int | None]:
        """Symbol and decimals for ``address``; the short address if unknown."""
        reserve = self.by_address(address)
        if reserve is None:
            logger.debug("Unresolved reserve %s", address)
            return short_address(address), None
        return reserve.symbol, reserve.decimals


class PoolRegistry:
    """Eligible concentrated-liquidity pools, ranked by APY."""

    def __init__(
        self,
        venue: str,
        fetcher: Callable[[], Awaitable[list[Pool]]],
        min_tvl_usd: float,
        min_apy_pct: float,
        seed: list[Pool] | None = None,
        ttl_seconds: float = POOL_TTL_SECONDS,
        **cache_kwargs: float,
    ) -> None:
        self._min_tvl = min_tvl_usd
        self._min_apy = min_apy_pct
        self._raw_fetcher = fetcher
        self.cache: RegistryCache[Pool] = RegistryCache(
            f"{venue}-pools", self._fetch_eligible, seed=seed, ttl_seconds=ttl_seconds, **cache_kwargs
        )

    def is_eligible(self, pool: Pool) -> bool:
        return pool.tvl_usd >= self._min_tvl and pool.apy_pct >= self._min_apy

    async def _fetch_eligible(self) -> list[Pool]:
        pools = await self._raw_fetcher()
        eligible = [p for p in pools if self.is_eligible(p)]
        eligible.sort(key=lambda p: p.apy_pct, reverse=True)
        logger.debug("%d of %d pools pass eligibility floors", len(eligible), len(pools))
        return eligible

    async def refresh(self, force: bool = False) -> list[Pool]:
        return await self.cache.refresh(force)

    def all(self) -> list[Pool]:
        return self.cache.entries()

    def by_address(self, address: str) -> Pool | None:
        address = address.lower()
        return next((p for p in self.all() if p.key == address), None)

    def best(self) -> Pool | None:
        pools = self.all()
        return pools[0] if pools else None
