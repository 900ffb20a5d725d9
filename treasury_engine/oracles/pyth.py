"""Pyth Network price oracle with a TTL cache and CoinGecko fallback."""
from __future__ import annotations

import logging
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import aiohttp
import certifi

from ..config import PriceOracleConfig

logger = logging.getLogger(__name__)


@dataclass
class PriceCache:
    """Last good price per symbol plus when it was observed."""

    ttl_seconds: float
    stale_after_seconds: float
    prices: dict[str, float] = field(default_factory=dict)
    observed_at: dict[str, float] = field(default_factory=dict)

    def store(self, prices: dict[str, float], now: float) -> None:
        for symbol, price in prices.items():
            if price > 0:
                self.prices[symbol] = price
                self.observed_at[symbol] = now

    def fresh(self, symbols: list[str], now: float) -> dict[str, float] | None:
        """Cached prices if every symbol is younger than the TTL, else None."""
        if not symbols:
            return None
        for symbol in symbols:
            seen = self.observed_at.get(symbol)
            if seen is None or now - seen > self.ttl_seconds:
                return None
        return {s: self.prices[s] for s in symbols}

    def last_good(self, symbols: list[str], now: float) -> dict[str, float]:
        result: dict[str, float] = {}
        for symbol in symbols:
            if symbol not in self.prices:
                continue
            age = now - self.observed_at[symbol]
            if age > self.stale_after_seconds:
                logger.warning("Using stale price for %s (%.0fs old)", symbol, age)
            result[symbol] = self.prices[symbol]
        return result


class PythOracle:
    """Fetch prices from Pyth Network, falling back to CoinGecko."""

    def __init__(
        self,
        config: PriceOracleConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hermes_url = config.pyth.hermes_url
        self.price_feeds = dict(config.pyth.feeds)
        self._coingecko = config.coingecko
        self._aliases = dict(config.token_aliases)
        self._stables = set(config.stable_symbols)
        self._cache = PriceCache(config.cache_ttl_seconds, config.stale_after_seconds)
        self._clock = clock

    @property
    def cache(self) -> PriceCache:
        return self._cache

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        """Fetch current USD prices.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.

        Stable symbols default to 1.0 and aliases (e.g. WETH → ETH) are
        resolved after fetching, so every caller sees the same mapping.
        """
        wanted = list(self.price_feeds) if symbols is None else list(symbols)
        now = self._clock()

        prices = self._cache.fresh(wanted, now)
        if prices is None:
            fetched = await self._fetch_pyth(wanted)
            missing = [s for s in wanted if s not in fetched]
            if missing and self._coingecko.enabled:
                fetched.update(await self._fetch_coingecko(missing))
            self._cache.store(fetched, now)
            prices = self._cache.last_good(wanted, now)

        return self._with_derived(prices)

    def _with_derived(self, prices: dict[str, float]) -> dict[str, float]:
        result = dict(prices)
        for stable in self._stables:
            result.setdefault(stable, 1.0)
        for alias, target in self._aliases.items():
            if alias not in result and target in result:
                result[alias] = result[target]
        return result

    async def _fetch_pyth(self, symbols: list[str]) -> dict[str, float]:
        prices: dict[str, float] = {}

        feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}
        feed_ids = list(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join([f"ids[]={fid}" for fid in feed_ids])
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=10)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return prices

                    data = await response.json()

            id_to_assets: dict[str, list[str]] = {}
            for asset, feed_id in feeds.items():
                id_to_assets.setdefault(feed_id.lower().removeprefix("0x"), []).append(asset)

            for item in data.get("parsed", []):
                feed_id = str(item.get("id", "")).lower().removeprefix("0x")
                price_data = item.get("price", {})
                price_raw = int(price_data.get("price", 0))
                expo = int(price_data.get("expo", 0))

                price = price_raw * (10**expo)

                for asset in id_to_assets.get(feed_id, []):
                    prices[asset] = price

            logger.debug("Fetched %d prices from Pyth Network", len(prices))
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)

        return prices

    async def _fetch_coingecko(self, symbols: list[str]) -> dict[str, float]:
        prices: dict[str, float] = {}
        ids = {s: self._coingecko.ids[s] for s in symbols if s in self._coingecko.ids}
        if not ids:
            return prices

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        params = {"ids": ",".join(sorted(set(ids.values()))), "vs_currencies": "usd"}

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    self._coingecko.api_url,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from CoinGecko: HTTP %s",
                            response.status,
                        )
                        return prices
                    data = await response.json()

            for symbol, cg_id in ids.items():
                usd = data.get(cg_id, {}).get("usd")
                if usd:
                    prices[symbol] = float(usd)
            logger.info("CoinGecko fallback supplied %d prices", len(prices))
        except Exception as e:
            logger.error("Error fetching prices from CoinGecko: %s", e)

        return prices
