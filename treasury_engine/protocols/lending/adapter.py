"""Lending-market adapter — reads reserves and obligations, builds transactions."""
from __future__ import annotations

import logging
from typing import Any

from ...config import PolicyConfig, VenueConfig
from ...models import LendingPosition, Reserve
from ...registry import ReserveRegistry
from ...results import VenueNotFoundError, VenueResponseError
from ...utils.http import request_json
from . import parser

logger = logging.getLogger(__name__)

LENDING_ACTIONS = ("supply", "withdraw", "borrow", "repay")


class LendingMarketAdapter:
    """HTTP lending venue (Kamino/Aave-style market API)."""

    def __init__(
        self,
        name: str,
        config: VenueConfig,
        policy: PolicyConfig,
        stable_symbols: tuple[str, ...] = ("USDC", "USDT", "DAI"),
    ) -> None:
        self._name = name
        self._config = config
        self._assumed_ltv = policy.assumed_liquidation_ltv
        self._stables = stable_symbols
        self._base = f"{config.api_url.rstrip('/')}/markets/{config.market}"
        seed = [parser.parse_reserve(raw, self._assumed_ltv) for raw in config.seed]
        self.registry = ReserveRegistry(
            name, self.fetch_reserves, seed=seed, ttl_seconds=config.registry_ttl_seconds
        )

    @property
    def venue_name(self) -> str:
        return self._name

    @property
    def chain(self) -> str:
        return self._config.chain

    @property
    def config(self) -> VenueConfig:
        return self._config

    async def fetch_reserves(self) -> list[Reserve]:
        """Live reserve fetch; used as the registry's fetcher."""
        payload = await request_json(
            "GET", f"{self._base}/reserves", timeout=self._config.api_timeout
        )
        return parser.parse_reserves(
            payload,
            self._assumed_ltv,
            default_stable_apy=self._config.default_stable_apy,
            stable_symbols=self._stables,
        )

    async def get_reserves(self) -> list[Reserve]:
        return await self.registry.refresh()

    async def get_reserve(self, symbol: str) -> Reserve | None:
        await self.registry.refresh()
        return self.registry.by_symbol(symbol)

    async def get_position(
        self, wallet: str, prices: dict[str, float]
    ) -> LendingPosition | None:
        await self.registry.refresh()
        try:
            payload = await request_json(
                "GET",
                f"{self._base}/obligations/{wallet}",
                timeout=self._config.api_timeout,
            )
        except VenueNotFoundError:
            logger.debug("[%s] No obligation for %s", self._name, wallet)
            return None

        return parser.parse_obligation(
            payload,
            venue=self._name,
            chain=self._config.chain,
            market=self._config.market,
            registry=self.registry,
            prices=prices,
            assumed_liquidation_ltv=self._assumed_ltv,
        )

    async def build_transaction(
        self, action: str, wallet: str, reserve: Reserve, amount_raw: int
    ) -> dict[str, Any]:
        if action not in LENDING_ACTIONS:
            raise ValueError(f"Unknown lending action '{action}'")

        payload = await request_json(
            "POST",
            f"{self._base}/transactions/{action}",
            payload={
                "wallet": wallet,
                "reserve": reserve.address,
                "amount": str(amount_raw),
            },
            timeout=self._config.api_timeout,
        )
        tx = payload.get("tx")
        if not tx or not tx.get("to"):
            raise VenueResponseError(
                payload.get("error") or f"{self._name} returned no {action} transaction"
            )
        return tx
