"""Liquid-staking adapter — stakes native currency into the venue's LST."""
from __future__ import annotations

import logging
from typing import Any

from ...config import VenueConfig
from ...results import VenueResponseError
from ...utils.http import request_json

logger = logging.getLogger(__name__)


class LiquidStakingAdapter:
    def __init__(self, name: str, config: VenueConfig) -> None:
        self._name = name
        self._config = config
        self._base = config.api_url.rstrip("/")

    @property
    def venue_name(self) -> str:
        return self._name

    @property
    def chain(self) -> str:
        return self._config.chain

    @property
    def lst_symbol(self) -> str:
        return self._config.collateral_symbol

    @property
    def config(self) -> VenueConfig:
        return self._config

    async def get_pool_info(self) -> dict[str, Any]:
        return await request_json(
            "GET", f"{self._base}/stake-pool", timeout=self._config.api_timeout
        )

    async def get_exchange_rate(self) -> float:
        """Native units per LST unit."""
        info = await self.get_pool_info()
        rate = float(info.get("exchangeRate", 0) or 0)
        if rate <= 0:
            raise VenueResponseError(f"{self._name}: invalid exchange rate {rate}")
        return rate

    async def build_stake(self, wallet: str, amount_raw: int) -> dict[str, Any]:
        payload = await request_json(
            "POST",
            f"{self._base}/transactions/stake",
            payload={"wallet": wallet, "amount": str(amount_raw)},
            timeout=self._config.api_timeout,
        )
        tx = payload.get("tx")
        if not tx or not tx.get("to"):
            raise VenueResponseError(
                payload.get("error") or f"{self._name} returned no stake transaction"
            )
        return tx
