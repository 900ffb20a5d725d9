"""Perpetual-exchange hedge adapter (Hyperliquid API)."""
from __future__ import annotations

import logging
from typing import Any

from hyperliquid.exchange import get_timestamp_ms
from hyperliquid.utils.signing import (
    float_to_wire,
    get_l1_action_payload,
    order_type_to_wire,
    order_wires_to_order_action,
)

from ...config import VenueConfig
from ...models import HedgePosition
from ...utils.http import request_json
from ...wallet import WalletSigner
from . import parser

logger = logging.getLogger(__name__)

MAINNET_API_URL = "https://api.hyperliquid.xyz"


class PerpHedgeAdapter:
    """Reads hedge positions and places signed IOC orders."""

    def __init__(
        self, name: str, config: VenueConfig, signer: WalletSigner | None = None
    ) -> None:
        self._name = name
        self._config = config
        self._signer = signer
        self._base = config.api_url.rstrip("/")
        self._is_mainnet = self._base == MAINNET_API_URL
        self._meta: dict[str, Any] | None = None

    @property
    def venue_name(self) -> str:
        return self._name

    @property
    def chain(self) -> str:
        return self._config.chain

    @property
    def config(self) -> VenueConfig:
        return self._config

    async def _info(self, body: dict[str, Any]) -> Any:
        return await request_json(
            "POST", f"{self._base}/info", payload=body, timeout=self._config.api_timeout
        )

    async def get_positions(self, wallet: str) -> list[HedgePosition]:
        state = await self._info({"type": "clearinghouseState", "user": wallet})
        return parser.parse_clearinghouse_state(state or {}, self._name, self._config.chain)

    async def get_mid_prices(self) -> dict[str, float]:
        mids = await self._info({"type": "allMids"})
        return {coin: float(px) for coin, px in (mids or {}).items()}

    async def get_asset(self, coin: str) -> tuple[int, int]:
        if self._meta is None:
            self._meta = await self._info({"type": "meta"})
        return parser.asset_index(self._meta or {}, coin)

    async def _exchange(self, action: dict[str, Any]) -> dict[str, Any]:
        """Sign ``action`` with the wallet and post it once."""
        if self._signer is None:
            raise RuntimeError(f"{self._name}: no signer configured for exchange actions")
        nonce = get_timestamp_ms()
        payload = get_l1_action_payload(action, None, nonce, None, self._is_mainnet)
        signature = self._signer.sign_typed_data(payload)
        return await request_json(
            "POST",
            f"{self._base}/exchange",
            payload={"action": action, "nonce": nonce, "signature": signature},
            timeout=self._config.api_timeout,
            max_retries=1,
        )

    async def update_leverage(self, coin: str, leverage: float) -> dict[str, Any]:
        if not float(leverage).is_integer():
            raise ValueError(f"leverage must be a whole number, got {leverage}")
        asset, _ = await self.get_asset(coin)
        return await self._exchange(
            {
                "type": "updateLeverage",
                "asset": asset,
                "isCross": True,
                "leverage": int(leverage),
            }
        )

    async def place_order(
        self,
        coin: str,
        is_buy: bool,
        size: float,
        limit_price: float,
        reduce_only: bool,
        leverage: float | None = None,
    ) -> dict[str, Any]:
        """Place an IOC limit order; returns the raw exchange response."""
        asset, sz_decimals = await self.get_asset(coin)
        if leverage is not None:
            response = await self.update_leverage(coin, leverage)
            if response.get("status") != "ok":
                return response

        order = {
            "a": asset,
            "b": is_buy,
            "p": float_to_wire(parser.round_price(limit_price, sz_decimals)),
            "s": float_to_wire(parser.round_size(size, sz_decimals)),
            "r": reduce_only,
            "t": order_type_to_wire({"limit": {"tif": "Ioc"}}),
        }
        logger.info(
            "[%s] %s %s %s @ %s%s",
            self._name,
            "BUY" if is_buy else "SELL",
            order["s"],
            coin,
            order["p"],
            " (reduce-only)" if reduce_only else "",
        )
        return await self._exchange(order_wires_to_order_action([order], None))
