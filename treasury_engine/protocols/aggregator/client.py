"""Swap/bridge aggregator client (LI.FI API).

Routing is the aggregator's job; the engine only validates the quoted outcome
(price impact, fees) before any capital moves.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ...config import AggregatorConfig
from ...results import VenueResponseError
from ...utils.http import request_json

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"

BRIDGE_DONE = "DONE"
BRIDGE_FAILED = "FAILED"
BRIDGE_PENDING = "PENDING"


@dataclass(frozen=True)
class RouteQuote:
    from_token: str
    to_token: str
    from_amount_raw: int
    to_amount_raw: int
    to_amount_min_raw: int
    from_amount_usd: float
    to_amount_usd: float
    fee_usd: float
    tool: str
    approval_address: str = ""
    transaction: dict[str, Any] = field(default_factory=dict)

    @property
    def price_impact_pct(self) -> float:
        """Quoted value lost between input and output, in percent."""
        if self.from_amount_usd <= 0:
            return 0.0
        return max(0.0, (self.from_amount_usd - self.to_amount_usd) / self.from_amount_usd * 100)


def _sum_usd(costs: list[dict[str, Any]] | None) -> float:
    return sum(float(c.get("amountUSD", 0) or 0) for c in costs or [])


def parse_quote(data: dict[str, Any]) -> RouteQuote:
    estimate = data.get("estimate", {})
    action = data.get("action", {})
    tx = data.get("transactionRequest") or {}
    if not tx.get("to"):
        raise VenueResponseError("aggregator quote has no transaction request")
    return RouteQuote(
        from_token=str(action.get("fromToken", {}).get("address", "")),
        to_token=str(action.get("toToken", {}).get("address", "")),
        from_amount_raw=int(estimate.get("fromAmount", action.get("fromAmount", 0)) or 0),
        to_amount_raw=int(estimate.get("toAmount", 0) or 0),
        to_amount_min_raw=int(estimate.get("toAmountMin", 0) or 0),
        from_amount_usd=float(estimate.get("fromAmountUSD", 0) or 0),
        to_amount_usd=float(estimate.get("toAmountUSD", 0) or 0),
        fee_usd=_sum_usd(estimate.get("gasCosts")) + _sum_usd(estimate.get("feeCosts")),
        tool=str(data.get("tool", "unknown")),
        approval_address=str(estimate.get("approvalAddress", "") or ""),
        transaction=dict(tx),
    )


class AggregatorClient:
    def __init__(self, config: AggregatorConfig) -> None:
        self._config = config
        self._base = config.api_url.rstrip("/")

    async def _quote(self, params: dict[str, Any]) -> RouteQuote:
        data = await request_json(
            "GET", f"{self._base}/quote", params=params, timeout=self._config.api_timeout
        )
        quote = parse_quote(data)
        logger.debug(
            "Quote via %s: $%.2f → $%.2f (impact %.2f%%, fees $%.2f)",
            quote.tool,
            quote.from_amount_usd,
            quote.to_amount_usd,
            quote.price_impact_pct,
            quote.fee_usd,
        )
        return quote

    async def quote_swap(
        self,
        chain_id: int,
        from_token: str,
        to_token: str,
        amount_raw: int,
        wallet: str,
        slippage_bps: int,
    ) -> RouteQuote:
        return await self._quote(
            {
                "fromChain": chain_id,
                "toChain": chain_id,
                "fromToken": from_token,
                "toToken": to_token,
                "fromAmount": str(amount_raw),
                "fromAddress": wallet,
                "slippage": slippage_bps / 10_000,
            }
        )

    async def quote_bridge(
        self,
        from_chain_id: int,
        to_chain_id: int,
        from_token: str,
        to_token: str,
        amount_raw: int,
        wallet: str,
        slippage_bps: int,
    ) -> RouteQuote:
        return await self._quote(
            {
                "fromChain": from_chain_id,
                "toChain": to_chain_id,
                "fromToken": from_token,
                "toToken": to_token,
                "fromAmount": str(amount_raw),
                "fromAddress": wallet,
                "toAddress": wallet,
                "slippage": slippage_bps / 10_000,
            }
        )

    async def bridge_status(self, tx_hash: str, from_chain_id: int) -> str:
        data = await request_json(
            "GET",
            f"{self._base}/status",
            params={"txHash": tx_hash, "fromChain": from_chain_id},
            timeout=self._config.api_timeout,
        )
        status = str(data.get("status", BRIDGE_PENDING)).upper()
        if status in (BRIDGE_DONE, BRIDGE_FAILED):
            return status
        return BRIDGE_PENDING
