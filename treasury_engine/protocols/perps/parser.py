"""Pure parsing and sizing helpers for the perpetual exchange."""
from __future__ import annotations

import math
from typing import Any

from ...models import HedgePosition

MAX_PRICE_DECIMALS = 6


def parse_clearinghouse_state(state: dict[str, Any], venue: str, chain: str = "") -> list[HedgePosition]:
    """Open positions from a ``clearinghouseState`` response; zero sizes skipped."""
    positions: list[HedgePosition] = []
    for entry in state.get("assetPositions", []):
        pos = entry.get("position", {})
        szi = float(pos.get("szi", 0) or 0)
        if szi == 0:
            continue
        notional = abs(float(pos.get("positionValue", 0) or 0))
        leverage = pos.get("leverage") or {}
        positions.append(
            HedgePosition(
                venue=venue,
                coin=str(pos.get("coin", "")),
                side="LONG" if szi > 0 else "SHORT",
                size=abs(szi),
                notional_usd=notional,
                entry_price=float(pos.get("entryPx", 0) or 0),
                mark_price=notional / abs(szi),
                leverage=float(leverage.get("value", 1) if isinstance(leverage, dict) else leverage),
                liquidation_price=float(pos.get("liquidationPx", 0) or 0),
                unrealized_pnl_usd=float(pos.get("unrealizedPnl", 0) or 0),
                margin_used_usd=float(pos.get("marginUsed", 0) or 0),
                chain=chain,
            )
        )
    return positions


def asset_index(meta: dict[str, Any], coin: str) -> tuple[int, int]:
    """``(asset id, size decimals)`` for ``coin`` in the exchange universe."""
    for index, asset in enumerate(meta.get("universe", [])):
        if asset.get("name") == coin:
            return index, int(asset.get("szDecimals", 3))
    raise ValueError(f"Unknown perpetual market '{coin}'")


def round_size(size: float, sz_decimals: int) -> float:
    """Round down to the venue's size precision."""
    factor = 10**sz_decimals
    return math.floor(size * factor) / factor


def round_price(price: float, sz_decimals: int) -> float:
    """Five significant figures, capped at ``6 - szDecimals`` decimals."""
    return round(float(f"{price:.5g}"), max(0, MAX_PRICE_DECIMALS - sz_decimals))


def parse_order_response(response: dict[str, Any]) -> tuple[bool, str, dict[str, Any]]:
    """``(ok, error text, fill)`` from an exchange order response."""
    if response.get("status") != "ok":
        return False, str(response.get("response") or response.get("error") or response), {}
    data = response.get("response", {}).get("data", {})
    statuses = data.get("statuses", [])
    if not statuses:
        return False, "exchange returned no order status", {}
    status = statuses[0]
    if "error" in status:
        return False, str(status["error"]), {}
    if "filled" in status:
        return True, "", status["filled"]
    return False, f"order not filled: {status}", {}
