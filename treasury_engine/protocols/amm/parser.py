"""Pure parsing of AMM pool and position payloads."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ...models import LiquidityPosition, Pool, Token
from . import math as clmath


@dataclass(frozen=True)
class PoolState:
    pool: Pool
    tick: int
    price: float


def parse_token(raw: dict[str, Any]) -> Token:
    return Token(
        symbol=str(raw.get("symbol", "")).upper(),
        address=str(raw.get("address", "")),
        decimals=int(raw.get("decimals", 18)),
    )


def parse_pool(raw: dict[str, Any]) -> Pool:
    return Pool(
        address=str(raw.get("address", "")),
        token0=parse_token(raw.get("token0", {})),
        token1=parse_token(raw.get("token1", {})),
        fee_tier=int(raw.get("feeTier", 0)),
        tick_spacing=int(raw.get("tickSpacing", 1)) or 1,
        tvl_usd=float(raw.get("tvlUsd", 0.0)),
        volume_24h_usd=float(raw.get("volume24hUsd", 0.0)),
        apy_pct=float(raw.get("apy7d", raw.get("apy", 0.0))),
    )


def parse_pool_state(raw: dict[str, Any]) -> PoolState:
    """Pool plus its current tick and decimal-adjusted price."""
    pool = parse_pool(raw)
    sqrt_price = raw.get("sqrtPriceX96")
    if sqrt_price:
        price = clmath.sqrt_price_x96_to_price(
            int(sqrt_price), pool.token0.decimals, pool.token1.decimals
        )
    else:
        price = clmath.tick_to_human_price(
            int(raw.get("tick", 0)), pool.token0.decimals, pool.token1.decimals
        )
    return PoolState(pool=pool, tick=int(raw.get("tick", 0)), price=price)


def pair_prices(state: PoolState, prices: dict[str, float]) -> tuple[float, float]:
    p0 = prices.get(state.pool.token0.symbol, 0.0)
    p1 = prices.get(state.pool.token1.symbol, 0.0)
    if p0 == 0.0 and p1 > 0:
        p0 = state.price * p1
    elif p1 == 0.0 and p0 > 0 and state.price > 0:
        p1 = p0 / state.price
    return p0, p1


def parse_position(
    raw: dict[str, Any],
    state: PoolState,
    venue: str,
    chain: str,
    prices: dict[str, float],
) -> LiquidityPosition:
    pool = state.pool
    d0, d1 = pool.token0.decimals, pool.token1.decimals
    tick_lower = int(raw.get("tickLower", 0))
    tick_upper = int(raw.get("tickUpper", 0))
    liquidity = int(raw.get("liquidity", 0))

    raw0, raw1 = clmath.amounts_for_liquidity(state.tick, tick_lower, tick_upper, liquidity)
    amount0, amount1 = raw0 / 10**d0, raw1 / 10**d1
    fees0 = int(raw.get("tokensOwed0", 0)) / 10**d0
    fees1 = int(raw.get("tokensOwed1", 0)) / 10**d1

    p0, p1 = pair_prices(state, prices)
    fees_usd = fees0 * p0 + fees1 * p1

    return LiquidityPosition(
        position_id=str(raw.get("tokenId", "")),
        venue=venue,
        chain=chain,
        pool_address=pool.address,
        token0=pool.token0,
        token1=pool.token1,
        tick_lower=tick_lower,
        tick_upper=tick_upper,
        current_tick=state.tick,
        lower_price=clmath.tick_to_human_price(tick_lower, d0, d1),
        upper_price=clmath.tick_to_human_price(tick_upper, d0, d1),
        current_price=state.price,
        liquidity=liquidity,
        amount0=amount0,
        amount1=amount1,
        fees0=fees0,
        fees1=fees1,
        value_usd=amount0 * p0 + amount1 * p1 + fees_usd,
        fees_usd=fees_usd,
    )
