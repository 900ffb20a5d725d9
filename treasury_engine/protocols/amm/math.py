"""Concentrated-liquidity tick and price math — pure functions."""
from __future__ import annotations

import math

MIN_TICK = -887272
MAX_TICK = 887272
TICK_BASE = 1.0001
Q96 = 2**96


def tick_to_price(tick: int) -> float:
    """Raw token1-per-token0 price at ``tick`` (no decimal adjustment)."""
    return TICK_BASE**tick


def price_to_tick(price: float) -> int:
    if price <= 0:
        raise ValueError("price must be positive")
    return math.floor(math.log(price) / math.log(TICK_BASE))


def tick_to_human_price(tick: int, decimals0: int, decimals1: int) -> float:
    """Price of token0 in token1 units, adjusted for decimals."""
    return tick_to_price(tick) * 10 ** (decimals0 - decimals1)


def human_price_to_tick(price: float, decimals0: int, decimals1: int) -> int:
    return price_to_tick(price * 10 ** (decimals1 - decimals0))


def sqrt_price_x96_to_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> float:
    raw = (sqrt_price_x96 / Q96) ** 2
    return raw * 10 ** (decimals0 - decimals1)


def round_tick_down(tick: int, spacing: int) -> int:
    return max(MIN_TICK, (tick // spacing) * spacing)


def round_tick_up(tick: int, spacing: int) -> int:
    return min(MAX_TICK, -((-tick) // spacing) * spacing)


def ticks_for_width(
    current_price: float,
    width_pct: float,
    decimals0: int,
    decimals1: int,
    spacing: int,
) -> tuple[int, int]:
    """Tick bounds of a range centred on ``current_price``.

    The range spans ``width_pct`` percent in total (±width/2 around price),
    widened outward to the nearest usable ticks.
    """
    half = width_pct / 200
    lower_price = current_price * (1 - half)
    upper_price = current_price * (1 + half)
    lower = round_tick_down(human_price_to_tick(lower_price, decimals0, decimals1), spacing)
    upper = round_tick_up(human_price_to_tick(upper_price, decimals0, decimals1), spacing)
    if upper <= lower:
        upper = lower + spacing
    return lower, upper


def amounts_for_liquidity(
    current_tick: int, tick_lower: int, tick_upper: int, liquidity: int
) -> tuple[int, int]:
    """Raw token amounts represented by ``liquidity`` at the current tick."""
    if liquidity <= 0:
        return 0, 0
    sa = math.sqrt(tick_to_price(tick_lower))
    sb = math.sqrt(tick_to_price(tick_upper))
    sp = math.sqrt(tick_to_price(current_tick))
    if current_tick < tick_lower:
        amount0 = liquidity * (sb - sa) / (sa * sb)
        amount1 = 0.0
    elif current_tick >= tick_upper:
        amount0 = 0.0
        amount1 = liquidity * (sb - sa)
    else:
        amount0 = liquidity * (sb - sp) / (sp * sb)
        amount1 = liquidity * (sp - sa)
    return int(amount0), int(amount1)


def slippage_min(amount: int, slippage_bps: int) -> int:
    return amount * (10_000 - slippage_bps) // 10_000


def liquidity_for_amounts(
    current_tick: int, tick_lower: int, tick_upper: int, amount0: int, amount1: int
) -> int:
    """Largest liquidity both raw amounts can fund at the current tick."""
    sa = math.sqrt(tick_to_price(tick_lower))
    sb = math.sqrt(tick_to_price(tick_upper))
    sp = math.sqrt(tick_to_price(current_tick))
    if current_tick < tick_lower:
        return int(amount0 * (sa * sb) / (sb - sa))
    if current_tick >= tick_upper:
        return int(amount1 / (sb - sa))
    liq0 = amount0 * (sp * sb) / (sb - sp)
    liq1 = amount1 / (sp - sa) if sp > sa else float("inf")
    return int(min(liq0, liq1))
