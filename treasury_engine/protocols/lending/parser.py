"""Pure parsing functions for lending-market API data — no I/O."""
from __future__ import annotations

from dataclasses import replace
from typing import Any

from ...models import AssetDetail, LendingPosition, Reserve
from ...registry import ReserveRegistry

# Borrow cap as a fraction of the venue's liquidation LTV.
BORROW_CAP_HAIRCUT = 0.9

DEFAULT_DECIMALS = 18


def resolve_price(
    token_symbol: str,
    prices: dict[str, float],
    token_aliases: dict[str, str] | None = None,
) -> float:
    """Resolve the price for a token, falling back to aliases."""
    price = prices.get(token_symbol, 0.0)
    if price == 0.0 and token_aliases and token_symbol in token_aliases:
        price = prices.get(token_aliases[token_symbol], 0.0)
    return price


def _fraction(value: Any, default: float) -> float:
    """APY fields are fractions as given; 1.2 means 120%."""
    if value is None or value == "":
        return default
    return float(value)


def _ltv(value: Any, default: float) -> float:
    """LTVs are bounded by 1, so venues quoting 75 mean 75%."""
    ratio = _fraction(value, default)
    return ratio / 100 if ratio > 1 else ratio


def parse_reserve(raw: dict[str, Any], assumed_liquidation_ltv: float) -> Reserve:
    """Build a Reserve from one venue reserve entry.

    A missing liquidation LTV falls back to the configured conservative
    assumption instead of a guessed venue value.
    """
    liquidation_ltv = _ltv(raw.get("liquidationLtv"), assumed_liquidation_ltv)
    return Reserve(
        symbol=str(raw.get("symbol", "")).upper(),
        address=str(raw.get("address", "")),
        decimals=int(raw.get("decimals", DEFAULT_DECIMALS)),
        liquidation_ltv=liquidation_ltv,
        borrow_cap_ltv=round(liquidation_ltv * BORROW_CAP_HAIRCUT, 6),
        supply_apy=_fraction(raw.get("supplyApy"), 0.0),
        borrow_apy=_fraction(raw.get("borrowApy"), 0.0),
        is_liquid_staking=bool(raw.get("isLiquidStaking", False)),
        staking_apy=_fraction(raw.get("stakingApy"), 0.0),
    )


def parse_reserves(
    payload: dict[str, Any],
    assumed_liquidation_ltv: float,
    default_stable_apy: float = 0.0,
    stable_symbols: tuple[str, ...] = (),
) -> list[Reserve]:
    reserves: list[Reserve] = []
    for raw in payload.get("reserves", []):
        if not raw.get("address"):
            continue
        reserve = parse_reserve(raw, assumed_liquidation_ltv)
        if reserve.supply_apy == 0.0 and reserve.symbol in stable_symbols and default_stable_apy:
            reserve = replace(reserve, supply_apy=default_stable_apy)
        reserves.append(reserve)
    return reserves


def to_units(amount_raw: int | str, decimals: int) -> float:
    return int(amount_raw) / 10**decimals


def _parse_entries(
    entries: list[dict[str, Any]],
    registry: ReserveRegistry,
    prices: dict[str, float],
    apy_field: str,
) -> tuple[AssetDetail, ...]:
    assets: list[AssetDetail] = []
    for entry in entries:
        address = str(entry.get("reserve", ""))
        symbol, decimals = registry.label(address)
        reserve = registry.by_address(address)
        amount = to_units(entry.get("amount", 0), decimals or DEFAULT_DECIMALS)
        if amount <= 0:
            continue
        price = resolve_price(symbol, prices)
        assets.append(
            AssetDetail(
                symbol=symbol,
                amount=amount,
                price=price,
                usd_value=amount * price,
                apy=getattr(reserve, apy_field) if reserve else 0.0,
                address=address,
            )
        )
    return tuple(assets)


def parse_obligation(
    payload: dict[str, Any],
    venue: str,
    chain: str,
    market: str,
    registry: ReserveRegistry,
    prices: dict[str, float],
    assumed_liquidation_ltv: float,
) -> LendingPosition | None:
    """Normalise an obligation payload; None when the wallet holds nothing."""
    obligation = payload.get("obligation")
    if not obligation:
        return None

    deposits = _parse_entries(obligation.get("deposits", []), registry, prices, "supply_apy")
    borrows = _parse_entries(obligation.get("borrows", []), registry, prices, "borrow_apy")
    if not deposits and not borrows:
        return None

    threshold = _ltv(obligation.get("liquidationLtv"), 0.0)
    if threshold == 0.0:
        threshold = weighted_liquidation_threshold(deposits, registry, assumed_liquidation_ltv)

    return LendingPosition(
        venue=venue,
        chain=chain,
        market=market,
        deposits=deposits,
        borrows=borrows,
        liquidation_threshold=threshold,
    )


def weighted_liquidation_threshold(
    deposits: tuple[AssetDetail, ...],
    registry: ReserveRegistry,
    assumed_liquidation_ltv: float,
) -> float:
    """Deposit-value-weighted liquidation LTV across collateral reserves."""
    total = sum(d.usd_value for d in deposits)
    if total <= 0:
        return assumed_liquidation_ltv
    weighted = 0.0
    for d in deposits:
        reserve = registry.by_address(d.address)
        ltv = reserve.liquidation_ltv if reserve else assumed_liquidation_ltv
        weighted += ltv * d.usd_value
    return weighted / total
