"""Data models — all frozen (immutable)."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

HEDGE_RISK_DISTANCE = 0.20


class StrategyKind(str, Enum):
    LENDING = "lending"
    LIQUIDITY = "liquidity"
    HEDGE = "hedge"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class SuggestionKind(str, Enum):
    REDUCE_EXPOSURE = "reduce_exposure"
    REDUCE_HEDGE = "reduce_hedge"
    DEPOSIT = "deposit"
    BRIDGE = "bridge"
    LP_REBALANCE = "lp_rebalance"
    STAKE = "stake"
    DIVERSIFY = "diversify"


# ---------------------------------------------------------------------------
# Registry entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reserve:
    """Lending-market asset, immutable within a scan cycle."""

    symbol: str
    address: str
    decimals: int
    liquidation_ltv: float
    borrow_cap_ltv: float
    supply_apy: float = 0.0
    borrow_apy: float = 0.0
    is_liquid_staking: bool = False
    staking_apy: float = 0.0

    @property
    def key(self) -> str:
        return self.address.lower()


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int


@dataclass(frozen=True)
class Pool:
    """Concentrated-liquidity pool as discovered by the pool registry."""

    address: str
    token0: Token
    token1: Token
    fee_tier: int
    tick_spacing: int
    tvl_usd: float = 0.0
    volume_24h_usd: float = 0.0
    apy_pct: float = 0.0

    @property
    def key(self) -> str:
        return self.address.lower()

    @property
    def label(self) -> str:
        return f"{self.token0.symbol}/{self.token1.symbol}"


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetDetail:
    """Single asset within a position (deposit or borrow) or wallet."""

    symbol: str
    amount: float
    price: float
    usd_value: float
    apy: float = 0.0
    address: str = ""


@dataclass(frozen=True)
class LendingPosition:
    """Per-wallet aggregate of deposits and borrows in one market."""

    venue: str
    chain: str
    market: str
    deposits: tuple[AssetDetail, ...] = ()
    borrows: tuple[AssetDetail, ...] = ()
    liquidation_threshold: float = 0.75

    @property
    def position_id(self) -> str:
        return f"{self.venue}:{self.market}"

    @property
    def deposit_value_usd(self) -> float:
        return sum(a.usd_value for a in self.deposits)

    @property
    def borrow_value_usd(self) -> float:
        return sum(a.usd_value for a in self.borrows)

    @property
    def net_value_usd(self) -> float:
        return self.deposit_value_usd - self.borrow_value_usd

    @property
    def loan_to_value(self) -> float:
        deposits = self.deposit_value_usd
        if deposits <= 0:
            return 0.0
        return self.borrow_value_usd / deposits

    @property
    def health_factor(self) -> float:
        ltv = self.loan_to_value
        if self.borrow_value_usd <= 0 or ltv <= 0:
            return math.inf
        return self.liquidation_threshold / ltv

    @property
    def is_empty(self) -> bool:
        return not any(a.amount > 0 for a in self.deposits + self.borrows)

    def deposit(self, symbol: str) -> AssetDetail | None:
        return next((a for a in self.deposits if a.symbol == symbol), None)

    def borrow(self, symbol: str) -> AssetDetail | None:
        return next((a for a in self.borrows if a.symbol == symbol), None)


def range_utilisation(price: float, lower: float, upper: float) -> float:
    """Percent of how centred ``price`` is within ``[lower, upper]``.

    100 when exactly centred, 0 at either edge and outside the range.
    """
    if upper <= lower or price < lower or price > upper:
        return 0.0
    half = (upper - lower) / 2
    midpoint = lower + half
    return max(0.0, (1 - abs(price - midpoint) / half) * 100)


@dataclass(frozen=True)
class LiquidityPosition:
    """Concentrated-liquidity AMM position."""

    position_id: str
    venue: str
    chain: str
    pool_address: str
    token0: Token
    token1: Token
    tick_lower: int
    tick_upper: int
    current_tick: int
    lower_price: float
    upper_price: float
    current_price: float
    liquidity: int = 0
    amount0: float = 0.0
    amount1: float = 0.0
    fees0: float = 0.0
    fees1: float = 0.0
    value_usd: float = 0.0
    fees_usd: float = 0.0

    @property
    def in_range(self) -> bool:
        return self.tick_lower <= self.current_tick < self.tick_upper

    @property
    def range_utilisation_pct(self) -> float:
        return range_utilisation(self.current_price, self.lower_price, self.upper_price)

    @property
    def label(self) -> str:
        return f"{self.token0.symbol}/{self.token1.symbol}"


@dataclass(frozen=True)
class HedgePosition:
    """Perpetual short used purely as a hedge."""

    venue: str
    coin: str
    side: str
    size: float
    notional_usd: float
    entry_price: float
    mark_price: float
    leverage: float
    liquidation_price: float
    unrealized_pnl_usd: float
    margin_used_usd: float = 0.0
    # Settlement chain from venue config; empty for an off-chain order book.
    chain: str = ""

    @property
    def position_id(self) -> str:
        return f"{self.venue}:{self.coin}"

    @property
    def at_risk(self) -> bool:
        if self.liquidation_price <= 0 or self.mark_price <= 0:
            return False
        distance = abs(self.mark_price - self.liquidation_price) / self.mark_price
        return distance < HEDGE_RISK_DISTANCE


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainBalance:
    """Uninvested capital held by the wallet on one chain."""

    chain: str
    native_symbol: str
    native: float = 0.0
    native_usd: float = 0.0
    stable_symbol: str = "USDC"
    stable: float = 0.0
    stable_usd: float = 0.0
    other: tuple[AssetDetail, ...] = ()
    staked: tuple[AssetDetail, ...] = ()

    @property
    def total_usd(self) -> float:
        return self.native_usd + self.stable_usd + sum(a.usd_value for a in (*self.other, *self.staked))

    @property
    def liquid_staking_usd(self) -> float:
        return sum(a.usd_value for a in self.staked)


@dataclass(frozen=True)
class StrategyAllocation:
    name: str
    kind: StrategyKind
    venue: str
    chain: str
    value_usd: float
    allocation_pct: float
    unrealized_pnl_usd: float = 0.0
    position_id: str = ""
    details: str = ""


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Aggregate root built fresh on every scan."""

    timestamp: datetime
    chains: tuple[ChainBalance, ...] = ()
    strategies: tuple[StrategyAllocation, ...] = ()
    lending_positions: tuple[LendingPosition, ...] = ()
    liquidity_positions: tuple[LiquidityPosition, ...] = ()
    hedge_positions: tuple[HedgePosition, ...] = ()
    total_wallet_usd: float = 0.0
    total_deployed_usd: float = 0.0
    total_portfolio_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    cash_reserve_pct: float = 100.0
    largest_strategy_pct: float = 0.0
    prices: dict[str, float] = field(default_factory=dict)
    lending_rates: dict[str, float] = field(default_factory=dict)
    errors: tuple[str, ...] = ()
    closed_externally: tuple[str, ...] = ()
    sources_ok: int = 0

    def deployed_in(self, venue: str) -> float:
        return sum(s.value_usd for s in self.strategies if s.venue == venue)

    def chain(self, name: str) -> ChainBalance | None:
        return next((c for c in self.chains if c.chain == name), None)


@dataclass(frozen=True)
class Suggestion:
    """Ranked action proposed by the decision engine."""

    priority: Priority
    kind: SuggestionKind
    action: str
    reason: str
    venue: str = ""
    chain: str = ""
    amount_usd: float = 0.0
    params: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------


class RecordStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    CLOSED_EXTERNALLY = "closed_externally"


@dataclass(frozen=True)
class PositionRecord:
    """Persisted position identity and cost basis."""

    position_id: str
    venue: str
    chain: str
    kind: StrategyKind
    opened_at: datetime
    entry_value_usd: float
    status: RecordStatus = RecordStatus.OPEN
    closed_at: datetime | None = None
    exit_value_usd: float = 0.0
    realized_pnl_usd: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
