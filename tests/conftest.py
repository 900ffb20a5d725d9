"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from treasury_engine.config import (
    AggregatorConfig,
    AppConfig,
    ChainConfig,
    EngineConfig,
    PolicyConfig,
    PriceOracleConfig,
    PythConfig,
    SchedulerConfig,
    TokenConfig,
    VenueConfig,
)
from treasury_engine.models import (
    AssetDetail,
    HedgePosition,
    LendingPosition,
    LiquidityPosition,
    Pool,
    Reserve,
    Token,
)
from treasury_engine.protocols.aggregator import RouteQuote
from treasury_engine.protocols.amm import PoolState
from treasury_engine.protocols.amm import math as clmath
from treasury_engine.services.primitives import ExecutionPrimitives

WALLET = "0x1111111111111111111111111111111111111111"
WETH_ADDR = "0x4200000000000000000000000000000000000006"
USDC_ADDR = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
CBETH_ADDR = "0x2ae3f1ec7f1f5012cfeab0185bfc7aa3cf0dec22"
LENDING_SPENDER = "0x00000000000000000000000000000000000000aa"
POSITION_MANAGER = "0x03a520b32c04bf3beef7beb72e919cf822ed34f1"
POOL_ADDR = "0xd0b53d9277642d899df5c87a3966a349a798f224"

WETH = TokenConfig(symbol="WETH", address=WETH_ADDR, decimals=18)
USDC = TokenConfig(symbol="USDC", address=USDC_ADDR, decimals=6)
CBETH = TokenConfig(symbol="CBETH", address=CBETH_ADDR, decimals=18)

PRICES = {"ETH": 2000.0, "WETH": 2000.0, "USDC": 1.0, "CBETH": 2100.0}


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def policy() -> PolicyConfig:
    return PolicyConfig()


@pytest.fixture()
def base_chain() -> ChainConfig:
    return ChainConfig(
        chain_id=8453,
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
        native_symbol="ETH",
        wrapped_native=WETH,
        stable=USDC,
        tokens=(CBETH,),
    )


@pytest.fixture()
def lending_venue() -> VenueConfig:
    return VenueConfig(
        type="lending",
        chain="base",
        api_url="https://lending.example.com/v1",
        market="main",
        spender=LENDING_SPENDER,
        max_allocation_usd=5000.0,
        collateral_symbol="CBETH",
        debt_symbol="WETH",
    )


@pytest.fixture()
def amm_venue() -> VenueConfig:
    return VenueConfig(
        type="amm",
        chain="base",
        api_url="https://amm.example.com/v1",
        spender=POSITION_MANAGER,
        max_allocation_usd=0.0,
    )


@pytest.fixture()
def perps_venue() -> VenueConfig:
    return VenueConfig(
        type="perps",
        api_url="https://api.hyperliquid.xyz",
        max_allocation_usd=2000.0,
    )


@pytest.fixture()
def sample_app_config(
    policy: PolicyConfig,
    base_chain: ChainConfig,
    lending_venue: VenueConfig,
    amm_venue: VenueConfig,
    perps_venue: VenueConfig,
) -> AppConfig:
    return AppConfig(
        engine=EngineConfig(dry_run=True, wallet_address=WALLET, state_file=""),
        scheduler=SchedulerConfig(
            interval_minutes=1,
            initial_delay_seconds=0,
            max_consecutive_errors=5,
            auto_execute=("deposit",),
        ),
        policy=policy,
        chains={"base": base_chain},
        venues={
            "base-lending": lending_venue,
            "base-amm": amm_venue,
            "hyperliquid": perps_venue,
        },
        aggregator=AggregatorConfig(api_url="https://agg.example.com/v1"),
        price_oracle=PriceOracleConfig(
            provider="pyth",
            pyth=PythConfig(hermes_url="https://hermes.example.com", feeds={"ETH": "aaa"}),
        ),
    )


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


def _reserve(token: TokenConfig, liquidation_ltv: float = 0.75, supply_apy: float = 0.0) -> Reserve:
    return Reserve(
        symbol=token.symbol,
        address=token.address,
        decimals=token.decimals,
        liquidation_ltv=liquidation_ltv,
        borrow_cap_ltv=round(liquidation_ltv * 0.9, 6),
        supply_apy=supply_apy,
    )


@pytest.fixture()
def reserves() -> dict[str, Reserve]:
    return {
        "USDC": _reserve(USDC, 0.80, 0.10),
        "WETH": _reserve(WETH, 0.80, 0.02),
        "CBETH": _reserve(CBETH, 0.75, 0.01),
    }


def _lending_position(
    deposit_usd: float = 1000.0, borrow_usd: float = 0.0, threshold: float = 0.75
) -> LendingPosition:
    deposits = (
        AssetDetail(
            symbol="CBETH",
            amount=deposit_usd / PRICES["CBETH"],
            price=PRICES["CBETH"],
            usd_value=deposit_usd,
            address=CBETH_ADDR,
        ),
    )
    borrows = ()
    if borrow_usd:
        borrows = (
            AssetDetail(
                symbol="WETH",
                amount=borrow_usd / PRICES["WETH"],
                price=PRICES["WETH"],
                usd_value=borrow_usd,
                address=WETH_ADDR,
            ),
        )
    return LendingPosition(
        venue="base-lending",
        chain="base",
        market="main",
        deposits=deposits,
        borrows=borrows,
        liquidation_threshold=threshold,
    )


@pytest.fixture()
def sample_pool() -> Pool:
    return Pool(
        address=POOL_ADDR,
        token0=Token("WETH", WETH_ADDR, 18),
        token1=Token("USDC", USDC_ADDR, 6),
        fee_tier=500,
        tick_spacing=10,
        tvl_usd=50_000_000.0,
        apy_pct=12.5,
    )


@pytest.fixture()
def pool_state(sample_pool: Pool) -> PoolState:
    tick = clmath.human_price_to_tick(2000.0, 18, 6)
    return PoolState(pool=sample_pool, tick=tick, price=2000.0)


def _liquidity_position(
    pool: Pool,
    position_id: str = "101",
    current_price: float = 2000.0,
    lower_price: float = 1800.0,
    upper_price: float = 2200.0,
    value_usd: float = 1000.0,
    amount0: float = 0.25,
    amount1: float = 500.0,
) -> LiquidityPosition:
    return LiquidityPosition(
        position_id=position_id,
        venue="base-amm",
        chain="base",
        pool_address=pool.address,
        token0=pool.token0,
        token1=pool.token1,
        tick_lower=clmath.human_price_to_tick(lower_price, 18, 6),
        tick_upper=clmath.human_price_to_tick(upper_price, 18, 6),
        current_tick=clmath.human_price_to_tick(current_price, 18, 6),
        lower_price=lower_price,
        upper_price=upper_price,
        current_price=current_price,
        liquidity=10**15,
        amount0=amount0,
        amount1=amount1,
        value_usd=value_usd,
    )


@pytest.fixture()
def sample_hedge() -> HedgePosition:
    return HedgePosition(
        venue="hyperliquid",
        coin="ETH",
        side="SHORT",
        size=0.5,
        notional_usd=1000.0,
        entry_price=2000.0,
        mark_price=2000.0,
        leverage=2.0,
        liquidation_price=2900.0,
        unrealized_pnl_usd=0.0,
        margin_used_usd=500.0,
    )


# ---------------------------------------------------------------------------
# Mocked I/O
# ---------------------------------------------------------------------------


@pytest.fixture()
def balances() -> dict[str, int]:
    """Raw wallet balances keyed by lower-case token address ("native" for ETH)."""
    return {}


@pytest.fixture()
def chain_client(balances: dict[str, int]) -> AsyncMock:
    client = AsyncMock()
    client.chain_name = "base"
    client.get_chain_id.return_value = 8453
    client.get_native_balance.side_effect = lambda address: balances.get("native", 0)
    client.get_token_balance.side_effect = lambda token, owner: balances.get(token.lower(), 0)
    client.get_allowance.return_value = 2**256 - 1
    client.get_transaction_receipt.return_value = None
    return client


@pytest.fixture()
def oracle() -> AsyncMock:
    mock = AsyncMock()
    mock.fetch_prices.return_value = dict(PRICES)
    return mock


def _quote(
    from_token: TokenConfig,
    to_token: TokenConfig,
    amount_raw: int,
    impact_pct: float = 0.5,
    fee_usd: float = 0.1,
) -> RouteQuote:
    """Quote at oracle prices less ``impact_pct``."""
    from_usd = amount_raw / 10**from_token.decimals * PRICES[from_token.symbol]
    to_usd = from_usd * (1 - impact_pct / 100)
    to_raw = int(to_usd / PRICES[to_token.symbol] * 10**to_token.decimals)
    return RouteQuote(
        from_token=from_token.address,
        to_token=to_token.address,
        from_amount_raw=amount_raw,
        to_amount_raw=to_raw,
        to_amount_min_raw=int(to_raw * 0.99),
        from_amount_usd=from_usd,
        to_amount_usd=to_usd,
        fee_usd=fee_usd,
        tool="testdex",
        approval_address="",
        transaction={"to": "0x1231deb6f5749ef6ce6943a275a1d3e7486f4eae", "data": "0xabcdef"},
    )


_TOKENS = {t.address.lower(): t for t in (WETH, USDC, CBETH)}


@pytest.fixture()
def aggregator() -> MagicMock:
    mock = MagicMock()

    async def quote_swap(chain_id, from_token, to_token, amount_raw, wallet, slippage_bps):
        return _quote(_TOKENS[from_token.lower()], _TOKENS[to_token.lower()], amount_raw)

    mock.quote_swap = AsyncMock(side_effect=quote_swap)
    mock.quote_bridge = AsyncMock()
    mock.bridge_status = AsyncMock(return_value="DONE")
    return mock


@pytest.fixture()
def lending_adapter(lending_venue: VenueConfig, reserves: dict[str, Reserve]) -> MagicMock:
    adapter = MagicMock()
    adapter.venue_name = "base-lending"
    adapter.chain = "base"
    adapter.config = lending_venue
    adapter.get_reserve = AsyncMock(side_effect=lambda symbol: reserves.get(symbol.upper()))
    adapter.get_position = AsyncMock(return_value=_lending_position())
    adapter.build_transaction = AsyncMock(
        return_value={"to": "0x00000000000000000000000000000000000000bb", "data": "0x01"}
    )
    return adapter


@pytest.fixture()
def amm_adapter(amm_venue: VenueConfig, pool_state: PoolState) -> MagicMock:
    adapter = MagicMock()
    adapter.venue_name = "base-amm"
    adapter.chain = "base"
    adapter.config = amm_venue
    adapter.position_manager = POSITION_MANAGER
    adapter.get_pool = AsyncMock(return_value=pool_state)
    adapter.get_positions = AsyncMock(return_value=[])
    adapter.get_position = AsyncMock(return_value=None)
    for name in ("build_mint", "build_decrease_liquidity", "build_collect", "build_burn"):
        setattr(adapter, name, AsyncMock(return_value={"to": POSITION_MANAGER, "data": "0x02"}))
    return adapter


@pytest.fixture()
def perps_adapter(perps_venue: VenueConfig) -> MagicMock:
    adapter = MagicMock()
    adapter.venue_name = "hyperliquid"
    adapter.chain = perps_venue.chain
    adapter.config = perps_venue
    adapter.get_positions = AsyncMock(return_value=[])
    adapter.get_mid_prices = AsyncMock(return_value={"ETH": 2000.0})
    adapter.get_asset = AsyncMock(return_value=(1, 4))
    adapter.place_order = AsyncMock()
    return adapter


@pytest.fixture()
def make_primitives(
    policy: PolicyConfig,
    base_chain: ChainConfig,
    chain_client: AsyncMock,
    oracle: AsyncMock,
    aggregator: MagicMock,
    lending_adapter: MagicMock,
    amm_adapter: MagicMock,
    perps_adapter: MagicMock,
):
    """Factory: primitives wired to the mocked adapters."""

    def _make(dry_run: bool = True, submitter: Any = None, **overrides: Any) -> ExecutionPrimitives:
        kwargs: dict[str, Any] = {
            "wallet": WALLET,
            "policy": policy,
            "chains": {"base": base_chain},
            "chain_clients": {"base": chain_client},
            "submitters": {"base": submitter} if submitter is not None else {},
            "oracle": oracle,
            "lending": {"base-lending": lending_adapter},
            "liquidity": {"base-amm": amm_adapter},
            "hedges": {"hyperliquid": perps_adapter},
            "staking": {},
            "aggregator": aggregator,
            "dry_run": dry_run,
        }
        kwargs.update(overrides)
        return ExecutionPrimitives(**kwargs)

    return _make


@pytest.fixture()
def make_lending_position():
    return _lending_position


@pytest.fixture()
def make_liquidity_position():
    return _liquidity_position


@pytest.fixture()
def make_quote():
    return _quote


@pytest.fixture()
def tokens() -> dict[str, TokenConfig]:
    return {"WETH": WETH, "USDC": USDC, "CBETH": CBETH}


@pytest.fixture()
def wallet() -> str:
    return WALLET


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    engine:
      dry_run: true
      wallet_address: "0xTEST"
      private_key: ${TEST_TREASURY_KEY}
      state_file: positions.yaml
    scheduler:
      interval_minutes: 5
      max_consecutive_errors: 3
      auto_execute: [deposit, stake]
    policy:
      max_loop_ltv: 0.7
      slippage_bps: 50
    chains:
      base:
        chain_id: 8453
        rpc_endpoints: ["https://rpc.example.com"]
        rpc_timeout: 10
        native_symbol: eth
        wrapped_native: {symbol: weth, address: "0x4200000000000000000000000000000000000006", decimals: 18}
        stable: {symbol: usdc, address: "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", decimals: 6}
    venues:
      base-lending:
        type: lending
        chain: base
        api_url: https://lending.example.com/v1
        market: main
        max_allocation_usd: 5000
        collateral_symbol: cbeth
        debt_symbol: weth
    aggregator:
      funding_source_chain: base
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {ETH: "aaa", USDC: "bbb"}
      token_aliases: {weth: eth}
    notifications:
      webhook:
        enabled: true
        url: https://hooks.example.com/abc
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
