"""Execution primitives — one capital-moving operation per call.

Every primitive validates its own preconditions, honours dry-run by stopping
right before the state-changing submission, and reports the outcome as an
``OperationResult``. Expected failures never raise.
"""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any

from ..chains.evm import TransactionSubmitter, TxOutcome, TxStatus
from ..chains.evm import abi
from ..config import MAX_SWAP_PRICE_IMPACT_PCT, ChainConfig, PolicyConfig, TokenConfig
from ..interfaces.chain import ChainClient
from ..interfaces.executor import (
    HedgeOperations,
    LendingOperations,
    LiquidityOperations,
    StakingOperations,
    SwapBridgeClient,
)
from ..interfaces.price_oracle import PriceOracle
from ..models import LendingPosition, LiquidityPosition, Pool, Reserve
from ..protocols.aggregator import NATIVE_TOKEN, RouteQuote
from ..protocols.amm import math as clmath
from ..protocols.amm import parser as amm_parser
from ..protocols.lending.parser import BORROW_CAP_HAIRCUT
from ..protocols.perps import parser as perps_parser
from ..results import (
    EXPECTED_ERRORS,
    ErrorKind,
    OperationResult,
    PolicyViolation,
    VenueRequestError,
    guarded,
)

logger = logging.getLogger(__name__)

# Bridges costing more than this share of the transferred value are refused.
MAX_BRIDGE_FEE_PCT = 3.0
# 18-decimal amounts passed through float can land a few wei above the raw balance.
DUST_TOLERANCE = 1e-9


def to_raw(amount: float, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_raw(amount_raw: int, decimals: int) -> float:
    return amount_raw / 10**decimals


def fit_to_balance(amount_raw: int, balance: int) -> int:
    """Trim ``amount_raw`` to ``balance`` when the shortfall is float rounding dust."""
    if balance < amount_raw <= balance + max(1, int(balance * DUST_TOLERANCE)):
        return balance
    return amount_raw


class ExecutionPrimitives:
    """Supply, withdraw, borrow, repay, LP, hedge and conversion primitives."""

    def __init__(
        self,
        wallet: str,
        policy: PolicyConfig,
        chains: dict[str, ChainConfig],
        chain_clients: dict[str, ChainClient],
        submitters: dict[str, TransactionSubmitter],
        oracle: PriceOracle,
        lending: dict[str, LendingOperations] | None = None,
        liquidity: dict[str, LiquidityOperations] | None = None,
        hedges: dict[str, HedgeOperations] | None = None,
        staking: dict[str, StakingOperations] | None = None,
        aggregator: SwapBridgeClient | None = None,
        dry_run: bool = True,
    ) -> None:
        self.wallet = wallet
        self.policy = policy
        self.dry_run = dry_run
        self._chains = chains
        self._clients = chain_clients
        self._submitters = submitters
        self.oracle = oracle
        self.lending = lending or {}
        self.liquidity = liquidity or {}
        self.hedges = hedges or {}
        self.staking = staking or {}
        self.aggregator = aggregator
        # One capital-moving submission in flight per wallet at a time.
        self._lock = asyncio.Lock()
        # Dry-run balance deltas, so chained steps see what earlier ones would have produced.
        self._simulated: dict[tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def client(self, chain: str) -> ChainClient:
        if chain not in self._clients:
            raise ValueError(f"Unknown chain '{chain}'")
        return self._clients[chain]

    def chain_config(self, chain: str) -> ChainConfig:
        if chain not in self._chains:
            raise ValueError(f"Unknown chain '{chain}'")
        return self._chains[chain]

    def find_token(self, chain: str, symbol: str) -> TokenConfig | None:
        cfg = self.chain_config(chain)
        symbol = symbol.upper()
        candidates = [cfg.stable, cfg.wrapped_native, *cfg.tokens]
        return next((t for t in candidates if t and t.symbol == symbol), None)

    async def token_balance(self, chain: str, token: str) -> int:
        """Raw wallet balance, including simulated flows when in dry-run."""
        if token.lower() == NATIVE_TOKEN:
            live = await self.client(chain).get_native_balance(self.wallet)
        else:
            live = await self.client(chain).get_token_balance(token, self.wallet)
        return max(0, live + self._simulated.get((chain, token.lower()), 0))

    def _simulate(self, chain: str, flows: list[tuple[str, int]]) -> None:
        for token, delta in flows:
            key = (chain, token.lower())
            self._simulated[key] = self._simulated.get(key, 0) + delta

    def reset_simulation(self) -> None:
        self._simulated.clear()

    def _deadline(self, deadline_seconds: int | None) -> int:
        return int(time.time()) + (deadline_seconds or self.policy.deadline_seconds)

    def _skip(self, operation: str, venue: str, detail: str, amounts: dict[str, Any]) -> OperationResult:
        logger.info("[DRY RUN] %s on %s: %s", operation, venue, detail)
        return OperationResult.simulated(operation, venue, amounts)

    @staticmethod
    def from_outcome(
        operation: str, venue: str, outcome: TxOutcome, amounts: dict[str, Any] | None = None
    ) -> OperationResult:
        if outcome.status is TxStatus.CONFIRMED:
            return OperationResult.ok(operation, venue, outcome.tx_hash, amounts)
        if outcome.status is TxStatus.UNCONFIRMED:
            return OperationResult.pending(
                operation,
                venue,
                outcome.tx_hash,
                "submitted but not confirmed; check before resubmitting",
            )
        return OperationResult.fail(
            operation,
            venue,
            "transaction reverted",
            ErrorKind.VENUE_ERROR,
            transaction_id=outcome.tx_hash,
        )

    async def _submit(self, chain: str, tx: dict[str, Any], label: str) -> TxOutcome:
        submitter = self._submitters.get(chain)
        if submitter is None:
            raise ValueError(f"No signer configured for chain '{chain}'")
        return await submitter.submit(tx, label)

    async def _approve_if_needed(
        self, chain: str, venue: str, token: str, spender: str, amount_raw: int
    ) -> OperationResult | None:
        """Submit an ERC-20 approval when the allowance is short.

        Returns a failed/unconfirmed result to abort the caller, None to proceed.
        """
        if not spender or token.lower() == NATIVE_TOKEN:
            return None
        allowance = await self.client(chain).get_allowance(token, self.wallet, spender)
        if allowance >= amount_raw:
            return None
        if self.dry_run:
            logger.info("[DRY RUN] would approve %s for %s on %s", token, spender, chain)
            return None
        tx = {"to": token, "data": abi.approve_calldata(spender, amount_raw)}
        outcome = await self._submit(chain, tx, f"approve {token}")
        if outcome.confirmed:
            return None
        return self.from_outcome("approve", venue, outcome)

    async def _send(
        self,
        operation: str,
        venue: str,
        chain: str,
        tx: dict[str, Any],
        amounts: dict[str, Any],
        approvals: list[tuple[str, str, int]] | None = None,
        flows: list[tuple[str, int]] | None = None,
    ) -> OperationResult:
        """Approvals (if any), then the single state-changing submission.

        ``flows`` are the expected raw balance deltas, applied only in dry-run.
        """
        if self.dry_run:
            for token, spender, amount_raw in approvals or []:
                await self._approve_if_needed(chain, venue, token, spender, amount_raw)
            self._simulate(chain, flows or [])
            return self._skip(operation, venue, f"{amounts}", amounts)

        async with self._lock:
            for token, spender, amount_raw in approvals or []:
                aborted = await self._approve_if_needed(chain, venue, token, spender, amount_raw)
                if aborted is not None:
                    return aborted
            outcome = await self._submit(chain, tx, f"{operation} on {venue}")
        result = self.from_outcome(operation, venue, outcome, amounts)
        logger.info(result.describe())
        return result

    # ------------------------------------------------------------------
    # Lending
    # ------------------------------------------------------------------

    def _lending(self, venue: str) -> LendingOperations:
        if venue not in self.lending:
            raise ValueError(f"Unknown lending venue '{venue}'")
        return self.lending[venue]

    async def _lending_context(
        self, venue: str, symbol: str
    ) -> tuple[LendingOperations, Reserve, LendingPosition | None, float]:
        adapter = self._lending(venue)
        reserve = await adapter.get_reserve(symbol)
        if reserve is None:
            raise ValueError(f"{venue} has no reserve for {symbol}")
        prices = await self.oracle.fetch_prices()
        position = await adapter.get_position(self.wallet, prices)
        price = prices.get(reserve.symbol, 0.0)
        if price <= 0:
            raise ValueError(f"No price for {reserve.symbol}")
        return adapter, reserve, position, price

    def _ltv_cap(self, position: LendingPosition | None) -> float:
        """Lower of the venue's safe threshold and the policy cap."""
        venue_safe = (
            position.liquidation_threshold if position else self.policy.assumed_liquidation_ltv
        ) * BORROW_CAP_HAIRCUT
        return min(venue_safe, self.policy.max_borrow_ltv)

    @guarded("supply")
    async def supply(self, venue: str, symbol: str, amount: float) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("supply", venue, "amount must be positive", ErrorKind.INVALID_INPUT)
        adapter, reserve, position, price = await self._lending_context(venue, symbol)
        value_usd = amount * price

        cap = adapter.config.max_allocation_usd
        deployed = position.net_value_usd if position else 0.0
        if cap > 0 and deployed + value_usd > cap:
            return OperationResult.policy(
                "supply",
                venue,
                PolicyViolation.ALLOCATION_CAP_EXCEEDED,
                f"${deployed + value_usd:,.2f} would exceed {venue} cap ${cap:,.2f}",
            )

        amount_raw = to_raw(amount, reserve.decimals)
        balance = await self.token_balance(adapter.chain, reserve.address)
        amount_raw = fit_to_balance(amount_raw, balance)
        if balance < amount_raw:
            return OperationResult.fail(
                "supply",
                venue,
                f"wallet holds {from_raw(balance, reserve.decimals):.6f} {symbol}, need {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )

        tx = await adapter.build_transaction("supply", self.wallet, reserve, amount_raw)
        return await self._send(
            "supply",
            venue,
            adapter.chain,
            tx,
            {"symbol": reserve.symbol, "amount": amount, "usd_value": value_usd},
            approvals=[(reserve.address, adapter.config.spender, amount_raw)],
            flows=[(reserve.address, -amount_raw)],
        )

    @guarded("withdraw")
    async def withdraw(
        self, venue: str, symbol: str, amount: float, ltv_cap: float | None = None
    ) -> OperationResult:
        """Withdraw collateral unless the projected LTV would exceed the cap.

        ``ltv_cap`` replaces the policy cap for de-risking withdrawals whose
        proceeds go straight to a repay; it is never allowed above the
        venue-safe threshold.
        """
        if amount <= 0:
            return OperationResult.fail("withdraw", venue, "amount must be positive", ErrorKind.INVALID_INPUT)
        adapter, reserve, position, price = await self._lending_context(venue, symbol)
        deposit = position.deposit(reserve.symbol) if position else None
        if deposit is None or deposit.amount < amount:
            held = deposit.amount if deposit else 0.0
            return OperationResult.fail(
                "withdraw",
                venue,
                f"deposited {held:.6f} {symbol}, cannot withdraw {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )

        if position.borrow_value_usd > 0:
            remaining = position.deposit_value_usd - amount * price
            cap = self._ltv_cap(position)
            if ltv_cap is not None:
                cap = min(ltv_cap, position.liquidation_threshold * BORROW_CAP_HAIRCUT)
            projected = position.borrow_value_usd / remaining if remaining > 0 else float("inf")
            if projected > cap:
                return OperationResult.policy(
                    "withdraw",
                    venue,
                    PolicyViolation.LTV_EXCEEDED,
                    f"projected LTV {projected:.1%} exceeds cap {cap:.1%}",
                )

        amount_raw = to_raw(amount, reserve.decimals)
        tx = await adapter.build_transaction("withdraw", self.wallet, reserve, amount_raw)
        return await self._send(
            "withdraw",
            venue,
            adapter.chain,
            tx,
            {"symbol": reserve.symbol, "amount": amount, "usd_value": amount * price},
            flows=[(reserve.address, amount_raw)],
        )

    @guarded("borrow")
    async def borrow(self, venue: str, symbol: str, amount: float) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("borrow", venue, "amount must be positive", ErrorKind.INVALID_INPUT)
        adapter, reserve, position, price = await self._lending_context(venue, symbol)
        if position is None or position.deposit_value_usd <= 0:
            return OperationResult.fail(
                "borrow", venue, "no collateral deposited", ErrorKind.INSUFFICIENT_BALANCE
            )

        cap = self._ltv_cap(position)
        projected = (position.borrow_value_usd + amount * price) / position.deposit_value_usd
        if projected > cap:
            return OperationResult.policy(
                "borrow",
                venue,
                PolicyViolation.LTV_EXCEEDED,
                f"projected LTV {projected:.1%} exceeds cap {cap:.1%}",
            )

        amount_raw = to_raw(amount, reserve.decimals)
        tx = await adapter.build_transaction("borrow", self.wallet, reserve, amount_raw)
        return await self._send(
            "borrow",
            venue,
            adapter.chain,
            tx,
            {
                "symbol": reserve.symbol,
                "amount": amount,
                "usd_value": amount * price,
                "projected_ltv": projected,
            },
            flows=[(reserve.address, amount_raw)],
        )

    @guarded("repay")
    async def repay(self, venue: str, symbol: str, amount: float) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("repay", venue, "amount must be positive", ErrorKind.INVALID_INPUT)
        adapter, reserve, position, price = await self._lending_context(venue, symbol)
        owed = position.borrow(reserve.symbol) if position else None
        if owed is None:
            return OperationResult.fail(
                "repay", venue, f"no outstanding {symbol} borrow", ErrorKind.INVALID_INPUT
            )
        amount = min(amount, owed.amount)

        amount_raw = to_raw(amount, reserve.decimals)
        balance = await self.token_balance(adapter.chain, reserve.address)
        amount_raw = fit_to_balance(amount_raw, balance)
        if balance < amount_raw:
            return OperationResult.fail(
                "repay",
                venue,
                f"wallet holds {from_raw(balance, reserve.decimals):.6f} {symbol}, need {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )

        tx = await adapter.build_transaction("repay", self.wallet, reserve, amount_raw)
        return await self._send(
            "repay",
            venue,
            adapter.chain,
            tx,
            {"symbol": reserve.symbol, "amount": amount, "usd_value": amount * price},
            approvals=[(reserve.address, adapter.config.spender, amount_raw)],
            flows=[(reserve.address, -amount_raw)],
        )

    # ------------------------------------------------------------------
    # Concentrated liquidity
    # ------------------------------------------------------------------

    def _amm(self, venue: str) -> LiquidityOperations:
        if venue not in self.liquidity:
            raise ValueError(f"Unknown liquidity venue '{venue}'")
        return self.liquidity[venue]

    @guarded("open_lp")
    async def open_lp(
        self,
        venue: str,
        pool_address: str,
        amount0: float,
        amount1: float,
        range_width_pct: float | None = None,
        slippage_bps: int | None = None,
        deadline_seconds: int | None = None,
    ) -> OperationResult:
        if amount0 < 0 or amount1 < 0 or (amount0 == 0 and amount1 == 0):
            return OperationResult.fail("open_lp", venue, "amounts must be positive", ErrorKind.INVALID_INPUT)
        adapter = self._amm(venue)
        state = await adapter.get_pool(pool_address)
        pool = state.pool
        width = range_width_pct or self.policy.lp_range_width_pct
        slippage = slippage_bps or self.policy.slippage_bps

        prices = await self.oracle.fetch_prices()
        p0, p1 = amm_parser.pair_prices(state, prices)
        value_usd = amount0 * p0 + amount1 * p1
        cap = adapter.config.max_allocation_usd
        if cap > 0:
            deployed = sum(p.value_usd for p in await adapter.get_positions(self.wallet, prices))
            if deployed + value_usd > cap:
                return OperationResult.policy(
                    "open_lp",
                    venue,
                    PolicyViolation.ALLOCATION_CAP_EXCEEDED,
                    f"${deployed + value_usd:,.2f} would exceed {venue} cap ${cap:,.2f}",
                )

        fitted = []
        for token, amount in ((pool.token0, amount0), (pool.token1, amount1)):
            balance = await self.token_balance(adapter.chain, token.address)
            raw = fit_to_balance(to_raw(amount, token.decimals), balance)
            fitted.append(raw)
            if balance < raw:
                return OperationResult.fail(
                    "open_lp",
                    venue,
                    f"wallet holds {from_raw(balance, token.decimals):.6f} {token.symbol}, "
                    f"need {from_raw(raw, token.decimals):.6f}",
                    ErrorKind.INSUFFICIENT_BALANCE,
                )
        raw0, raw1 = fitted

        tick_lower, tick_upper = clmath.ticks_for_width(
            state.price, width, pool.token0.decimals, pool.token1.decimals, pool.tick_spacing
        )
        liquidity = clmath.liquidity_for_amounts(state.tick, tick_lower, tick_upper, raw0, raw1)
        if liquidity <= 0:
            return OperationResult.fail(
                "open_lp", venue, "amounts too small to mint any liquidity", ErrorKind.INVALID_INPUT
            )
        used0, used1 = clmath.amounts_for_liquidity(state.tick, tick_lower, tick_upper, liquidity)

        tx = await adapter.build_mint(
            self.wallet,
            pool,
            tick_lower,
            tick_upper,
            raw0,
            raw1,
            clmath.slippage_min(used0, slippage),
            clmath.slippage_min(used1, slippage),
            self._deadline(deadline_seconds),
        )
        amounts: dict[str, Any] = {
            "pool": pool.address,
            "tick_lower": tick_lower,
            "tick_upper": tick_upper,
            "amount0": amount0,
            "amount1": amount1,
            "value_usd": value_usd,
        }
        result = await self._send(
            "open_lp",
            venue,
            adapter.chain,
            tx,
            amounts,
            approvals=[
                (pool.token0.address, adapter.position_manager, raw0),
                (pool.token1.address, adapter.position_manager, raw1),
            ],
            flows=[(pool.token0.address, -used0), (pool.token1.address, -used1)],
        )
        if result.success and not result.dry_run:
            receipt = await self.client(adapter.chain).get_transaction_receipt(result.transaction_id)
            token_id = abi.minted_token_id(receipt or {}, adapter.position_manager)
            if token_id is None:
                logger.warning("Mint %s confirmed but no position id in receipt", result.transaction_id)
            result = OperationResult.ok(
                "open_lp", venue, result.transaction_id, {**amounts, "position_id": token_id}
            )
        return result

    async def _read_lp(self, venue: str, position_id: str) -> LiquidityPosition | None:
        prices = await self.oracle.fetch_prices()
        return await self._amm(venue).get_position(self.wallet, position_id, prices)

    @guarded("close_lp")
    async def close_lp(
        self, venue: str, position_id: str, deadline_seconds: int | None = None
    ) -> OperationResult:
        """Decrease liquidity to zero, collect principal and fees, then burn.

        The burn is best-effort: once collect succeeds the funds are back in
        the wallet, so a failed burn is logged and the close still succeeds.
        """
        adapter = self._amm(venue)
        position = await self._read_lp(venue, position_id)
        if position is None:
            return OperationResult.fail(
                "close_lp", venue, f"position {position_id} not found", ErrorKind.INVALID_INPUT
            )

        estimated = {
            "position_id": position_id,
            "amount0": position.amount0 + position.fees0,
            "amount1": position.amount1 + position.fees1,
            "value_usd": position.value_usd,
            "fees_usd": position.fees_usd,
        }
        decrease_tx = await adapter.build_decrease_liquidity(
            self.wallet, position_id, position.liquidity, self._deadline(deadline_seconds)
        )
        if self.dry_run:
            self._simulate(
                adapter.chain,
                [
                    (position.token0.address, to_raw(estimated["amount0"], position.token0.decimals)),
                    (position.token1.address, to_raw(estimated["amount1"], position.token1.decimals)),
                ],
            )
            return self._skip("close_lp", venue, f"decrease→collect→burn #{position_id}", estimated)

        async with self._lock:
            outcome = await self._submit(adapter.chain, decrease_tx, f"decrease #{position_id}")
            if not outcome.confirmed:
                return self.from_outcome("close_lp", venue, outcome)

            collect_tx = await adapter.build_collect(self.wallet, position_id)
            collect = await self._submit(adapter.chain, collect_tx, f"collect #{position_id}")
            if not collect.confirmed:
                result = self.from_outcome("close_lp", venue, collect)
                if result.unconfirmed:
                    return result
                return OperationResult.fail(
                    "close_lp",
                    venue,
                    "liquidity removed but collect failed; retry claim_fees to recover funds",
                    ErrorKind.PARTIAL_FAILURE,
                    transaction_id=collect.tx_hash,
                )

            amounts = dict(estimated)
            collected = abi.collected_amounts(collect.receipt or {}, position_id)
            if collected is not None:
                amounts["amount0"] = from_raw(collected[0], position.token0.decimals)
                amounts["amount1"] = from_raw(collected[1], position.token1.decimals)

            try:
                burn_tx = await adapter.build_burn(self.wallet, position_id)
                burn = await self._submit(adapter.chain, burn_tx, f"burn #{position_id}")
                if not burn.confirmed:
                    logger.warning("Burn of #%s %s; liquidity already recovered", position_id, burn.status.value)
            except EXPECTED_ERRORS as e:
                logger.warning("Burn of #%s failed (non-fatal): %s", position_id, e)

        state = amm_parser.PoolState(_pool_of(position), position.current_tick, position.current_price)
        p0, p1 = amm_parser.pair_prices(state, await self.oracle.fetch_prices())
        amounts["value_usd"] = amounts["amount0"] * p0 + amounts["amount1"] * p1
        logger.info(
            "Closed LP #%s on %s: %.6f %s + %.6f %s ($%.2f)",
            position_id,
            venue,
            amounts["amount0"],
            position.token0.symbol,
            amounts["amount1"],
            position.token1.symbol,
            amounts["value_usd"],
        )
        return OperationResult.ok("close_lp", venue, collect.tx_hash, amounts)

    @guarded("claim_fees")
    async def claim_fees(self, venue: str, position_id: str) -> OperationResult:
        adapter = self._amm(venue)
        position = await self._read_lp(venue, position_id)
        if position is None:
            return OperationResult.fail(
                "claim_fees", venue, f"position {position_id} not found", ErrorKind.INVALID_INPUT
            )
        tx = await adapter.build_collect(self.wallet, position_id)
        return await self._send(
            "claim_fees",
            venue,
            adapter.chain,
            tx,
            {
                "position_id": position_id,
                "fees0": position.fees0,
                "fees1": position.fees1,
                "fees_usd": position.fees_usd,
            },
            flows=[
                (position.token0.address, to_raw(position.fees0, position.token0.decimals)),
                (position.token1.address, to_raw(position.fees1, position.token1.decimals)),
            ],
        )

    # ------------------------------------------------------------------
    # Hedging
    # ------------------------------------------------------------------

    def _perps(self, venue: str) -> HedgeOperations:
        if venue not in self.hedges:
            raise ValueError(f"Unknown hedge venue '{venue}'")
        return self.hedges[venue]

    async def _place(
        self,
        operation: str,
        venue: str,
        adapter: HedgeOperations,
        amounts: dict[str, Any],
        **order: Any,
    ) -> OperationResult:
        if self.dry_run:
            return self._skip(operation, venue, f"{order}", amounts)
        async with self._lock:
            try:
                response = await adapter.place_order(**order)
            except VenueRequestError as e:
                # The order may have reached the exchange.
                return OperationResult.pending(operation, venue, None, f"order outcome unknown: {e}")
        filled, error, fill = perps_parser.parse_order_response(response)
        if not filled:
            return OperationResult.fail(operation, venue, error, ErrorKind.VENUE_ERROR, amounts=amounts)
        amounts = {
            **amounts,
            "filled_size": float(fill.get("totalSz", 0) or 0),
            "avg_price": float(fill.get("avgPx", 0) or 0),
        }
        result = OperationResult.ok(operation, venue, str(fill.get("oid", "")), amounts)
        logger.info(result.describe())
        return result

    @guarded("open_hedge")
    async def open_hedge(
        self,
        venue: str,
        coin: str,
        notional_usd: float,
        leverage: float = 2.0,
        slippage_bps: int | None = None,
    ) -> OperationResult:
        """Open (or add to) a short hedge of ``notional_usd``."""
        if notional_usd <= 0:
            return OperationResult.fail("open_hedge", venue, "notional must be positive", ErrorKind.INVALID_INPUT)
        if not float(leverage).is_integer():
            return OperationResult.fail(
                "open_hedge", venue, f"leverage must be a whole number, got {leverage}", ErrorKind.INVALID_INPUT
            )
        if leverage < 1 or leverage > self.policy.max_hedge_leverage:
            return OperationResult.policy(
                "open_hedge",
                venue,
                PolicyViolation.LEVERAGE_EXCEEDED,
                f"leverage {leverage}x outside 1x..{self.policy.max_hedge_leverage}x",
            )
        adapter = self._perps(venue)

        cap = adapter.config.max_allocation_usd
        if cap > 0:
            existing = sum(p.notional_usd for p in await adapter.get_positions(self.wallet))
            if existing + notional_usd > cap:
                return OperationResult.policy(
                    "open_hedge",
                    venue,
                    PolicyViolation.ALLOCATION_CAP_EXCEEDED,
                    f"${existing + notional_usd:,.2f} notional would exceed {venue} cap ${cap:,.2f}",
                )

        mids = await adapter.get_mid_prices()
        mid = mids.get(coin, 0.0)
        if mid <= 0:
            return OperationResult.fail("open_hedge", venue, f"no mid price for {coin}", ErrorKind.VENUE_ERROR)
        _, sz_decimals = await adapter.get_asset(coin)
        size = perps_parser.round_size(notional_usd / mid, sz_decimals)
        if size <= 0:
            return OperationResult.fail(
                "open_hedge",
                venue,
                f"${notional_usd:.2f} is below the minimum {coin} size",
                ErrorKind.INVALID_INPUT,
            )
        slippage = (slippage_bps or self.policy.slippage_bps) / 10_000
        limit = mid * (1 - slippage)
        amounts = {"coin": coin, "side": "SHORT", "size": size, "limit_price": limit, "leverage": leverage}
        return await self._place(
            "open_hedge",
            venue,
            adapter,
            amounts,
            coin=coin,
            is_buy=False,
            size=size,
            limit_price=limit,
            reduce_only=False,
            leverage=leverage,
        )

    @guarded("close_hedge")
    async def close_hedge(
        self,
        venue: str,
        coin: str,
        fraction: float = 1.0,
        slippage_bps: int | None = None,
    ) -> OperationResult:
        if not 0 < fraction <= 1:
            return OperationResult.fail("close_hedge", venue, "fraction must be in (0, 1]", ErrorKind.INVALID_INPUT)
        adapter = self._perps(venue)
        position = next(
            (p for p in await adapter.get_positions(self.wallet) if p.coin == coin and p.side == "SHORT"),
            None,
        )
        if position is None:
            return OperationResult.fail("close_hedge", venue, f"no open {coin} hedge", ErrorKind.INVALID_INPUT)

        _, sz_decimals = await adapter.get_asset(coin)
        size = position.size if fraction >= 1 else perps_parser.round_size(position.size * fraction, sz_decimals)
        slippage = (slippage_bps or self.policy.slippage_bps) / 10_000
        limit = position.mark_price * (1 + slippage)
        amounts = {
            "coin": coin,
            "size": size,
            "limit_price": limit,
            "unrealized_pnl_usd": position.unrealized_pnl_usd * (size / position.size),
        }
        return await self._place(
            "close_hedge",
            venue,
            adapter,
            amounts,
            coin=coin,
            is_buy=True,
            size=size,
            limit_price=limit,
            reduce_only=True,
        )

    # ------------------------------------------------------------------
    # Conversions (swap, bridge, wrap, stake)
    # ------------------------------------------------------------------

    def _aggregator(self) -> SwapBridgeClient:
        if self.aggregator is None:
            raise ValueError("No swap/bridge aggregator configured")
        return self.aggregator

    @guarded("swap")
    async def swap(
        self,
        chain: str,
        from_token: TokenConfig,
        to_token: TokenConfig,
        amount: float,
        slippage_bps: int | None = None,
    ) -> OperationResult:
        """Swap via the aggregator, refusing quotes above the price-impact ceiling."""
        if amount <= 0:
            return OperationResult.fail("swap", chain, "amount must be positive", ErrorKind.INVALID_INPUT)
        amount_raw = to_raw(amount, from_token.decimals)
        balance = await self.token_balance(chain, from_token.address)
        amount_raw = fit_to_balance(amount_raw, balance)
        if balance < amount_raw:
            return OperationResult.fail(
                "swap",
                chain,
                f"wallet holds {from_raw(balance, from_token.decimals):.6f} {from_token.symbol}, need {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )

        chain_id = await self.client(chain).get_chain_id()
        quote: RouteQuote = await self._aggregator().quote_swap(
            chain_id,
            from_token.address,
            to_token.address,
            amount_raw,
            self.wallet,
            slippage_bps or self.policy.slippage_bps,
        )
        if quote.price_impact_pct > MAX_SWAP_PRICE_IMPACT_PCT:
            return OperationResult.policy(
                "swap",
                chain,
                PolicyViolation.PRICE_IMPACT_EXCEEDED,
                f"{from_token.symbol}→{to_token.symbol} price impact {quote.price_impact_pct:.2f}% "
                f"exceeds {MAX_SWAP_PRICE_IMPACT_PCT}%",
            )

        expected_out = from_raw(quote.to_amount_raw, to_token.decimals)
        amounts: dict[str, Any] = {
            "from_symbol": from_token.symbol,
            "to_symbol": to_token.symbol,
            "amount_in": amount,
            "amount_out": expected_out,
            "price_impact_pct": quote.price_impact_pct,
        }
        before = await self.token_balance(chain, to_token.address)
        result = await self._send(
            "swap",
            chain,
            chain,
            quote.transaction,
            amounts,
            approvals=[(from_token.address, quote.approval_address, amount_raw)],
            flows=[(from_token.address, -amount_raw), (to_token.address, quote.to_amount_raw)],
        )
        if result.success and not result.dry_run:
            after = await self.token_balance(chain, to_token.address)
            observed = from_raw(max(0, after - before), to_token.decimals)
            result = OperationResult.ok(
                "swap", chain, result.transaction_id, {**amounts, "amount_out": observed or expected_out}
            )
        return result

    @guarded("bridge")
    async def bridge(
        self,
        from_chain: str,
        to_chain: str,
        from_token: TokenConfig,
        to_token: TokenConfig,
        amount: float,
    ) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("bridge", from_chain, "amount must be positive", ErrorKind.INVALID_INPUT)
        amount_raw = to_raw(amount, from_token.decimals)
        balance = await self.token_balance(from_chain, from_token.address)
        amount_raw = fit_to_balance(amount_raw, balance)
        if balance < amount_raw:
            return OperationResult.fail(
                "bridge",
                from_chain,
                f"wallet holds {from_raw(balance, from_token.decimals):.6f} {from_token.symbol} "
                f"on {from_chain}, need {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )
        quote = await self._aggregator().quote_bridge(
            await self.client(from_chain).get_chain_id(),
            await self.client(to_chain).get_chain_id(),
            from_token.address,
            to_token.address,
            amount_raw,
            self.wallet,
            self.policy.slippage_bps,
        )
        if quote.from_amount_usd > 0 and quote.fee_usd > quote.from_amount_usd * MAX_BRIDGE_FEE_PCT / 100:
            return OperationResult.policy(
                "bridge",
                from_chain,
                PolicyViolation.PRICE_IMPACT_EXCEEDED,
                f"bridge fee ${quote.fee_usd:.2f} exceeds {MAX_BRIDGE_FEE_PCT}% of ${quote.from_amount_usd:.2f}",
            )
        result = await self._send(
            "bridge",
            from_chain,
            from_chain,
            quote.transaction,
            {
                "from_chain": from_chain,
                "to_chain": to_chain,
                "symbol": from_token.symbol,
                "amount": amount,
                "amount_out": from_raw(quote.to_amount_raw, to_token.decimals),
                "tool": quote.tool,
            },
            approvals=[(from_token.address, quote.approval_address, amount_raw)],
            flows=[(from_token.address, -amount_raw)],
        )
        if result.dry_run:
            self._simulate(to_chain, [(to_token.address, quote.to_amount_raw)])
        return result

    async def _check_native(self, chain: str, operation: str, amount: float) -> OperationResult | None:
        balance = from_raw(await self.token_balance(chain, NATIVE_TOKEN), 18)
        needed = amount + self.policy.gas_reserve_native
        if balance < needed:
            return OperationResult.fail(
                operation,
                chain,
                f"native balance {balance:.6f} below {needed:.6f} (amount + gas reserve)",
                ErrorKind.INSUFFICIENT_BALANCE,
            )
        return None

    @guarded("wrap")
    async def wrap(self, chain: str, amount: float) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("wrap", chain, "amount must be positive", ErrorKind.INVALID_INPUT)
        wrapped = self.chain_config(chain).wrapped_native
        if wrapped is None:
            return OperationResult.fail("wrap", chain, "no wrapped native token configured", ErrorKind.INVALID_INPUT)
        short = await self._check_native(chain, "wrap", amount)
        if short is not None:
            return short
        raw = to_raw(amount, 18)
        tx = {"to": wrapped.address, "data": abi.deposit_calldata(), "value": raw}
        return await self._send(
            "wrap",
            chain,
            chain,
            tx,
            {"symbol": wrapped.symbol, "amount": amount},
            flows=[(NATIVE_TOKEN, -raw), (wrapped.address, to_raw(amount, wrapped.decimals))],
        )

    @guarded("unwrap")
    async def unwrap(self, chain: str, amount: float) -> OperationResult:
        if amount <= 0:
            return OperationResult.fail("unwrap", chain, "amount must be positive", ErrorKind.INVALID_INPUT)
        wrapped = self.chain_config(chain).wrapped_native
        if wrapped is None:
            return OperationResult.fail("unwrap", chain, "no wrapped native token configured", ErrorKind.INVALID_INPUT)
        balance = await self.token_balance(chain, wrapped.address)
        raw = fit_to_balance(to_raw(amount, wrapped.decimals), balance)
        if balance < raw:
            return OperationResult.fail(
                "unwrap",
                chain,
                f"wallet holds {from_raw(balance, wrapped.decimals):.6f} {wrapped.symbol}, need {amount}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )
        tx = {"to": wrapped.address, "data": abi.withdraw_calldata(raw), "value": 0}
        return await self._send(
            "unwrap",
            chain,
            chain,
            tx,
            {"symbol": wrapped.symbol, "amount": from_raw(raw, wrapped.decimals)},
            flows=[(wrapped.address, -raw), (NATIVE_TOKEN, to_raw(from_raw(raw, wrapped.decimals), 18))],
        )

    @guarded("stake")
    async def stake(self, venue: str, amount: float) -> OperationResult:
        """Stake native currency into the venue's liquid-staking token."""
        if amount <= 0:
            return OperationResult.fail("stake", venue, "amount must be positive", ErrorKind.INVALID_INPUT)
        if venue not in self.staking:
            raise ValueError(f"Unknown staking venue '{venue}'")
        adapter = self.staking[venue]
        short = await self._check_native(adapter.chain, "stake", amount)
        if short is not None:
            return short
        rate = await adapter.get_exchange_rate()
        expected = amount / rate
        lst = self.find_token(adapter.chain, adapter.lst_symbol)
        before = await self.token_balance(adapter.chain, lst.address) if lst else 0

        tx = await adapter.build_stake(self.wallet, to_raw(amount, 18))
        amounts = {"symbol": adapter.lst_symbol, "amount_in": amount, "amount_out": expected}
        flows = [(NATIVE_TOKEN, -to_raw(amount, 18))]
        if lst is not None:
            flows.append((lst.address, to_raw(expected, lst.decimals)))
        result = await self._send("stake", venue, adapter.chain, tx, amounts, flows=flows)
        if result.success and not result.dry_run and lst is not None:
            after = await self.token_balance(adapter.chain, lst.address)
            observed = from_raw(max(0, after - before), lst.decimals)
            result = OperationResult.ok(
                "stake", venue, result.transaction_id, {**amounts, "amount_out": observed or expected}
            )
        return result


def _pool_of(position: LiquidityPosition) -> Pool:
    return Pool(
        address=position.pool_address,
        token0=position.token0,
        token1=position.token1,
        fee_tier=0,
        tick_spacing=1,
    )
