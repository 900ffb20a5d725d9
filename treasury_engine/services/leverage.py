"""Leverage loop controller — borrow, convert, redeposit until a target LTV.

The loop is a small state machine. Each step is strictly sequential; a
failure after the borrow triggers a compensating repay so no un-backed
borrow is left outstanding. Unwind is the mirror sequence.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import LOOP_LTV_HARD_CEILING, PolicyConfig, TokenConfig
from ..protocols.lending.parser import BORROW_CAP_HAIRCUT
from ..results import ErrorKind, OperationResult, PolicyViolation, guarded
from .primitives import ExecutionPrimitives, from_raw

logger = logging.getLogger(__name__)

TARGET_PROXIMITY = 0.95
BORROW_SAFETY_HAIRCUT = 0.90
MAX_LOOP_ITERATIONS = 6
MAX_UNWIND_STEPS = 10
# Borrows smaller than this are not worth the gas of a full iteration.
MIN_STEP_USD = 1.0
# Extra collateral withdrawn per unwind step to absorb swap slippage.
UNWIND_SLIPPAGE_BUFFER = 1.02


class LoopState(str, Enum):
    IDLE = "idle"
    BORROWING = "borrowing"
    CONVERTING = "converting"
    REDEPOSITING = "redepositing"
    DONE = "done"
    UNWINDING = "unwinding"
    HALTED = "halted"


@dataclass
class LoopBook:
    """USD view of the position, kept locally between reads."""

    deposit_usd: float
    borrow_usd: float
    steps: list[str] = field(default_factory=list)

    @property
    def ltv(self) -> float:
        return self.borrow_usd / self.deposit_usd if self.deposit_usd > 0 else 0.0

    def record(self, result: OperationResult) -> None:
        self.steps.append(result.describe())


class LeverageLoopController:
    def __init__(self, primitives: ExecutionPrimitives, policy: PolicyConfig) -> None:
        self.primitives = primitives
        self.policy = policy
        self.state = LoopState.IDLE

    def _transition(self, venue: str, state: LoopState) -> None:
        logger.debug("[%s] loop %s → %s", venue, self.state.value, state.value)
        self.state = state

    async def _book(self, venue: str) -> tuple[LoopBook, float]:
        """Current deposit/borrow values and the liquidation threshold."""
        adapter = self.primitives.lending[venue]
        prices = await self.primitives.oracle.fetch_prices()
        position = await adapter.get_position(self.primitives.wallet, prices)
        if position is None:
            return LoopBook(0.0, 0.0), self.policy.assumed_liquidation_ltv
        return (
            LoopBook(position.deposit_value_usd, position.borrow_value_usd),
            position.liquidation_threshold,
        )

    def _tokens(self, venue: str) -> tuple[str, TokenConfig, TokenConfig]:
        adapter = self.primitives.lending[venue]
        cfg = adapter.config
        collateral = self.primitives.find_token(adapter.chain, cfg.collateral_symbol)
        debt = self.primitives.find_token(adapter.chain, cfg.debt_symbol)
        if collateral is None or debt is None:
            raise ValueError(
                f"{venue}: collateral {cfg.collateral_symbol} / debt {cfg.debt_symbol} "
                f"not configured as tokens on {adapter.chain}"
            )
        return adapter.chain, collateral, debt

    async def _convert(
        self, venue: str, chain: str, source: TokenConfig, target: TokenConfig, amount: float
    ) -> OperationResult:
        """Debt → collateral: stake into the primary LST, otherwise swap.

        Borrowed wrapped native is unwrapped first so it can be staked.
        """
        staking_venue = self.primitives.lending[venue].config.staking_venue
        staking = self.primitives.staking.get(staking_venue)
        chain_cfg = self.primitives.chain_config(chain)
        wrapped = chain_cfg.wrapped_native
        is_native = source.symbol == chain_cfg.native_symbol
        is_wrapped = wrapped is not None and source.symbol == wrapped.symbol
        if staking is None or staking.lst_symbol != target.symbol or not (is_native or is_wrapped):
            return await self.primitives.swap(chain, source, target, amount)
        if is_wrapped:
            unwrapped = await self.primitives.unwrap(chain, amount)
            if not unwrapped.success:
                return unwrapped
        staked = await self.primitives.stake(staking_venue, amount)
        if is_wrapped and not staked.success and not staked.unconfirmed:
            # Re-wrap so a compensating repay finds the debt token in the wallet.
            rewrapped = await self.primitives.wrap(chain, amount)
            if not rewrapped.success:
                logger.error("[%s] %.6f %s left unwrapped after failed stake", venue, amount, source.symbol)
        return staked

    def _finish(
        self, operation: str, venue: str, book: LoopBook, iterations: int, **extra: Any
    ) -> OperationResult:
        amounts = {
            "state": self.state.value,
            "iterations": iterations,
            "ltv": book.ltv,
            "deposit_usd": book.deposit_usd,
            "borrow_usd": book.borrow_usd,
            "steps": book.steps,
            **extra,
        }
        logger.info("[%s] %s finished in state %s at LTV %.1f%%", venue, operation, self.state.value, book.ltv * 100)
        if self.primitives.dry_run:
            return OperationResult.simulated(operation, venue, amounts)
        return OperationResult.ok(operation, venue, None, amounts)

    def _halt(
        self,
        operation: str,
        venue: str,
        book: LoopBook,
        step: OperationResult | None,
        message: str,
        kind: ErrorKind,
        violation: PolicyViolation | None = None,
    ) -> OperationResult:
        self._transition(venue, LoopState.HALTED)
        logger.error("[%s] %s halted: %s", venue, operation, message)
        if step is not None and step.unconfirmed:
            return OperationResult.pending(operation, venue, step.transaction_id, message)
        return OperationResult.fail(
            operation,
            venue,
            message,
            kind,
            violation=violation or (step.violation if step else None),
            transaction_id=step.transaction_id if step else None,
            amounts={"ltv": book.ltv, "steps": book.steps},
        )

    async def _compensate(
        self,
        venue: str,
        chain: str,
        collateral: TokenConfig,
        debt: TokenConfig,
        borrowed: float,
        converted: float,
        book: LoopBook,
    ) -> bool:
        """Best-effort repay of a borrow whose proceeds never got redeposited."""
        self._transition(venue, LoopState.UNWINDING)
        repay_amount = borrowed
        if converted > 0:
            back = await self.primitives.swap(chain, collateral, debt, converted)
            book.record(back)
            if not back.success:
                logger.error("[%s] could not convert %.6f %s back for repay", venue, converted, collateral.symbol)
                return False
            repay_amount = min(borrowed, back.amounts.get("amount_out", borrowed))
        repaid = await self.primitives.repay(venue, debt.symbol, repay_amount)
        book.record(repaid)
        return repaid.success

    async def _repay_from_wallet(
        self, venue: str, chain: str, debt: TokenConfig, debt_price: float, book: LoopBook
    ) -> OperationResult | None:
        """Repay with debt token already in the wallet; None when it holds too little."""
        held = from_raw(await self.primitives.token_balance(chain, debt.address), debt.decimals)
        amount = min(held, book.borrow_usd / debt_price)
        if amount * debt_price < MIN_STEP_USD:
            return None
        logger.info("[%s] no withdrawal headroom; repaying %.6f %s from wallet", venue, amount, debt.symbol)
        repaid = await self.primitives.repay(venue, debt.symbol, amount)
        book.record(repaid)
        if repaid.success:
            if self.primitives.dry_run:
                book.borrow_usd = max(0.0, book.borrow_usd - amount * debt_price)
            else:
                fresh, _ = await self._book(venue)
                book.deposit_usd, book.borrow_usd = fresh.deposit_usd, fresh.borrow_usd
        return repaid

    @guarded("loop")
    async def loop(self, venue: str, target_ltv: float) -> OperationResult:
        """Lever the venue's collateral up to ``target_ltv``."""
        if target_ltv > LOOP_LTV_HARD_CEILING:
            return OperationResult.policy(
                "loop",
                venue,
                PolicyViolation.TARGET_LTV_EXCEEDED,
                f"target LTV {target_ltv:.0%} exceeds hard ceiling {LOOP_LTV_HARD_CEILING:.0%}",
            )
        if target_ltv <= 0:
            return OperationResult.fail("loop", venue, "target LTV must be positive", ErrorKind.INVALID_INPUT)
        if venue not in self.primitives.lending:
            raise ValueError(f"Unknown lending venue '{venue}'")

        self.state = LoopState.IDLE
        chain, collateral, debt = self._tokens(venue)
        book, threshold = await self._book(venue)
        venue_cap = threshold * BORROW_CAP_HAIRCUT
        if book.deposit_usd <= 0:
            return OperationResult.fail("loop", venue, "no collateral deposited", ErrorKind.INSUFFICIENT_BALANCE)

        effective = min(target_ltv, self.policy.max_loop_ltv, self.policy.max_borrow_ltv, venue_cap)
        if effective < target_ltv:
            logger.info("[%s] loop target %.1f%% clamped to %.1f%%", venue, target_ltv * 100, effective * 100)

        prices = await self.primitives.oracle.fetch_prices()
        debt_price = prices.get(debt.symbol, 0.0)
        collateral_price = prices.get(collateral.symbol, 0.0)
        if debt_price <= 0 or collateral_price <= 0:
            raise ValueError(f"no price for {debt.symbol} or {collateral.symbol}")

        iterations = 0
        while iterations < MAX_LOOP_ITERATIONS:
            if book.ltv >= effective * TARGET_PROXIMITY:
                break
            headroom_usd = effective * book.deposit_usd - book.borrow_usd
            borrow_usd = headroom_usd * BORROW_SAFETY_HAIRCUT
            if borrow_usd < MIN_STEP_USD:
                break
            iterations += 1
            borrow_amount = borrow_usd / debt_price

            self._transition(venue, LoopState.BORROWING)
            borrowed = await self.primitives.borrow(venue, debt.symbol, borrow_amount)
            book.record(borrowed)
            if not borrowed.success:
                return self._halt(
                    "loop", venue, book, borrowed, f"borrow failed: {borrowed.error}",
                    borrowed.error_kind or ErrorKind.VENUE_ERROR,
                )

            self._transition(venue, LoopState.CONVERTING)
            converted = await self._convert(venue, chain, debt, collateral, borrow_amount)
            book.record(converted)
            if converted.unconfirmed:
                return self._halt("loop", venue, book, converted, "conversion unconfirmed", ErrorKind.UNCONFIRMED)
            if not converted.success:
                repaid = await self._compensate(venue, chain, collateral, debt, borrow_amount, 0.0, book)
                return self._halt(
                    "loop", venue, book, converted,
                    f"convert failed: {converted.error}; compensating repay "
                    f"{'succeeded' if repaid else 'FAILED, manual repay required'}",
                    ErrorKind.PARTIAL_FAILURE,
                )
            received = float(converted.amounts.get("amount_out", 0.0))

            self._transition(venue, LoopState.REDEPOSITING)
            deposited = await self.primitives.supply(venue, collateral.symbol, received)
            book.record(deposited)
            if deposited.unconfirmed:
                return self._halt("loop", venue, book, deposited, "redeposit unconfirmed", ErrorKind.UNCONFIRMED)
            if not deposited.success:
                repaid = await self._compensate(venue, chain, collateral, debt, borrow_amount, received, book)
                return self._halt(
                    "loop", venue, book, deposited,
                    f"redeposit failed: {deposited.error}; compensating repay "
                    f"{'succeeded' if repaid else 'FAILED, manual repay required'}",
                    ErrorKind.PARTIAL_FAILURE,
                )

            if self.primitives.dry_run:
                book.borrow_usd += borrow_usd
                book.deposit_usd += received * collateral_price
            else:
                fresh, _ = await self._book(venue)
                book.deposit_usd, book.borrow_usd = fresh.deposit_usd, fresh.borrow_usd

        self._transition(venue, LoopState.DONE)
        return self._finish("loop", venue, book, iterations, target_ltv=effective)

    @guarded("unwind")
    async def unwind(self, venue: str, max_steps: int = MAX_UNWIND_STEPS) -> OperationResult:
        """Withdraw, convert back and repay until the debt is retired."""
        if venue not in self.primitives.lending:
            raise ValueError(f"Unknown lending venue '{venue}'")
        self.state = LoopState.UNWINDING
        chain, collateral, debt = self._tokens(venue)
        book, threshold = await self._book(venue)
        # Gate on liquidation safety, not the borrow cap: a position above the
        # cap is the one that most needs unwinding.
        safe_ltv = threshold * BORROW_SAFETY_HAIRCUT

        prices = await self.primitives.oracle.fetch_prices()
        debt_price = prices.get(debt.symbol, 0.0)
        collateral_price = prices.get(collateral.symbol, 0.0)
        if debt_price <= 0 or collateral_price <= 0:
            raise ValueError(f"no price for {debt.symbol} or {collateral.symbol}")

        steps = 0
        while book.borrow_usd >= MIN_STEP_USD and steps < max_steps:
            steps += 1
            # Collateral that can leave while LTV stays under the safe limit.
            free_usd = max(0.0, book.deposit_usd - book.borrow_usd / safe_ltv) * BORROW_SAFETY_HAIRCUT
            withdraw_usd = min(book.borrow_usd * UNWIND_SLIPPAGE_BUFFER, free_usd)
            if withdraw_usd < MIN_STEP_USD:
                repaid = await self._repay_from_wallet(venue, chain, debt, debt_price, book)
                if repaid is None:
                    return self._halt(
                        "unwind", venue, book, None,
                        f"no safe withdrawal headroom at LTV {book.ltv:.1%} (limit {safe_ltv:.1%}) "
                        f"and no {debt.symbol} in wallet; add collateral or repay manually",
                        ErrorKind.POLICY_VIOLATION,
                        violation=PolicyViolation.LTV_EXCEEDED,
                    )
                if not repaid.success:
                    return self._halt(
                        "unwind", venue, book, repaid, f"repay from wallet failed: {repaid.error}",
                        repaid.error_kind or ErrorKind.VENUE_ERROR,
                    )
                continue
            withdraw_amount = withdraw_usd / collateral_price

            withdrawn = await self.primitives.withdraw(
                venue, collateral.symbol, withdraw_amount, ltv_cap=safe_ltv
            )
            book.record(withdrawn)
            if not withdrawn.success:
                return self._halt(
                    "unwind", venue, book, withdrawn, f"withdraw failed: {withdrawn.error}",
                    withdrawn.error_kind or ErrorKind.VENUE_ERROR,
                )

            swapped = await self.primitives.swap(chain, collateral, debt, withdraw_amount)
            book.record(swapped)
            if not swapped.success:
                return self._halt(
                    "unwind", venue, book, swapped,
                    f"convert failed after withdraw: {swapped.error}; "
                    f"{withdraw_amount:.6f} {collateral.symbol} left in wallet",
                    ErrorKind.PARTIAL_FAILURE,
                )
            received = float(swapped.amounts.get("amount_out", 0.0))
            owed = book.borrow_usd / debt_price

            repaid = await self.primitives.repay(venue, debt.symbol, min(received, owed))
            book.record(repaid)
            if not repaid.success:
                return self._halt(
                    "unwind", venue, book, repaid,
                    f"repay failed: {repaid.error}; {received:.6f} {debt.symbol} left in wallet",
                    ErrorKind.PARTIAL_FAILURE,
                )

            if self.primitives.dry_run:
                book.deposit_usd -= withdraw_usd
                book.borrow_usd = max(0.0, book.borrow_usd - min(received, owed) * debt_price)
            else:
                fresh, _ = await self._book(venue)
                book.deposit_usd, book.borrow_usd = fresh.deposit_usd, fresh.borrow_usd

        if book.borrow_usd >= MIN_STEP_USD:
            self._transition(venue, LoopState.HALTED)
            return OperationResult.fail(
                "unwind",
                venue,
                f"debt ${book.borrow_usd:,.2f} remains after {steps} steps",
                ErrorKind.PARTIAL_FAILURE,
                amounts={"ltv": book.ltv, "steps": book.steps},
            )
        self._transition(venue, LoopState.DONE)
        return self._finish("unwind", venue, book, steps)
