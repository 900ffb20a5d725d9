"""Liquidity-position rebalancer — close, re-fund, reopen around current price."""
from __future__ import annotations

import logging

from ..config import PolicyConfig
from ..interfaces.repository import PositionRepository
from ..models import LiquidityPosition, StrategyKind
from ..results import ErrorKind, OperationResult, guarded
from ..storage import record_close, record_open
from .decision import rebalance_reason
from .funding import FundingOrchestrator
from .primitives import ExecutionPrimitives

logger = logging.getLogger(__name__)


class LiquidityRebalancer:
    """Close, fund, then reopen.

    Not atomic: if funding or the reopen fails the recovered funds stay in the
    wallet and the old position id is already retired, so nothing is double
    counted.
    """

    def __init__(
        self,
        primitives: ExecutionPrimitives,
        funding: FundingOrchestrator,
        policy: PolicyConfig,
        repository: PositionRepository,
    ) -> None:
        self.primitives = primitives
        self.funding = funding
        self.policy = policy
        self.repository = repository

    async def candidates(self, venue: str) -> list[tuple[LiquidityPosition, str]]:
        adapter = self.primitives.liquidity[venue]
        prices = await self.primitives.oracle.fetch_prices()
        found = []
        for position in await adapter.get_positions(self.primitives.wallet, prices):
            reason = rebalance_reason(position, self.policy.lp_rebalance_trigger_pct)
            if reason:
                found.append((position, reason))
        return found

    @guarded("rebalance_lp")
    async def rebalance(self, venue: str, position_id: str, force: bool = False) -> OperationResult:
        prim = self.primitives
        if venue not in prim.liquidity:
            raise ValueError(f"Unknown liquidity venue '{venue}'")
        adapter = prim.liquidity[venue]
        prices = await prim.oracle.fetch_prices()
        position = await adapter.get_position(prim.wallet, position_id, prices)
        if position is None:
            return OperationResult.fail(
                "rebalance_lp", venue, f"position {position_id} not found", ErrorKind.INVALID_INPUT
            )

        reason = rebalance_reason(position, self.policy.lp_rebalance_trigger_pct)
        if reason is None and not force:
            logger.info(
                "LP #%s %s in range at %.1f%% utilisation; no rebalance",
                position_id,
                position.label,
                position.range_utilisation_pct,
            )
            amounts = {"position_id": position_id, "action": "none"}
            if prim.dry_run:
                return OperationResult.simulated("rebalance_lp", venue, amounts)
            return OperationResult.ok("rebalance_lp", venue, None, amounts)
        logger.info("Rebalancing LP #%s %s: %s", position_id, position.label, reason or "forced")

        closed = await prim.close_lp(venue, position_id)
        if not closed.success:
            if closed.unconfirmed:
                return OperationResult.pending("rebalance_lp", venue, closed.transaction_id, f"close: {closed.error}")
            return OperationResult.fail(
                "rebalance_lp",
                venue,
                f"close failed: {closed.error}",
                closed.error_kind or ErrorKind.VENUE_ERROR,
                transaction_id=closed.transaction_id,
            )

        recovered_usd = float(closed.amounts.get("value_usd", 0.0))
        amount0 = float(closed.amounts.get("amount0", 0.0))
        amount1 = float(closed.amounts.get("amount1", 0.0))
        if not closed.dry_run:
            await record_close(self.repository, position_id, recovered_usd)

        def incomplete(step: str, failed: OperationResult) -> OperationResult:
            message = (
                f"closed #{position_id} and recovered ${recovered_usd:,.2f} "
                f"({amount0:.6f} {position.token0.symbol} + {amount1:.6f} {position.token1.symbol}); "
                f"{step} failed: {failed.error}; funds remain in wallet"
            )
            logger.error("LP rebalance on %s incomplete: %s", venue, message)
            if failed.unconfirmed:
                return OperationResult.pending("rebalance_lp", venue, failed.transaction_id, message)
            return OperationResult.fail(
                "rebalance_lp",
                venue,
                message,
                ErrorKind.PARTIAL_FAILURE,
                violation=failed.violation,
                transaction_id=closed.transaction_id,
                amounts={"closed_position_id": position_id, "recovered_usd": recovered_usd},
            )

        # A position closed out of range comes back one-sided; funding swaps it
        # back to a two-sided split sized to what was recovered.
        funded = await self.funding.ensure_funding(venue, position.pool_address, deploy_usd=recovered_usd)
        if not funded.success:
            return incomplete("funding", funded)

        opened = await prim.open_lp(
            venue,
            position.pool_address,
            float(funded.amounts["amount0"]),
            float(funded.amounts["amount1"]),
            range_width_pct=self.policy.lp_range_width_pct,
        )
        if not opened.success:
            return incomplete("reopen", opened)

        new_id = opened.amounts.get("position_id")
        deployed_usd = float(opened.amounts.get("value_usd", 0.0))
        if new_id and not opened.dry_run:
            await record_open(
                self.repository,
                str(new_id),
                venue,
                adapter.chain,
                StrategyKind.LIQUIDITY,
                deployed_usd,
                pool=position.pool_address,
                replaces=position_id,
            )

        amounts = {
            "closed_position_id": position_id,
            "position_id": new_id,
            "recovered_usd": recovered_usd,
            "deployed_usd": deployed_usd,
            "funding_steps": funded.amounts.get("steps", []),
            "tick_lower": opened.amounts.get("tick_lower"),
            "tick_upper": opened.amounts.get("tick_upper"),
            "reason": reason or "forced",
        }
        logger.info(
            "LP #%s re-centred as #%s ($%.2f recovered, $%.2f deployed)",
            position_id,
            new_id or "?",
            recovered_usd,
            deployed_usd,
        )
        if prim.dry_run:
            return OperationResult.simulated("rebalance_lp", venue, amounts)
        return OperationResult.ok("rebalance_lp", venue, opened.transaction_id, amounts)
