"""Funding orchestrator — acquires both sides of a pool before an LP open.

Fallback chain, each step only when the previous ones left a side short:
existing balance → bridge stable in → swap into the missing side → wrap
native. A final check refuses to proceed when one side is negligible.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import AggregatorConfig, PolicyConfig, TokenConfig
from ..models import Token
from ..protocols.aggregator import BRIDGE_DONE, BRIDGE_FAILED, NATIVE_TOKEN
from ..protocols.amm import parser as amm_parser
from ..results import ErrorKind, OperationResult, guarded
from .primitives import ExecutionPrimitives, from_raw

logger = logging.getLogger(__name__)

# A side within this share of its target counts as funded (swap slippage).
FUNDED_TOLERANCE = 0.95
# Below this share of the other side, a two-sided open would revert.
NEGLIGIBLE_SIDE_RATIO = 0.05


def _as_token_config(token: Token) -> TokenConfig:
    return TokenConfig(symbol=token.symbol, address=token.address, decimals=token.decimals)


class FundingOrchestrator:
    def __init__(
        self,
        primitives: ExecutionPrimitives,
        aggregator: AggregatorConfig,
        policy: PolicyConfig,
    ) -> None:
        self.primitives = primitives
        self.aggregator_config = aggregator
        self.policy = policy

    async def _balance(self, chain: str, token: TokenConfig) -> float:
        return from_raw(await self.primitives.token_balance(chain, token.address), token.decimals)

    async def _await_bridge(self, tx_hash: str, from_chain_id: int) -> bool | None:
        """True when delivered, False when failed, None when still pending."""
        aggregator = self.primitives.aggregator
        for _ in range(self.aggregator_config.bridge_status_polls):
            status = await aggregator.bridge_status(tx_hash, from_chain_id)
            if status == BRIDGE_DONE:
                return True
            if status == BRIDGE_FAILED:
                return False
            await asyncio.sleep(self.aggregator_config.bridge_status_interval)
        return None

    @guarded("ensure_funding")
    async def ensure_funding(
        self, venue: str, pool_address: str, deploy_usd: float | None = None
    ) -> OperationResult:
        """Make sure the wallet holds both pool tokens for ``deploy_usd``.

        With no ``deploy_usd`` the whole pair value (plus any idle stable) is
        split evenly. On success ``amounts`` carries ``amount0``/``amount1``
        sized for the open and the list of ``steps`` taken.
        """
        prim = self.primitives
        if venue not in prim.liquidity:
            raise ValueError(f"Unknown liquidity venue '{venue}'")
        adapter = prim.liquidity[venue]
        chain = adapter.chain
        chain_cfg = prim.chain_config(chain)
        state = await adapter.get_pool(pool_address)
        prices = await prim.oracle.fetch_prices()
        p0, p1 = amm_parser.pair_prices(state, prices)
        if p0 <= 0 or p1 <= 0:
            return OperationResult.fail(
                "ensure_funding", venue, f"no price for {state.pool.label}", ErrorKind.VENUE_ERROR
            )

        token0 = _as_token_config(state.pool.token0)
        token1 = _as_token_config(state.pool.token1)
        pool_symbols = {token0.symbol, token1.symbol}
        stable = chain_cfg.stable if chain_cfg.stable and chain_cfg.stable.symbol not in pool_symbols else None
        stable_price = prices.get(stable.symbol, 1.0) if stable else 1.0

        held: dict[str, float] = {token0.symbol: await self._balance(chain, token0)}
        held[token1.symbol] = await self._balance(chain, token1)
        held["stable"] = await self._balance(chain, stable) if stable else 0.0
        steps: list[str] = []

        async def refresh(step: str) -> None:
            steps.append(step)
            held[token0.symbol] = await self._balance(chain, token0)
            held[token1.symbol] = await self._balance(chain, token1)
            held["stable"] = await self._balance(chain, stable) if stable else 0.0

        def values() -> tuple[float, float]:
            return held[token0.symbol] * p0, held[token1.symbol] * p1

        def abort(step: str, result: OperationResult) -> OperationResult:
            if result.unconfirmed:
                return OperationResult.pending("ensure_funding", venue, result.transaction_id, f"{step}: {result.error}")
            return OperationResult.fail(
                "ensure_funding",
                venue,
                f"{step} failed: {result.error}",
                result.error_kind or ErrorKind.VENUE_ERROR,
                violation=result.violation,
                transaction_id=result.transaction_id,
            )

        def per_side() -> float:
            if deploy_usd:
                return deploy_usd / 2
            v0, v1 = values()
            return (v0 + v1 + held["stable"] * stable_price) / 2

        def short(value: float) -> bool:
            return value < per_side() * FUNDED_TOLERANCE

        # (1) existing balance
        v0, v1 = values()
        if not short(v0) and not short(v1) and per_side() > 0:
            logger.info("Funding for %s already held: $%.2f / $%.2f", state.pool.label, v0, v1)
        else:
            # (2) bridge the stable reference asset in when the pair is empty
            source = self.aggregator_config.funding_source_chain
            if v0 == 0 and v1 == 0 and source and source != chain and chain_cfg.stable:
                source_stable = prim.chain_config(source).stable
                amount = deploy_usd or self.policy.bridge_topup_usd
                if source_stable is None:
                    return OperationResult.fail(
                        "ensure_funding", venue, f"no stable configured on {source}", ErrorKind.INVALID_INPUT
                    )
                result = await prim.bridge(source, chain, source_stable, chain_cfg.stable, amount)
                if not result.success:
                    return abort("bridge", result)
                if not result.dry_run:
                    delivered = await self._await_bridge(
                        result.transaction_id, await prim.client(source).get_chain_id()
                    )
                    if delivered is None:
                        return OperationResult.pending(
                            "ensure_funding", venue, result.transaction_id, "bridge still in flight"
                        )
                    if not delivered:
                        return OperationResult.fail(
                            "ensure_funding",
                            venue,
                            "bridge reported FAILED",
                            ErrorKind.VENUE_ERROR,
                            transaction_id=result.transaction_id,
                        )
                await refresh("bridge")

            # (3) swap into whichever side is still short
            for side, price, other, other_price in (
                (token0, p0, token1, p1),
                (token1, p1, token0, p0),
            ):
                value = held[side.symbol] * price
                if not short(value):
                    continue
                need_usd = per_side() - value
                if stable and held["stable"] * stable_price > 0:
                    source_token, src_price = stable, stable_price
                    spend_usd = min(need_usd, held["stable"] * stable_price)
                else:
                    source_token, src_price = other, other_price
                    spend_usd = min(need_usd, held[other.symbol] * other_price - per_side())
                if spend_usd <= 0:
                    continue
                amount_in = spend_usd / src_price
                result = await prim.swap(chain, source_token, side, amount_in)
                if not result.success:
                    return abort(f"swap {source_token.symbol}→{side.symbol}", result)
                await refresh(f"swap {source_token.symbol}→{side.symbol}")

            # (4) wrap native when the wrapped asset is still missing
            wrapped = chain_cfg.wrapped_native
            if wrapped and wrapped.symbol in pool_symbols:
                price = p0 if wrapped.symbol == token0.symbol else p1
                value = held[wrapped.symbol] * price
                if short(value):
                    native = from_raw(await prim.token_balance(chain, NATIVE_TOKEN), 18)
                    available = native - self.policy.gas_reserve_native
                    amount = min((per_side() - value) / price, available)
                    if amount > 0:
                        result = await prim.wrap(chain, amount)
                        if not result.success:
                            return abort("wrap", result)
                        await refresh("wrap")

        # (5) refuse a two-sided open that would revert
        v0, v1 = values()
        if min(v0, v1) <= 0 or min(v0, v1) < NEGLIGIBLE_SIDE_RATIO * max(v0, v1):
            return OperationResult.fail(
                "ensure_funding",
                venue,
                f"insufficient funding for {state.pool.label}: "
                f"{token0.symbol} ${v0:,.2f} vs {token1.symbol} ${v1:,.2f}",
                ErrorKind.INSUFFICIENT_BALANCE,
            )

        target = per_side()
        amounts: dict[str, Any] = {
            "pool": state.pool.address,
            "amount0": min(held[token0.symbol], target / p0),
            "amount1": min(held[token1.symbol], target / p1),
            "value0_usd": v0,
            "value1_usd": v1,
            "steps": steps,
        }
        logger.info(
            "Funded %s: %.6f %s + %.6f %s (steps: %s)",
            state.pool.label,
            amounts["amount0"],
            token0.symbol,
            amounts["amount1"],
            token1.symbol,
            ", ".join(steps) or "none",
        )
        if prim.dry_run:
            return OperationResult.simulated("ensure_funding", venue, amounts)
        return OperationResult.ok("ensure_funding", venue, None, amounts)
