"""Portfolio aggregator — one consistent snapshot across chains and venues."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from ..config import ChainConfig
from ..interfaces.chain import ChainClient
from ..interfaces.position_reader import (
    HedgePositionReader,
    LendingPositionReader,
    LiquidityPositionReader,
)
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.repository import PositionRepository
from ..models import (
    AssetDetail,
    ChainBalance,
    HedgePosition,
    LendingPosition,
    LiquidityPosition,
    PortfolioSnapshot,
    PositionRecord,
    RecordStatus,
    StrategyAllocation,
    StrategyKind,
)

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


class PortfolioAggregator:
    """Fans out to every reader in parallel; a failing source never sinks the scan."""

    def __init__(
        self,
        wallet: str,
        chains: dict[str, ChainConfig],
        chain_clients: dict[str, ChainClient],
        oracle: PriceOracle,
        repository: PositionRepository,
        lending: dict[str, LendingPositionReader] | None = None,
        liquidity: dict[str, LiquidityPositionReader] | None = None,
        hedges: dict[str, HedgePositionReader] | None = None,
        lst_symbols: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self.wallet = wallet
        self._chains = chains
        self._clients = chain_clients
        self._oracle = oracle
        self._repository = repository
        self._lending = lending or {}
        self._liquidity = liquidity or {}
        self._hedges = hedges or {}
        # chain → liquid-staking token symbols held as wallet balances
        self._lst_symbols = lst_symbols or {}

    # ------------------------------------------------------------------
    # Per-source readers
    # ------------------------------------------------------------------

    async def _chain_balance(self, name: str, prices: dict[str, float]) -> ChainBalance:
        cfg = self._chains[name]
        client = self._clients[name]
        native = await client.get_native_balance(self.wallet) / 10**NATIVE_DECIMALS
        native_price = prices.get(cfg.native_symbol, 0.0)

        stable_symbol, stable_amount = "", 0.0
        if cfg.stable:
            stable_symbol = cfg.stable.symbol
            raw = await client.get_token_balance(cfg.stable.address, self.wallet)
            stable_amount = raw / 10**cfg.stable.decimals

        other: list[AssetDetail] = []
        staked: list[AssetDetail] = []
        lsts = self._lst_symbols.get(name, ())
        for token in (cfg.wrapped_native, *cfg.tokens):
            if token is None or token.symbol == stable_symbol:
                continue
            raw = await client.get_token_balance(token.address, self.wallet)
            if raw <= 0:
                continue
            amount = raw / 10**token.decimals
            price = prices.get(token.symbol, 0.0)
            detail = AssetDetail(
                symbol=token.symbol,
                amount=amount,
                price=price,
                usd_value=amount * price,
                address=token.address,
            )
            (staked if token.symbol in lsts else other).append(detail)

        return ChainBalance(
            chain=name,
            native_symbol=cfg.native_symbol,
            native=native,
            native_usd=native * native_price,
            stable_symbol=stable_symbol or "USDC",
            stable=stable_amount,
            stable_usd=stable_amount * prices.get(stable_symbol, 1.0),
            other=tuple(other),
            staked=tuple(staked),
        )

    async def _stable_rate(self, adapter: LendingPositionReader) -> float:
        stable = self._chains[adapter.chain].stable if adapter.chain in self._chains else None
        if stable is None:
            return 0.0
        reserve = await adapter.get_reserve(stable.symbol)
        return reserve.supply_apy if reserve else 0.0

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _lending_allocation(position: LendingPosition) -> StrategyAllocation:
        deposits = ", ".join(a.symbol for a in position.deposits) or "—"
        borrows = ", ".join(a.symbol for a in position.borrows) or "—"
        return StrategyAllocation(
            name=f"{position.venue} lending",
            kind=StrategyKind.LENDING,
            venue=position.venue,
            chain=position.chain,
            value_usd=position.net_value_usd,
            allocation_pct=0.0,
            position_id=position.position_id,
            details=f"{deposits} / {borrows} · LTV {position.loan_to_value:.1%}",
        )

    @staticmethod
    def _liquidity_allocation(position: LiquidityPosition) -> StrategyAllocation:
        return StrategyAllocation(
            name=f"{position.venue} {position.label} #{position.position_id}",
            kind=StrategyKind.LIQUIDITY,
            venue=position.venue,
            chain=position.chain,
            value_usd=position.value_usd,
            allocation_pct=0.0,
            position_id=position.position_id,
            details=(
                f"{'in' if position.in_range else 'OUT OF'} range · "
                f"utilisation {position.range_utilisation_pct:.0f}%"
            ),
        )

    @staticmethod
    def _hedge_allocation(position: HedgePosition) -> StrategyAllocation:
        return StrategyAllocation(
            name=f"{position.venue} {position.coin} short",
            kind=StrategyKind.HEDGE,
            venue=position.venue,
            chain=position.chain,
            value_usd=max(0.0, position.margin_used_usd + position.unrealized_pnl_usd),
            allocation_pct=0.0,
            unrealized_pnl_usd=position.unrealized_pnl_usd,
            position_id=position.position_id,
            details=f"{position.size:g} {position.coin} @ {position.leverage:g}x",
        )

    async def _detect_closed(
        self, live_ids: set[str], venues_read: set[str]
    ) -> tuple[list[str], list[PositionRecord]]:
        """Open records on successfully-read venues that the venue no longer reports."""
        closed: list[str] = []
        for record in await self._repository.list(status=RecordStatus.OPEN):
            if record.venue not in venues_read or record.position_id in live_ids:
                continue
            logger.warning(
                "Position %s on %s no longer reported by the venue; marking closed externally",
                record.position_id,
                record.venue,
            )
            await self._repository.upsert(
                replace(
                    record,
                    status=RecordStatus.CLOSED_EXTERNALLY,
                    closed_at=datetime.now(timezone.utc),
                )
            )
            closed.append(record.position_id)
        return closed, await self._repository.list()

    async def build_snapshot(self) -> PortfolioSnapshot:
        errors: list[str] = []
        try:
            prices = await self._oracle.fetch_prices()
        except Exception as e:
            logger.error("Price fetch failed: %s", e)
            errors.append(f"prices: {e}")
            prices = {}

        # Each branch writes only its own slot of ``results``.
        labels: list[tuple[str, str]] = []
        coros: list[Any] = []
        for name in self._chains:
            if name in self._clients:
                labels.append(("chain", name))
                coros.append(self._chain_balance(name, prices))
        for name, adapter in self._lending.items():
            labels.append(("lending", name))
            coros.append(adapter.get_position(self.wallet, prices))
            labels.append(("rate", name))
            coros.append(self._stable_rate(adapter))
        for name, adapter in self._liquidity.items():
            labels.append(("liquidity", name))
            coros.append(adapter.get_positions(self.wallet, prices))
        for name, adapter in self._hedges.items():
            labels.append(("hedge", name))
            coros.append(adapter.get_positions(self.wallet))

        results = await asyncio.gather(*coros, return_exceptions=True)

        chains: list[ChainBalance] = []
        lending: list[LendingPosition] = []
        liquidity: list[LiquidityPosition] = []
        hedges: list[HedgePosition] = []
        rates: dict[str, float] = {}
        venues_read: set[str] = set()
        sources_ok = 0
        for (kind, name), result in zip(labels, results):
            if isinstance(result, Exception):
                logger.warning("Snapshot source %s/%s failed: %s", kind, name, result)
                errors.append(f"{kind}:{name}: {result}")
                continue
            sources_ok += 1
            if kind == "chain":
                chains.append(result)
            elif kind == "rate":
                rates[name] = result
            elif kind == "lending":
                venues_read.add(name)
                if result is not None and not result.is_empty:
                    lending.append(result)
            elif kind == "liquidity":
                venues_read.add(name)
                liquidity.extend(result)
            elif kind == "hedge":
                venues_read.add(name)
                hedges.extend(result)

        allocations = [
            *(self._lending_allocation(p) for p in lending),
            *(self._liquidity_allocation(p) for p in liquidity),
            *(self._hedge_allocation(p) for p in hedges),
        ]
        live_ids = {a.position_id for a in allocations}
        closed_externally, records = await self._detect_closed(live_ids, venues_read)
        by_id = {r.position_id: r for r in records}

        # Unrealized PnL against recorded entry values where we have them.
        for i, allocation in enumerate(allocations):
            record = by_id.get(allocation.position_id)
            if allocation.kind is not StrategyKind.HEDGE and record and record.status is RecordStatus.OPEN:
                allocations[i] = replace(
                    allocation, unrealized_pnl_usd=allocation.value_usd - record.entry_value_usd
                )

        total_wallet = sum(c.total_usd for c in chains)
        total_deployed = sum(a.value_usd for a in allocations)
        total = total_wallet + total_deployed
        allocations = [
            replace(a, allocation_pct=a.value_usd / total * 100 if total > 0 else 0.0)
            for a in allocations
        ]
        snapshot = PortfolioSnapshot(
            timestamp=datetime.now(timezone.utc),
            chains=tuple(chains),
            strategies=tuple(allocations),
            lending_positions=tuple(lending),
            liquidity_positions=tuple(liquidity),
            hedge_positions=tuple(hedges),
            total_wallet_usd=total_wallet,
            total_deployed_usd=total_deployed,
            total_portfolio_usd=total,
            unrealized_pnl_usd=sum(a.unrealized_pnl_usd for a in allocations),
            realized_pnl_usd=sum(r.realized_pnl_usd for r in records if r.status is RecordStatus.CLOSED),
            cash_reserve_pct=total_wallet / total * 100 if total > 0 else 100.0,
            largest_strategy_pct=max((a.allocation_pct for a in allocations), default=0.0),
            prices=dict(prices),
            lending_rates=rates,
            errors=tuple(errors),
            closed_externally=tuple(closed_externally),
            sources_ok=sources_ok,
        )
        logger.info(
            "Snapshot: wallet $%.2f + deployed $%.2f = $%.2f (cash %.1f%%, %d strategies, %d errors)",
            total_wallet,
            total_deployed,
            total,
            snapshot.cash_reserve_pct,
            len(allocations),
            len(errors),
        )
        return snapshot
