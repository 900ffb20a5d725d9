"""Treasury engine — wires config into adapters, services and the scheduler."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..chains.evm import EvmClient, TransactionSubmitter
from ..config import AppConfig
from ..interfaces.notifier import Notifier
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.repository import PositionRepository
from ..models import PortfolioSnapshot, StrategyKind, Suggestion, SuggestionKind
from ..notifications import WebhookNotifier
from ..oracles import PythOracle
from ..protocols.aggregator import AggregatorClient
from ..protocols.amm import ConcentratedLiquidityAdapter
from ..protocols.lending import LendingMarketAdapter
from ..protocols.perps import PerpHedgeAdapter
from ..protocols.staking import LiquidStakingAdapter
from ..results import ErrorKind, OperationResult
from ..storage import InMemoryPositionRepository, YamlPositionRepository, record_close, record_open
from ..wallet import WalletSigner
from .decision import analyse_rebalance
from .funding import FundingOrchestrator
from .leverage import LeverageLoopController
from .lp_rebalancer import LiquidityRebalancer
from .portfolio import PortfolioAggregator
from .primitives import ExecutionPrimitives
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

# Registry of venue adapter factories keyed by venue type.
_VENUE_FACTORIES: dict[str, Any] = {
    "lending": lambda name, cfg, app, signer: LendingMarketAdapter(
        name, cfg, app.policy, app.price_oracle.stable_symbols
    ),
    "amm": lambda name, cfg, app, signer: ConcentratedLiquidityAdapter(
        name, cfg, app.policy, app.chains[cfg.chain].chain_id
    ),
    "perps": lambda name, cfg, app, signer: PerpHedgeAdapter(name, cfg, signer),
    "staking": lambda name, cfg, app, signer: LiquidStakingAdapter(name, cfg),
}


class TreasuryEngine:
    """Facade over the portfolio view, decision engine and strategy operations."""

    def __init__(
        self,
        config: AppConfig,
        repository: PositionRepository | None = None,
        oracle: PriceOracle | None = None,
    ) -> None:
        self._config = config
        engine_cfg = config.engine
        self.dry_run = engine_cfg.dry_run
        self.wallet = engine_cfg.wallet_address

        # Key material is read once per process.
        self._signer: WalletSigner | None = None
        if engine_cfg.private_key:
            self._signer = WalletSigner(engine_cfg.private_key)

        # Build chain clients and, when live, one submitter per chain
        self._chain_clients: dict[str, EvmClient] = {}
        self._submitters: dict[str, TransactionSubmitter] = {}
        for chain_name, chain_cfg in config.chains.items():
            client = EvmClient(chain_name, chain_cfg)
            self._chain_clients[chain_name] = client
            if self._signer is not None and not self.dry_run:
                self._submitters[chain_name] = TransactionSubmitter(
                    client,
                    self._signer,
                    max_polls=chain_cfg.confirmation_polls,
                    poll_interval=chain_cfg.confirmation_interval,
                )

        # Build venue adapters
        self._adapters: dict[str, dict[str, Any]] = {t: {} for t in _VENUE_FACTORIES}
        for venue_name, venue_cfg in config.venues.items():
            factory = _VENUE_FACTORIES.get(venue_cfg.type)
            if factory:
                self._adapters[venue_cfg.type][venue_name] = factory(
                    venue_name, venue_cfg, config, self._signer
                )
            else:
                logger.warning("No adapter factory for venue type '%s'", venue_cfg.type)

        self._oracle: PriceOracle = oracle or PythOracle(config.price_oracle)
        self._aggregator = AggregatorClient(config.aggregator)

        if repository is not None:
            self.repository = repository
        elif engine_cfg.state_file:
            self.repository = YamlPositionRepository(engine_cfg.state_file)
        else:
            self.repository = InMemoryPositionRepository()

        # Build notifiers
        self._notifiers: list[Notifier] = []
        if config.notifications.webhook.enabled:
            self._notifiers.append(WebhookNotifier(config.notifications.webhook))

        lst_symbols: dict[str, tuple[str, ...]] = {}
        for adapter in self._adapters["staking"].values():
            lst_symbols[adapter.chain] = (*lst_symbols.get(adapter.chain, ()), adapter.lst_symbol)

        self.primitives = ExecutionPrimitives(
            wallet=self.wallet,
            policy=config.policy,
            chains=config.chains,
            chain_clients=self._chain_clients,
            submitters=self._submitters,
            oracle=self._oracle,
            lending=self._adapters["lending"],
            liquidity=self._adapters["amm"],
            hedges=self._adapters["perps"],
            staking=self._adapters["staking"],
            aggregator=self._aggregator,
            dry_run=self.dry_run,
        )
        self.portfolio = PortfolioAggregator(
            wallet=self.wallet,
            chains=config.chains,
            chain_clients=self._chain_clients,
            oracle=self._oracle,
            repository=self.repository,
            lending=self._adapters["lending"],
            liquidity=self._adapters["amm"],
            hedges=self._adapters["perps"],
            lst_symbols=lst_symbols,
        )
        self.funding = FundingOrchestrator(self.primitives, config.aggregator, config.policy)
        self.leverage = LeverageLoopController(self.primitives, config.policy)
        self.lp_rebalancer = LiquidityRebalancer(self.primitives, self.funding, config.policy, self.repository)
        self.scheduler = Scheduler(self.run_cycle, config.scheduler, alert=self._send_alert)

        if self.dry_run:
            logger.info("Engine running in DRY RUN mode; no transactions will be submitted")

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    async def _send_log(self, message: str, silent: bool = True) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    async def _report(self, result: OperationResult, reason: str = "") -> OperationResult:
        """Log every executed action; alert the operator on anything but success."""
        if result.success:
            logger.info("%s%s", result.describe(), f" ({reason})" if reason else "")
            return result
        icon = "⏳" if result.unconfirmed else "⚠️"
        message = (
            f"{icon} {result.operation} on {result.venue}\n"
            f"\n"
            f"{result.describe()}\n"
            + (f"Reason: {reason}\n" if reason else "")
            + (f"Tx: {result.transaction_id}\n" if result.transaction_id else "")
            + f"\n{self._now_str()} UTC"
        )
        logger.warning(result.describe())
        await self._send_alert(message, subject=f"{icon} Treasury action not completed")
        return result

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_portfolio_snapshot(self) -> PortfolioSnapshot:
        return await self.portfolio.build_snapshot()

    def analyse_rebalance(self, snapshot: PortfolioSnapshot) -> list[Suggestion]:
        return analyse_rebalance(
            snapshot,
            self._config.policy,
            self._config.venues,
            self._config.aggregator.funding_source_chain,
        )

    def get_scheduler_status(self) -> dict[str, Any]:
        return self.scheduler.status()

    # ------------------------------------------------------------------
    # Strategy operations
    # ------------------------------------------------------------------

    async def supply(self, venue: str, symbol: str, amount: float) -> OperationResult:
        return await self._report(await self.primitives.supply(venue, symbol, amount))

    async def withdraw(self, venue: str, symbol: str, amount: float) -> OperationResult:
        return await self._report(await self.primitives.withdraw(venue, symbol, amount))

    async def stake(self, venue: str, amount: float) -> OperationResult:
        return await self._report(await self.primitives.stake(venue, amount))

    async def open_lp(
        self, venue: str, pool_address: str, deploy_usd: float | None = None
    ) -> OperationResult:
        """Fund both sides of ``pool_address`` then mint a centred position."""
        funded = await self.funding.ensure_funding(venue, pool_address, deploy_usd)
        if not funded.success:
            return await self._report(funded)
        opened = await self.primitives.open_lp(
            venue,
            pool_address,
            float(funded.amounts["amount0"]),
            float(funded.amounts["amount1"]),
        )
        position_id = opened.amounts.get("position_id")
        if opened.success and position_id and not opened.dry_run:
            await record_open(
                self.repository,
                str(position_id),
                venue,
                self.primitives.liquidity[venue].chain,
                StrategyKind.LIQUIDITY,
                float(opened.amounts.get("value_usd", 0.0)),
                pool=pool_address,
            )
        return await self._report(opened, ", ".join(funded.amounts.get("steps", [])))

    async def close_lp(self, venue: str, position_id: str) -> OperationResult:
        closed = await self.primitives.close_lp(venue, position_id)
        if closed.success and not closed.dry_run:
            await record_close(self.repository, position_id, float(closed.amounts.get("value_usd", 0.0)))
        return await self._report(closed)

    async def rebalance_lp(self, venue: str, position_id: str, force: bool = False) -> OperationResult:
        return await self._report(await self.lp_rebalancer.rebalance(venue, position_id, force))

    async def loop(self, venue: str, target_ltv: float) -> OperationResult:
        return await self._report(await self.leverage.loop(venue, target_ltv))

    async def unwind(self, venue: str) -> OperationResult:
        return await self._report(await self.leverage.unwind(venue))

    async def open_hedge(
        self, venue: str, coin: str, notional_usd: float, leverage: float = 2.0
    ) -> OperationResult:
        return await self._report(await self.primitives.open_hedge(venue, coin, notional_usd, leverage))

    async def close_hedge(self, venue: str, coin: str, fraction: float = 1.0) -> OperationResult:
        return await self._report(await self.primitives.close_hedge(venue, coin, fraction))

    def venues_of(self, venue_type: str) -> list[str]:
        return list(self._adapters.get(venue_type, {}))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def execute_suggestion(self, suggestion: Suggestion) -> OperationResult | None:
        """Carry out a suggestion; None for kinds that need a human decision."""
        params = suggestion.params
        prim = self.primitives
        if suggestion.kind is SuggestionKind.DEPOSIT:
            result = await prim.supply(suggestion.venue, params["symbol"], float(params["amount"]))
        elif suggestion.kind is SuggestionKind.STAKE:
            result = await prim.stake(suggestion.venue, float(params["amount"]))
        elif suggestion.kind is SuggestionKind.LP_REBALANCE:
            result = await self.lp_rebalancer.rebalance(suggestion.venue, str(params["position_id"]))
        elif suggestion.kind is SuggestionKind.REDUCE_HEDGE:
            result = await prim.close_hedge(suggestion.venue, params["coin"], float(params["fraction"]))
        elif suggestion.kind is SuggestionKind.BRIDGE:
            from_chain, to_chain = params["from_chain"], params["to_chain"]
            source = self._config.chains[from_chain].stable
            target = self._config.chains[to_chain].stable
            if source is None or target is None:
                result = OperationResult.fail(
                    "bridge", from_chain, "no stable token configured", ErrorKind.INVALID_INPUT
                )
            else:
                # Stable-to-stable, so the USD amount is the token amount.
                result = await prim.bridge(from_chain, to_chain, source, target, suggestion.amount_usd)
        else:
            return None
        return await self._report(result, suggestion.reason)

    async def run_cycle(self) -> list[OperationResult]:
        """Snapshot → suggestions → serial execution of auto-executable kinds.

        Raises when no data source could be read so the scheduler counts the
        cycle as failed.
        """
        self.primitives.reset_simulation()
        snapshot = await self.get_portfolio_snapshot()
        if snapshot.sources_ok == 0 and snapshot.errors:
            raise RuntimeError(f"All data sources failed: {'; '.join(snapshot.errors)}")

        suggestions = self.analyse_rebalance(snapshot)
        for suggestion in suggestions:
            logger.info(
                "[%s] %s: %s (%s)",
                suggestion.priority.value.upper(),
                suggestion.kind.value,
                suggestion.action,
                suggestion.reason,
            )

        auto = set(self._config.scheduler.auto_execute)
        results: list[OperationResult] = []
        for suggestion in suggestions:
            if suggestion.kind.value not in auto:
                continue
            result = await self.execute_suggestion(suggestion)
            if result is not None:
                results.append(result)

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Cycle done: $%.2f portfolio, %d suggestions, %d/%d actions succeeded%s",
            snapshot.total_portfolio_usd,
            len(suggestions),
            succeeded,
            len(results),
            " (dry run)" if self.dry_run else "",
        )
        if snapshot.closed_externally:
            await self._send_log(
                "🔎 Positions closed outside the engine: "
                + ", ".join(snapshot.closed_externally)
                + f"\n\n{self._now_str()} UTC",
                silent=False,
            )
        return results
