"""Command-line interface for the treasury engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from .config import load_config
from .logging_setup import configure_logging
from .models import PortfolioSnapshot, Suggestion
from .results import OperationResult
from .services import TreasuryEngine


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="treasury-engine",
        description="Cross-protocol treasury rebalancing engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("snapshot", help="Print the current portfolio snapshot")
    sub.add_parser("analyse", help="Print ranked rebalance suggestions")
    sub.add_parser("run", help="Run the scheduler until stopped or tripped")
    sub.add_parser("cycle", help="Run one forced cycle, ignoring the circuit breaker")
    sub.add_parser("status", help="Print scheduler status")

    loop_parser = sub.add_parser("loop", help="Lever up a lending venue to a target LTV")
    loop_parser.add_argument("target", type=float, help="Target LTV, e.g. 0.6")
    loop_parser.add_argument("--venue", default=None, help="Lending venue (default: first configured)")

    unwind_parser = sub.add_parser("unwind", help="Unwind a leveraged lending position")
    unwind_parser.add_argument("--venue", default=None, help="Lending venue (default: first configured)")

    deposit_parser = sub.add_parser("deposit", help="Supply an asset to a lending venue")
    deposit_parser.add_argument("symbol")
    deposit_parser.add_argument("amount", type=float)
    deposit_parser.add_argument("--venue", default=None, help="Lending venue (default: first configured)")

    withdraw_parser = sub.add_parser("withdraw", help="Withdraw an asset from a lending venue")
    withdraw_parser.add_argument("symbol")
    withdraw_parser.add_argument("amount", type=float)
    withdraw_parser.add_argument("--venue", default=None, help="Lending venue (default: first configured)")

    stake_parser = sub.add_parser("stake", help="Stake native currency into a liquid-staking venue")
    stake_parser.add_argument("amount", type=float)
    stake_parser.add_argument("--venue", default=None, help="Staking venue (default: first configured)")

    open_lp_parser = sub.add_parser("open-lp", help="Fund and open a liquidity position")
    open_lp_parser.add_argument("pool", help="Pool address")
    open_lp_parser.add_argument("usd", type=float, nargs="?", default=None, help="USD to deploy")
    open_lp_parser.add_argument("--venue", default=None, help="AMM venue (default: first configured)")

    close_lp_parser = sub.add_parser("close-lp", help="Close a liquidity position")
    close_lp_parser.add_argument("position_id")
    close_lp_parser.add_argument("--venue", default=None, help="AMM venue (default: first configured)")

    rebalance_parser = sub.add_parser("rebalance-lp", help="Re-centre a liquidity position")
    rebalance_parser.add_argument("position_id")
    rebalance_parser.add_argument("--venue", default=None, help="AMM venue (default: first configured)")
    rebalance_parser.add_argument("--force", action="store_true", help="Rebalance even if in range")

    open_hedge_parser = sub.add_parser("open-hedge", help="Open a short hedge")
    open_hedge_parser.add_argument("coin")
    open_hedge_parser.add_argument("usd", type=float, help="Notional in USD")
    open_hedge_parser.add_argument("--leverage", type=int, default=2)
    open_hedge_parser.add_argument("--venue", default=None, help="Perps venue (default: first configured)")

    close_hedge_parser = sub.add_parser("close-hedge", help="Close (part of) a short hedge")
    close_hedge_parser.add_argument("coin")
    close_hedge_parser.add_argument("--fraction", type=float, default=1.0)
    close_hedge_parser.add_argument("--venue", default=None, help="Perps venue (default: first configured)")

    return parser


def _venue(engine: TreasuryEngine, venue_type: str, requested: str | None) -> str:
    if requested:
        return requested
    venues = engine.venues_of(venue_type)
    if not venues:
        print(f"No {venue_type} venue configured", file=sys.stderr)
        sys.exit(1)
    return venues[0]


def _print_snapshot(snapshot: PortfolioSnapshot) -> None:
    print(f"📊 Portfolio · {snapshot.timestamp:%Y-%m-%d %H:%M:%S} UTC")
    print()
    print(f"Total: ${snapshot.total_portfolio_usd:,.2f}")
    print(f"  Wallet: ${snapshot.total_wallet_usd:,.2f} ({snapshot.cash_reserve_pct:.1f}% cash)")
    print(f"  Deployed: ${snapshot.total_deployed_usd:,.2f}")
    print(f"  PnL: ${snapshot.unrealized_pnl_usd:+,.2f} unrealized · ${snapshot.realized_pnl_usd:+,.2f} realized")
    for balance in snapshot.chains:
        print(
            f"━━ {balance.chain.upper()} ━━ {balance.native:.4f} {balance.native_symbol} · "
            f"{balance.stable:,.2f} {balance.stable_symbol} · ${balance.total_usd:,.2f}"
        )
    for strategy in snapshot.strategies:
        print(
            f"  {strategy.name}: ${strategy.value_usd:,.2f} ({strategy.allocation_pct:.1f}%) · {strategy.details}"
        )
    for error in snapshot.errors:
        print(f"⚠️ {error}")
    for position_id in snapshot.closed_externally:
        print(f"🔎 {position_id} closed outside the engine")


def _print_suggestions(suggestions: list[Suggestion]) -> None:
    if not suggestions:
        print("✅ Nothing to do")
        return
    for s in suggestions:
        print(f"[{s.priority.value.upper()}] {s.action}")
        print(f"    {s.reason}")


def _print_result(result: OperationResult) -> None:
    print(("✅ " if result.success else "❌ ") + result.describe())
    if result.amounts:
        print(json.dumps(result.amounts, indent=2, default=str))


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    engine = TreasuryEngine(config)

    result: OperationResult | None = None
    if args.command == "snapshot":
        _print_snapshot(await engine.get_portfolio_snapshot())
    elif args.command == "analyse":
        snapshot = await engine.get_portfolio_snapshot()
        _print_suggestions(engine.analyse_rebalance(snapshot))
    elif args.command == "run":
        try:
            await engine.scheduler.run()
        finally:
            print(json.dumps(engine.get_scheduler_status()))
    elif args.command == "cycle":
        ok = await engine.scheduler.force_cycle()
        print(json.dumps(engine.get_scheduler_status()))
        if not ok:
            sys.exit(1)
    elif args.command == "status":
        print(json.dumps(engine.get_scheduler_status()))
    elif args.command == "loop":
        result = await engine.loop(_venue(engine, "lending", args.venue), args.target)
    elif args.command == "unwind":
        result = await engine.unwind(_venue(engine, "lending", args.venue))
    elif args.command == "deposit":
        result = await engine.supply(_venue(engine, "lending", args.venue), args.symbol.upper(), args.amount)
    elif args.command == "withdraw":
        result = await engine.withdraw(_venue(engine, "lending", args.venue), args.symbol.upper(), args.amount)
    elif args.command == "stake":
        result = await engine.stake(_venue(engine, "staking", args.venue), args.amount)
    elif args.command == "open-lp":
        result = await engine.open_lp(_venue(engine, "amm", args.venue), args.pool, args.usd)
    elif args.command == "close-lp":
        result = await engine.close_lp(_venue(engine, "amm", args.venue), args.position_id)
    elif args.command == "rebalance-lp":
        result = await engine.rebalance_lp(_venue(engine, "amm", args.venue), args.position_id, args.force)
    elif args.command == "open-hedge":
        result = await engine.open_hedge(
            _venue(engine, "perps", args.venue), args.coin.upper(), args.usd, args.leverage
        )
    elif args.command == "close-hedge":
        result = await engine.close_hedge(_venue(engine, "perps", args.venue), args.coin.upper(), args.fraction)
    else:
        build_parser().print_help()
        sys.exit(1)

    if result is not None:
        _print_result(result)
        if not result.success:
            sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    asyncio.run(_run(args))
