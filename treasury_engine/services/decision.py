"""Rebalance decision engine — snapshot + policy → ranked suggestions.

Pure functions only: nothing here reads a venue or moves capital. Callers
decide whether to act on what comes back.
"""
from __future__ import annotations

from ..config import PolicyConfig, VenueConfig
from ..models import (
    PRIORITY_RANK,
    LiquidityPosition,
    PortfolioSnapshot,
    Priority,
    Suggestion,
    SuggestionKind,
)

# A chain is under-used while its strategies hold less than this share of their caps.
UNDERUSED_CAPACITY_SHARE = 0.5


def rebalance_reason(position: LiquidityPosition, trigger_pct: float) -> str | None:
    """Why ``position`` should be re-centred, or None if it is fine."""
    if not position.in_range:
        return (
            f"price {position.current_price:.6g} outside range "
            f"[{position.lower_price:.6g}, {position.upper_price:.6g}]"
        )
    utilisation = position.range_utilisation_pct
    if utilisation < trigger_pct:
        return f"range utilisation {utilisation:.1f}% below {trigger_pct:.0f}%"
    return None


def _headroom(snapshot: PortfolioSnapshot, name: str, venue: VenueConfig) -> float:
    if venue.max_allocation_usd <= 0:
        return float("inf")
    return max(0.0, venue.max_allocation_usd - snapshot.deployed_in(name))


def _cash_reserve(snapshot: PortfolioSnapshot, policy: PolicyConfig) -> list[Suggestion]:
    if snapshot.total_portfolio_usd <= 0 or snapshot.total_deployed_usd <= 0:
        return []
    if snapshot.cash_reserve_pct >= policy.cash_reserve_floor_pct:
        return []
    shortfall = snapshot.total_portfolio_usd * policy.cash_reserve_floor_pct / 100 - snapshot.total_wallet_usd
    largest = max(snapshot.strategies, key=lambda s: s.value_usd, default=None)
    return [
        Suggestion(
            priority=Priority.HIGH,
            kind=SuggestionKind.REDUCE_EXPOSURE,
            action=f"Withdraw ~${shortfall:,.0f} from {largest.name if largest else 'deployed strategies'}",
            reason=(
                f"Cash reserve {snapshot.cash_reserve_pct:.1f}% is below the "
                f"{policy.cash_reserve_floor_pct:.0f}% floor"
            ),
            venue=largest.venue if largest else "",
            chain=largest.chain if largest else "",
            amount_usd=shortfall,
        )
    ]


def _hedges_at_risk(snapshot: PortfolioSnapshot) -> list[Suggestion]:
    out = []
    for hedge in snapshot.hedge_positions:
        if not hedge.at_risk:
            continue
        distance = abs(hedge.mark_price - hedge.liquidation_price) / hedge.mark_price * 100
        out.append(
            Suggestion(
                priority=Priority.HIGH,
                kind=SuggestionKind.REDUCE_HEDGE,
                action=f"Reduce {hedge.coin} short on {hedge.venue} by half",
                reason=(
                    f"Mark ${hedge.mark_price:,.2f} is {distance:.1f}% from liquidation "
                    f"${hedge.liquidation_price:,.2f}"
                ),
                venue=hedge.venue,
                chain=hedge.chain,
                amount_usd=hedge.notional_usd / 2,
                params={"coin": hedge.coin, "fraction": 0.5},
            )
        )
    return out


def _idle_stable(
    snapshot: PortfolioSnapshot, policy: PolicyConfig, venues: dict[str, VenueConfig]
) -> list[Suggestion]:
    out = []
    for balance in snapshot.chains:
        if balance.stable_usd <= policy.idle_stable_threshold_usd:
            continue
        candidates = [
            (snapshot.lending_rates.get(name, 0.0), name, venue)
            for name, venue in venues.items()
            if venue.type == "lending"
            and venue.chain == balance.chain
            and snapshot.lending_rates.get(name, 0.0) > 0
            and _headroom(snapshot, name, venue) > 0
        ]
        if not candidates:
            continue
        apy, name, venue = max(candidates, key=lambda c: c[0])
        amount = min(balance.stable_usd / 2, _headroom(snapshot, name, venue))
        stable_price = snapshot.prices.get(balance.stable_symbol, 1.0) or 1.0
        out.append(
            Suggestion(
                priority=Priority.MEDIUM,
                kind=SuggestionKind.DEPOSIT,
                action=f"Deposit ~${amount:,.0f} {balance.stable_symbol} into {name}",
                reason=(
                    f"${balance.stable_usd:,.0f} idle {balance.stable_symbol} on {balance.chain}; "
                    f"{name} pays {apy * 100:.2f}% APY"
                ),
                venue=name,
                chain=balance.chain,
                amount_usd=amount,
                params={"symbol": balance.stable_symbol, "amount": amount / stable_price},
            )
        )
    return out


def _bridge_topups(
    snapshot: PortfolioSnapshot,
    policy: PolicyConfig,
    venues: dict[str, VenueConfig],
    funding_source_chain: str,
) -> list[Suggestion]:
    if not funding_source_chain:
        return []
    source = snapshot.chain(funding_source_chain)
    if source is None or source.stable_usd < policy.bridge_topup_usd:
        return []
    out = []
    for balance in snapshot.chains:
        if balance.chain == funding_source_chain or balance.total_usd >= policy.low_working_balance_usd:
            continue
        capped = [
            (name, v) for name, v in venues.items() if v.chain == balance.chain and v.max_allocation_usd > 0
        ]
        capacity = sum(v.max_allocation_usd for _, v in capped)
        deployed = sum(snapshot.deployed_in(name) for name, _ in capped)
        if capacity <= 0 or deployed >= capacity * UNDERUSED_CAPACITY_SHARE:
            continue
        out.append(
            Suggestion(
                priority=Priority.MEDIUM,
                kind=SuggestionKind.BRIDGE,
                action=f"Bridge ${policy.bridge_topup_usd:,.0f} {source.stable_symbol} "
                f"{funding_source_chain} → {balance.chain}",
                reason=(
                    f"{balance.chain} working balance ${balance.total_usd:,.2f} is below "
                    f"${policy.low_working_balance_usd:,.0f} with ${capacity - deployed:,.0f} unused strategy capacity"
                ),
                chain=balance.chain,
                amount_usd=policy.bridge_topup_usd,
                params={"from_chain": funding_source_chain, "to_chain": balance.chain},
            )
        )
    return out


def _lp_ranges(snapshot: PortfolioSnapshot, policy: PolicyConfig) -> list[Suggestion]:
    out = []
    for position in snapshot.liquidity_positions:
        reason = rebalance_reason(position, policy.lp_rebalance_trigger_pct)
        if reason is None:
            continue
        out.append(
            Suggestion(
                priority=Priority.MEDIUM,
                kind=SuggestionKind.LP_REBALANCE,
                action=f"Re-centre {position.label} #{position.position_id} on {position.venue}",
                reason=reason,
                venue=position.venue,
                chain=position.chain,
                amount_usd=position.value_usd,
                params={"position_id": position.position_id},
            )
        )
    return out


def _idle_native(
    snapshot: PortfolioSnapshot, policy: PolicyConfig, venues: dict[str, VenueConfig]
) -> list[Suggestion]:
    out = []
    for balance in snapshot.chains:
        if balance.native <= policy.idle_native_threshold:
            continue
        staking = next(
            (name for name, v in venues.items() if v.type == "staking" and v.chain == balance.chain),
            None,
        )
        if staking is None or balance.liquid_staking_usd >= balance.native_usd / 2:
            continue
        amount = balance.native / 2
        out.append(
            Suggestion(
                priority=Priority.LOW,
                kind=SuggestionKind.STAKE,
                action=f"Stake {amount:.4f} {balance.native_symbol} via {staking}",
                reason=(
                    f"{balance.native:.4f} idle {balance.native_symbol} on {balance.chain}; "
                    f"liquid-staked holdings only ${balance.liquid_staking_usd:,.0f}"
                ),
                venue=staking,
                chain=balance.chain,
                amount_usd=balance.native_usd / 2,
                params={"amount": amount},
            )
        )
    return out


def _concentration(snapshot: PortfolioSnapshot, policy: PolicyConfig) -> list[Suggestion]:
    if snapshot.largest_strategy_pct <= policy.max_strategy_allocation_pct:
        return []
    largest = max(snapshot.strategies, key=lambda s: s.allocation_pct)
    excess = (largest.allocation_pct - policy.max_strategy_allocation_pct) / 100 * snapshot.total_portfolio_usd
    return [
        Suggestion(
            priority=Priority.LOW,
            kind=SuggestionKind.DIVERSIFY,
            action=f"Move ~${excess:,.0f} out of {largest.name}",
            reason=(
                f"{largest.name} is {largest.allocation_pct:.1f}% of the portfolio "
                f"(ceiling {policy.max_strategy_allocation_pct:.0f}%)"
            ),
            venue=largest.venue,
            chain=largest.chain,
            amount_usd=excess,
        )
    ]


def analyse_rebalance(
    snapshot: PortfolioSnapshot,
    policy: PolicyConfig,
    venues: dict[str, VenueConfig],
    funding_source_chain: str = "",
) -> list[Suggestion]:
    """Ranked suggestions, highest priority first, larger amounts first within a rank."""
    suggestions = [
        *_cash_reserve(snapshot, policy),
        *_hedges_at_risk(snapshot),
        *_idle_stable(snapshot, policy, venues),
        *_bridge_topups(snapshot, policy, venues, funding_source_chain),
        *_lp_ranges(snapshot, policy),
        *_idle_native(snapshot, policy, venues),
        *_concentration(snapshot, policy),
    ]
    return sorted(suggestions, key=lambda s: (PRIORITY_RANK[s.priority], -s.amount_usd))
