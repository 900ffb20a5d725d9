"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Absolute bounds that configuration can never widen.
LOOP_LTV_HARD_CEILING = 0.80
HEDGE_LEVERAGE_HARD_CAP = 5.0
MAX_SWAP_PRICE_IMPACT_PCT = 3.0

VENUE_TYPES = ("lending", "amm", "perps", "staking")

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    dry_run: bool = True
    wallet_address: str = ""
    private_key: str = ""
    state_file: str = "positions.yaml"


@dataclass(frozen=True)
class SchedulerConfig:
    interval_minutes: float = 15.0
    jitter_pct: float = 10.0
    initial_delay_seconds: float = 30.0
    max_consecutive_errors: int = 5
    auto_execute: tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyConfig:
    max_hedge_leverage: float = 3.0
    max_borrow_ltv: float = 0.60
    max_loop_ltv: float = 0.65
    assumed_liquidation_ltv: float = 0.75
    max_strategy_allocation_pct: float = 35.0
    cash_reserve_floor_pct: float = 10.0
    idle_stable_threshold_usd: float = 100.0
    idle_native_threshold: float = 2.0
    low_working_balance_usd: float = 20.0
    bridge_topup_usd: float = 100.0
    min_pool_tvl_usd: float = 200_000.0
    min_pool_apy_pct: float = 0.5
    lp_range_width_pct: float = 20.0
    lp_rebalance_trigger_pct: float = 20.0
    slippage_bps: int = 100
    deadline_seconds: int = 600
    gas_reserve_native: float = 0.005


@dataclass(frozen=True)
class TokenConfig:
    symbol: str = ""
    address: str = ""
    decimals: int = 18


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int = 0
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    native_symbol: str = "ETH"
    wrapped_native: TokenConfig | None = None
    stable: TokenConfig | None = None
    tokens: tuple[TokenConfig, ...] = ()
    confirmation_polls: int = 60
    confirmation_interval: float = 1.0


@dataclass(frozen=True)
class VenueConfig:
    type: str = ""
    chain: str = ""
    api_url: str = ""
    api_timeout: int = 20
    max_allocation_usd: float = 0.0
    market: str = ""
    spender: str = ""
    collateral_symbol: str = ""
    debt_symbol: str = ""
    staking_venue: str = ""
    default_stable_apy: float = 0.0
    seed: tuple[dict[str, Any], ...] = ()
    registry_ttl_seconds: int = 3600


@dataclass(frozen=True)
class AggregatorConfig:
    api_url: str = "https://li.quest/v1"
    api_timeout: int = 30
    funding_source_chain: str = ""
    bridge_status_polls: int = 60
    bridge_status_interval: float = 10.0


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CoinGeckoConfig:
    enabled: bool = False
    api_url: str = "https://api.coingecko.com/api/v3/simple/price"
    ids: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)
    coingecko: CoinGeckoConfig = field(default_factory=CoinGeckoConfig)
    cache_ttl_seconds: float = 30.0
    stale_after_seconds: float = 60.0
    token_aliases: dict[str, str] = field(default_factory=dict)
    stable_symbols: tuple[str, ...] = ("USDC", "USDT", "DAI")


@dataclass(frozen=True)
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    timeout: int = 10


@dataclass(frozen=True)
class NotificationsConfig:
    webhook: WebhookConfig = field(default_factory=WebhookConfig)


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    chains: dict[str, ChainConfig] = field(default_factory=dict)
    venues: dict[str, VenueConfig] = field(default_factory=dict)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _build_engine(raw: dict[str, Any]) -> EngineConfig:
    return EngineConfig(
        dry_run=_as_bool(raw.get("dry_run", True)),
        wallet_address=raw.get("wallet_address", ""),
        private_key=raw.get("private_key", ""),
        state_file=raw.get("state_file", "positions.yaml"),
    )


def _build_scheduler(raw: dict[str, Any]) -> SchedulerConfig:
    return SchedulerConfig(
        interval_minutes=float(raw.get("interval_minutes", 15.0)),
        jitter_pct=float(raw.get("jitter_pct", 10.0)),
        initial_delay_seconds=float(raw.get("initial_delay_seconds", 30.0)),
        max_consecutive_errors=int(raw.get("max_consecutive_errors", 5)),
        auto_execute=tuple(raw.get("auto_execute", [])),
    )


def _build_policy(raw: dict[str, Any]) -> PolicyConfig:
    defaults = PolicyConfig()
    values: dict[str, Any] = {}
    for name, default in vars(defaults).items():
        if name in raw:
            values[name] = type(default)(raw[name])
    return PolicyConfig(**values)


def _build_token(raw: dict[str, Any] | None) -> TokenConfig | None:
    if not raw:
        return None
    return TokenConfig(
        symbol=str(raw.get("symbol", "")).upper(),
        address=raw.get("address", ""),
        decimals=int(raw.get("decimals", 18)),
    )


def _build_chains(raw: dict[str, Any]) -> dict[str, ChainConfig]:
    chains: dict[str, ChainConfig] = {}
    for name, cfg in raw.items():
        tokens = tuple(
            t for t in (_build_token(item) for item in cfg.get("tokens", [])) if t
        )
        chains[name] = ChainConfig(
            chain_id=int(cfg.get("chain_id", 0)),
            rpc_endpoints=tuple(cfg.get("rpc_endpoints", [])),
            rpc_timeout=int(cfg.get("rpc_timeout", 30)),
            native_symbol=str(cfg.get("native_symbol", "ETH")).upper(),
            wrapped_native=_build_token(cfg.get("wrapped_native")),
            stable=_build_token(cfg.get("stable")),
            tokens=tokens,
            confirmation_polls=int(cfg.get("confirmation_polls", 60)),
            confirmation_interval=float(cfg.get("confirmation_interval", 1.0)),
        )
    return chains


def _build_venues(raw: dict[str, Any]) -> dict[str, VenueConfig]:
    venues: dict[str, VenueConfig] = {}
    for name, cfg in raw.items():
        venues[name] = VenueConfig(
            type=cfg.get("type", ""),
            chain=cfg.get("chain", ""),
            api_url=cfg.get("api_url", ""),
            api_timeout=int(cfg.get("api_timeout", 20)),
            max_allocation_usd=float(cfg.get("max_allocation_usd", 0.0)),
            market=cfg.get("market", ""),
            spender=cfg.get("spender", ""),
            collateral_symbol=str(cfg.get("collateral_symbol", "")).upper(),
            debt_symbol=str(cfg.get("debt_symbol", "")).upper(),
            staking_venue=cfg.get("staking_venue", ""),
            default_stable_apy=float(cfg.get("default_stable_apy", 0.0)),
            seed=tuple(cfg.get("seed", [])),
            registry_ttl_seconds=int(cfg.get("registry_ttl_seconds", 3600)),
        )
    return venues


def _build_aggregator(raw: dict[str, Any]) -> AggregatorConfig:
    return AggregatorConfig(
        api_url=raw.get("api_url", AggregatorConfig.api_url),
        api_timeout=int(raw.get("api_timeout", 30)),
        funding_source_chain=raw.get("funding_source_chain", ""),
        bridge_status_polls=int(raw.get("bridge_status_polls", 60)),
        bridge_status_interval=float(raw.get("bridge_status_interval", 10.0)),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    cg_raw = raw.get("coingecko", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
        coingecko=CoinGeckoConfig(
            enabled=_as_bool(cg_raw.get("enabled", False)),
            api_url=cg_raw.get("api_url", CoinGeckoConfig.api_url),
            ids=dict(cg_raw.get("ids", {})),
        ),
        cache_ttl_seconds=float(raw.get("cache_ttl_seconds", 30.0)),
        stale_after_seconds=float(raw.get("stale_after_seconds", 60.0)),
        token_aliases={
            str(k).upper(): str(v).upper()
            for k, v in raw.get("token_aliases", {}).items()
        },
        stable_symbols=tuple(
            str(s).upper() for s in raw.get("stable_symbols", ["USDC", "USDT", "DAI"])
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    wh = raw.get("webhook", {})
    return NotificationsConfig(
        webhook=WebhookConfig(
            enabled=_as_bool(wh.get("enabled", False)),
            url=wh.get("url", ""),
            timeout=int(wh.get("timeout", 10)),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    try:
        cfg = AppConfig(
            engine=_build_engine(raw.get("engine", {})),
            scheduler=_build_scheduler(raw.get("scheduler", {})),
            policy=_build_policy(raw.get("policy", {})),
            chains=_build_chains(raw.get("chains", {})),
            venues=_build_venues(raw.get("venues", {})),
            aggregator=_build_aggregator(raw.get("aggregator", {})),
            price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
            notifications=_build_notifications(raw.get("notifications", {})),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration value: {e}") from e

    _validate(cfg)
    logger.info(
        "Configuration loaded from %s (dry_run=%s, %d venues)",
        config_path,
        cfg.engine.dry_run,
        len(cfg.venues),
    )
    return cfg


def _check_ratio(name: str, value: float) -> None:
    if not 0.0 < value < 1.0:
        raise ValueError(f"policy.{name} must be between 0 and 1, got {value}")


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    engine = cfg.engine
    if not engine.wallet_address:
        raise ValueError("engine.wallet_address must be configured")
    if not engine.dry_run and not engine.private_key:
        raise ValueError("engine.private_key is required when dry_run is disabled")

    policy = cfg.policy
    _check_ratio("max_borrow_ltv", policy.max_borrow_ltv)
    _check_ratio("max_loop_ltv", policy.max_loop_ltv)
    _check_ratio("assumed_liquidation_ltv", policy.assumed_liquidation_ltv)
    if policy.max_loop_ltv > LOOP_LTV_HARD_CEILING:
        raise ValueError(
            f"policy.max_loop_ltv {policy.max_loop_ltv} exceeds hard ceiling "
            f"{LOOP_LTV_HARD_CEILING}"
        )
    if not 1.0 <= policy.max_hedge_leverage <= HEDGE_LEVERAGE_HARD_CAP:
        raise ValueError(
            f"policy.max_hedge_leverage must be between 1 and "
            f"{HEDGE_LEVERAGE_HARD_CAP}, got {policy.max_hedge_leverage}"
        )
    # Perpetual venues only accept whole-number leverage.
    if not float(policy.max_hedge_leverage).is_integer():
        raise ValueError(
            f"policy.max_hedge_leverage must be a whole number, got {policy.max_hedge_leverage}"
        )
    for name in (
        "max_strategy_allocation_pct",
        "cash_reserve_floor_pct",
        "lp_range_width_pct",
        "lp_rebalance_trigger_pct",
    ):
        value = getattr(policy, name)
        if not 0.0 < value <= 100.0:
            raise ValueError(f"policy.{name} must be in (0, 100], got {value}")
    if policy.slippage_bps <= 0 or policy.slippage_bps > 1000:
        raise ValueError(f"policy.slippage_bps must be in (0, 1000], got {policy.slippage_bps}")
    for name in ("idle_stable_threshold_usd", "bridge_topup_usd", "min_pool_tvl_usd"):
        if getattr(policy, name) < 0:
            raise ValueError(f"policy.{name} must not be negative")

    if cfg.scheduler.max_consecutive_errors < 1:
        raise ValueError("scheduler.max_consecutive_errors must be at least 1")
    if cfg.scheduler.interval_minutes <= 0:
        raise ValueError("scheduler.interval_minutes must be positive")

    for chain_name, chain in cfg.chains.items():
        if not chain.rpc_endpoints:
            raise ValueError(f"Chain '{chain_name}' has no rpc_endpoints")

    for venue_name, venue in cfg.venues.items():
        if venue.type not in VENUE_TYPES:
            raise ValueError(
                f"Venue '{venue_name}' has unknown type '{venue.type}'"
            )
        if venue.type != "perps" and venue.chain not in cfg.chains:
            raise ValueError(
                f"Venue '{venue_name}' references unknown chain '{venue.chain}'"
            )
        if not venue.api_url:
            raise ValueError(f"Venue '{venue_name}' has no api_url")
        if venue.max_allocation_usd < 0:
            raise ValueError(f"Venue '{venue_name}' has a negative allocation cap")
        if venue.staking_venue and venue.staking_venue not in cfg.venues:
            raise ValueError(
                f"Venue '{venue_name}' references unknown staking venue "
                f"'{venue.staking_venue}'"
            )

    source = cfg.aggregator.funding_source_chain
    if source and source not in cfg.chains:
        raise ValueError(f"aggregator.funding_source_chain '{source}' is not configured")
