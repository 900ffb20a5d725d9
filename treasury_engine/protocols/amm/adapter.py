"""Concentrated-liquidity AMM adapter — pools, positions and position-manager transactions."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from ...chains.evm.abi import MAX_UINT128
from ...config import PolicyConfig, VenueConfig
from ...models import LiquidityPosition, Pool
from ...registry import PoolRegistry
from ...results import VenueNotFoundError, VenueResponseError
from ...utils.http import request_json
from . import parser
from .parser import PoolState

logger = logging.getLogger(__name__)


class ConcentratedLiquidityAdapter:
    """Uniswap-v3-style venue behind a position/pool indexing API."""

    def __init__(
        self,
        name: str,
        config: VenueConfig,
        policy: PolicyConfig,
        chain_id: int,
    ) -> None:
        self._name = name
        self._config = config
        self._chain_id = chain_id
        self._base = config.api_url.rstrip("/")
        seed = [parser.parse_pool(raw) for raw in config.seed]
        self.registry = PoolRegistry(
            name,
            self.fetch_pools,
            min_tvl_usd=policy.min_pool_tvl_usd,
            min_apy_pct=policy.min_pool_apy_pct,
            seed=seed,
            ttl_seconds=config.registry_ttl_seconds,
        )

    @property
    def venue_name(self) -> str:
        return self._name

    @property
    def chain(self) -> str:
        return self._config.chain

    @property
    def position_manager(self) -> str:
        return self._config.spender

    @property
    def config(self) -> VenueConfig:
        return self._config

    async def _get(self, path: str, **params: Any) -> Any:
        return await request_json(
            "GET",
            f"{self._base}{path}",
            params={"chainId": self._chain_id, **params},
            timeout=self._config.api_timeout,
        )

    async def fetch_pools(self) -> list[Pool]:
        payload = await self._get("/pools")
        return [parser.parse_pool(raw) for raw in payload.get("pools", []) if raw.get("address")]

    async def get_pool(self, pool_address: str) -> PoolState:
        payload = await self._get(f"/pools/{pool_address}")
        raw = payload.get("pool")
        if not raw:
            raise VenueResponseError(f"{self._name}: pool {pool_address} not found")
        return parser.parse_pool_state(raw)

    async def get_positions(
        self, wallet: str, prices: dict[str, float]
    ) -> list[LiquidityPosition]:
        try:
            payload = await self._get("/positions", owner=wallet)
        except VenueNotFoundError:
            return []

        raws = [r for r in payload.get("positions", []) if int(r.get("liquidity", 0)) > 0]
        if not raws:
            return []

        addresses = sorted({str(r.get("pool", "")).lower() for r in raws})
        states = await asyncio.gather(*(self.get_pool(a) for a in addresses))
        by_address = {s.pool.key: s for s in states}

        return [
            parser.parse_position(
                raw, by_address[str(raw.get("pool", "")).lower()], self._name, self.chain, prices
            )
            for raw in raws
        ]

    async def get_position(
        self, wallet: str, position_id: str, prices: dict[str, float]
    ) -> LiquidityPosition | None:
        for position in await self.get_positions(wallet, prices):
            if position.position_id == position_id:
                return position
        return None

    async def _build(self, kind: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = await request_json(
            "POST",
            f"{self._base}/transactions/{kind}",
            payload={"chainId": self._chain_id, **body},
            timeout=self._config.api_timeout,
        )
        tx = payload.get("tx")
        if not tx or not tx.get("to"):
            raise VenueResponseError(
                payload.get("error") or f"{self._name} returned no {kind} transaction"
            )
        return tx

    async def build_mint(
        self,
        wallet: str,
        pool: Pool,
        tick_lower: int,
        tick_upper: int,
        amount0_raw: int,
        amount1_raw: int,
        amount0_min: int,
        amount1_min: int,
        deadline: int,
    ) -> dict[str, Any]:
        return await self._build(
            "mint",
            {
                "recipient": wallet,
                "pool": pool.address,
                "token0": pool.token0.address,
                "token1": pool.token1.address,
                "fee": pool.fee_tier,
                "tickLower": tick_lower,
                "tickUpper": tick_upper,
                "amount0Desired": str(amount0_raw),
                "amount1Desired": str(amount1_raw),
                "amount0Min": str(amount0_min),
                "amount1Min": str(amount1_min),
                "deadline": deadline,
            },
        )

    async def build_decrease_liquidity(
        self, wallet: str, position_id: str, liquidity: int, deadline: int
    ) -> dict[str, Any]:
        return await self._build(
            "decreaseLiquidity",
            {
                "owner": wallet,
                "tokenId": position_id,
                "liquidity": str(liquidity),
                "amount0Min": "0",
                "amount1Min": "0",
                "deadline": deadline,
            },
        )

    async def build_collect(self, wallet: str, position_id: str) -> dict[str, Any]:
        return await self._build(
            "collect",
            {
                "recipient": wallet,
                "tokenId": position_id,
                "amount0Max": str(MAX_UINT128),
                "amount1Max": str(MAX_UINT128),
            },
        )

    async def build_burn(self, wallet: str, position_id: str) -> dict[str, Any]:
        return await self._build("burn", {"owner": wallet, "tokenId": position_id})
