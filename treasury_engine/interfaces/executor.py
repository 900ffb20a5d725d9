"""Operation protocols — venues build or place state-changing operations.

On-chain venues only *build* unsigned transactions; signing and submission
belong to the transaction submitter so every submission goes through one
serial path.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from ..config import VenueConfig
from ..models import LiquidityPosition, Pool, Reserve
from .position_reader import (
    HedgePositionReader,
    LendingPositionReader,
    LiquidityPositionReader,
)

if TYPE_CHECKING:
    from ..protocols.aggregator import RouteQuote
    from ..protocols.amm.parser import PoolState


class LendingOperations(LendingPositionReader, Protocol):
    @property
    def config(self) -> VenueConfig: ...

    async def get_reserves(self) -> list[Reserve]: ...

    async def build_transaction(
        self, action: str, wallet: str, reserve: Reserve, amount_raw: int
    ) -> dict[str, Any]: ...


class LiquidityOperations(LiquidityPositionReader, Protocol):
    @property
    def chain(self) -> str: ...

    @property
    def config(self) -> VenueConfig: ...

    @property
    def position_manager(self) -> str: ...

    async def get_pool(self, pool_address: str) -> PoolState: ...

    async def get_position(
        self, wallet: str, position_id: str, prices: dict[str, float]
    ) -> LiquidityPosition | None: ...

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
    ) -> dict[str, Any]: ...

    async def build_decrease_liquidity(
        self, wallet: str, position_id: str, liquidity: int, deadline: int
    ) -> dict[str, Any]: ...

    async def build_collect(self, wallet: str, position_id: str) -> dict[str, Any]: ...

    async def build_burn(self, wallet: str, position_id: str) -> dict[str, Any]: ...


class HedgeOperations(HedgePositionReader, Protocol):
    @property
    def config(self) -> VenueConfig: ...

    async def get_mid_prices(self) -> dict[str, float]: ...

    async def get_asset(self, coin: str) -> tuple[int, int]: ...

    async def place_order(
        self,
        coin: str,
        is_buy: bool,
        size: float,
        limit_price: float,
        reduce_only: bool,
        leverage: float | None = None,
    ) -> dict[str, Any]: ...


class StakingOperations(Protocol):
    @property
    def venue_name(self) -> str: ...

    @property
    def chain(self) -> str: ...

    @property
    def lst_symbol(self) -> str: ...

    async def get_exchange_rate(self) -> float: ...

    async def build_stake(self, wallet: str, amount_raw: int) -> dict[str, Any]: ...


class SwapBridgeClient(Protocol):
    async def quote_swap(
        self,
        chain_id: int,
        from_token: str,
        to_token: str,
        amount_raw: int,
        wallet: str,
        slippage_bps: int,
    ) -> RouteQuote: ...

    async def quote_bridge(
        self,
        from_chain_id: int,
        to_chain_id: int,
        from_token: str,
        to_token: str,
        amount_raw: int,
        wallet: str,
        slippage_bps: int,
    ) -> RouteQuote: ...

    async def bridge_status(self, tx_hash: str, from_chain_id: int) -> str: ...
