"""Position reader protocols — one per venue family.

Readers return an empty result when the wallet has no position; that is a
normal outcome, not an error. Transport failures propagate as exceptions so
the aggregator can record them per source.
"""
from typing import Protocol

from ..models import HedgePosition, LendingPosition, LiquidityPosition, Reserve


class LendingPositionReader(Protocol):
    @property
    def venue_name(self) -> str: ...

    @property
    def chain(self) -> str: ...

    async def get_position(
        self, wallet: str, prices: dict[str, float]
    ) -> LendingPosition | None: ...

    async def get_reserve(self, symbol: str) -> Reserve | None: ...


class LiquidityPositionReader(Protocol):
    @property
    def venue_name(self) -> str: ...

    async def get_positions(
        self, wallet: str, prices: dict[str, float]
    ) -> list[LiquidityPosition]: ...


class HedgePositionReader(Protocol):
    @property
    def venue_name(self) -> str: ...

    async def get_positions(self, wallet: str) -> list[HedgePosition]: ...
