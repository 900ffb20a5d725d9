"""Protocol interfaces for the treasury engine."""
from .chain import ChainClient
from .executor import (
    HedgeOperations,
    LendingOperations,
    LiquidityOperations,
    StakingOperations,
    SwapBridgeClient,
)
from .notifier import Notifier
from .position_reader import (
    HedgePositionReader,
    LendingPositionReader,
    LiquidityPositionReader,
)
from .price_oracle import PriceOracle
from .repository import PositionRepository

__all__ = [
    "ChainClient",
    "HedgeOperations",
    "HedgePositionReader",
    "LendingOperations",
    "LendingPositionReader",
    "LiquidityOperations",
    "LiquidityPositionReader",
    "Notifier",
    "PositionRepository",
    "PriceOracle",
    "StakingOperations",
    "SwapBridgeClient",
]
