"""Concentrated-liquidity AMM venue."""
from .adapter import ConcentratedLiquidityAdapter
from .parser import PoolState

__all__ = ["ConcentratedLiquidityAdapter", "PoolState"]
