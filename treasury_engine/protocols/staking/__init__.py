"""Liquid-staking venue."""
from .adapter import LiquidStakingAdapter

__all__ = ["LiquidStakingAdapter"]
