"""Lending-market venue."""
from .adapter import LENDING_ACTIONS, LendingMarketAdapter

__all__ = ["LENDING_ACTIONS", "LendingMarketAdapter"]
