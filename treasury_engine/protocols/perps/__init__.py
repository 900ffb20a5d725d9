"""Perpetual-exchange hedge venue."""
from .adapter import PerpHedgeAdapter

__all__ = ["PerpHedgeAdapter"]
