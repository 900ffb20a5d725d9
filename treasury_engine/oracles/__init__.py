"""Price oracle clients."""
from .pyth import PriceCache, PythOracle

__all__ = ["PriceCache", "PythOracle"]
