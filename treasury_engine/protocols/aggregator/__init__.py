"""Swap/bridge aggregator collaborator."""
from .client import (
    BRIDGE_DONE,
    BRIDGE_FAILED,
    BRIDGE_PENDING,
    NATIVE_TOKEN,
    AggregatorClient,
    RouteQuote,
)

__all__ = [
    "BRIDGE_DONE",
    "BRIDGE_FAILED",
    "BRIDGE_PENDING",
    "NATIVE_TOKEN",
    "AggregatorClient",
    "RouteQuote",
]
