"""Cross-protocol treasury rebalancing engine."""

__version__ = "0.3.0"
