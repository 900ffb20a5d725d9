"""Service layer: portfolio view, decisions, execution and scheduling."""
from .engine import TreasuryEngine
from .scheduler import Scheduler

__all__ = ["Scheduler", "TreasuryEngine"]
