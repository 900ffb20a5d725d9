"""Venue registries (reserves, pools)."""
from .cache import RegistryCache
from .registries import PoolRegistry, ReserveRegistry, short_address

__all__ = ["PoolRegistry", "RegistryCache", "ReserveRegistry", "short_address"]
