"""Durable position records."""
from .repository import (
    InMemoryPositionRepository,
    RepositoryError,
    YamlPositionRepository,
    record_close,
    record_open,
)

__all__ = [
    "InMemoryPositionRepository",
    "RepositoryError",
    "YamlPositionRepository",
    "record_close",
    "record_open",
]
