"""Position repository protocol — the only view of the durable store."""
from __future__ import annotations

from typing import Protocol

from ..models import PositionRecord, RecordStatus


class PositionRepository(Protocol):
    async def list(
        self, status: RecordStatus | None = None, venue: str | None = None
    ) -> list[PositionRecord]: ...

    async def get(self, position_id: str) -> PositionRecord | None: ...

    async def upsert(self, record: PositionRecord) -> None: ...
