"""Position repositories — durable record of when positions were opened.

The YAML file store is the default; the in-memory store backs dry-runs and
tests. Both expose only ``list``/``get``/``upsert``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from ..interfaces.repository import PositionRepository
from ..models import PositionRecord, RecordStatus, StrategyKind

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """The durable store could not be read or written."""


def _to_dict(record: PositionRecord) -> dict[str, Any]:
    data = asdict(record)
    data["kind"] = record.kind.value
    data["status"] = record.status.value
    data["opened_at"] = record.opened_at.isoformat()
    data["closed_at"] = record.closed_at.isoformat() if record.closed_at else None
    return data


def _from_dict(data: dict[str, Any]) -> PositionRecord:
    closed_at = data.get("closed_at")
    return PositionRecord(
        position_id=str(data["position_id"]),
        venue=data.get("venue", ""),
        chain=data.get("chain", ""),
        kind=StrategyKind(data.get("kind", StrategyKind.LIQUIDITY.value)),
        opened_at=datetime.fromisoformat(data["opened_at"]),
        entry_value_usd=float(data.get("entry_value_usd", 0.0)),
        status=RecordStatus(data.get("status", RecordStatus.OPEN.value)),
        closed_at=datetime.fromisoformat(closed_at) if closed_at else None,
        exit_value_usd=float(data.get("exit_value_usd", 0.0)),
        realized_pnl_usd=float(data.get("realized_pnl_usd", 0.0)),
        metadata=dict(data.get("metadata") or {}),
    )


class InMemoryPositionRepository:
    def __init__(self, records: list[PositionRecord] | None = None) -> None:
        self._records: dict[str, PositionRecord] = {r.position_id: r for r in records or []}

    async def list(
        self, status: RecordStatus | None = None, venue: str | None = None
    ) -> list[PositionRecord]:
        return [
            r
            for r in self._records.values()
            if (status is None or r.status is status) and (venue is None or r.venue == venue)
        ]

    async def get(self, position_id: str) -> PositionRecord | None:
        return self._records.get(position_id)

    async def upsert(self, record: PositionRecord) -> None:
        self._records[record.position_id] = record


class YamlPositionRepository(InMemoryPositionRepository):
    """Records persisted to a YAML file, rewritten atomically on every upsert."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        super().__init__(self._load())

    def _load(self) -> list[PositionRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RepositoryError(f"Failed to read {self.path}: {e}") from e
        try:
            return [_from_dict(entry) for entry in raw.get("positions", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise RepositoryError(f"Malformed position record in {self.path}: {e}") from e

    def _save(self) -> None:
        data = {"positions": [_to_dict(r) for r in self._records.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".yaml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RepositoryError(f"Failed to write {self.path}: {e}") from e

    async def upsert(self, record: PositionRecord) -> None:
        async with self._lock:
            await super().upsert(record)
            self._save()


# ---------------------------------------------------------------------------
# Record bookkeeping
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def record_open(
    repository: PositionRepository,
    position_id: str,
    venue: str,
    chain: str,
    kind: StrategyKind,
    entry_value_usd: float,
    **metadata: Any,
) -> PositionRecord:
    record = PositionRecord(
        position_id=position_id,
        venue=venue,
        chain=chain,
        kind=kind,
        opened_at=_now(),
        entry_value_usd=entry_value_usd,
        metadata=metadata,
    )
    await repository.upsert(record)
    logger.info("Recorded open %s on %s ($%.2f)", position_id, venue, entry_value_usd)
    return record


async def record_close(
    repository: PositionRepository,
    position_id: str,
    exit_value_usd: float,
    status: RecordStatus = RecordStatus.CLOSED,
) -> PositionRecord | None:
    """Mark a record closed and book its realized PnL; None if never recorded."""
    record = await repository.get(position_id)
    if record is None:
        logger.warning("No open record for %s; realized PnL not booked", position_id)
        return None
    closed = replace(
        record,
        status=status,
        closed_at=_now(),
        exit_value_usd=exit_value_usd,
        realized_pnl_usd=exit_value_usd - record.entry_value_usd,
    )
    await repository.upsert(closed)
    logger.info(
        "Recorded %s %s: entry $%.2f, exit $%.2f, PnL $%+.2f",
        status.value,
        position_id,
        record.entry_value_usd,
        exit_value_usd,
        closed.realized_pnl_usd,
    )
    return closed
