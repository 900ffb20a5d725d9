"""Unattended cycle scheduler with jitter and a consecutive-failure breaker."""
from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from ..config import SchedulerConfig

logger = logging.getLogger(__name__)

Cycle = Callable[[], Awaitable[Any]]
Alert = Callable[[str, str], Awaitable[None]]


class Scheduler:
    """Runs ``cycle`` every ``interval_minutes`` until stopped or tripped.

    Every exception from a cycle is caught here and counted. Once
    ``max_consecutive_errors`` cycles fail in a row the loop stops itself and
    alerts the operator; a successful cycle resets the count.
    """

    def __init__(
        self,
        cycle: Cycle,
        config: SchedulerConfig,
        alert: Alert | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._cycle = cycle
        self._config = config
        self._alert = alert
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._running = False
        self._task: asyncio.Task | None = None
        self.last_check: datetime | None = None
        self.consecutive_errors = 0

    @property
    def running(self) -> bool:
        return self._running

    def _jittered(self, seconds: float) -> float:
        spread = self._config.jitter_pct / 100
        return max(0.0, seconds * self._rng.uniform(1 - spread, 1 + spread))

    async def _tick(self) -> bool:
        self.last_check = datetime.now(timezone.utc)
        try:
            await self._cycle()
        except Exception as e:
            self.consecutive_errors += 1
            logger.error(
                "Cycle failed (%d/%d consecutive): %s",
                self.consecutive_errors,
                self._config.max_consecutive_errors,
                e,
            )
            return False
        if self.consecutive_errors:
            logger.info("Cycle recovered after %d failures", self.consecutive_errors)
        self.consecutive_errors = 0
        return True

    async def _trip(self) -> None:
        self._running = False
        message = (
            f"🚨 Scheduler stopped after {self.consecutive_errors} consecutive failed cycles\n"
            f"\n"
            f"Last attempt: {self.last_check:%Y-%m-%d %H:%M:%S} UTC\n"
            f"Run a forced cycle to diagnose, then restart the scheduler."
        )
        logger.critical("Circuit breaker tripped after %d failures", self.consecutive_errors)
        if self._alert is not None:
            await self._alert(message, "🚨 Treasury scheduler halted")

    async def run(self) -> None:
        """Run the loop in the current task until stopped or tripped."""
        self._running = True
        self.consecutive_errors = 0
        interval = self._config.interval_minutes * 60
        logger.info(
            "Starting scheduler (every %.1f minutes ±%.0f%%)",
            self._config.interval_minutes,
            self._config.jitter_pct,
        )
        await self._sleep(self._jittered(self._config.initial_delay_seconds))

        while self._running:
            await self._tick()
            if self.consecutive_errors >= self._config.max_consecutive_errors:
                await self._trip()
                break
            if not self._running:
                break
            await self._sleep(self._jittered(interval))
        logger.info("Scheduler stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def force_cycle(self) -> bool:
        """One-off cycle that ignores the breaker; True if it completed."""
        logger.info("Forced cycle requested")
        return await self._tick()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "consecutive_errors": self.consecutive_errors,
        }
