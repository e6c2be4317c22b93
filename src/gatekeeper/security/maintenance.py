"""
Periodic maintenance of in-memory security state.

Runs a sweep callable on a fixed interval as an explicit asyncio task with a
``start()`` / ``stop()`` contract. Tests call ``tick()`` directly instead of
waiting on the timer.
"""

import asyncio
import time
from typing import Any, Callable

from ..util.log import get_logger

logger = get_logger(__name__)

SweepFn = Callable[[float], dict[str, Any]]


class MaintenanceTask:
    """Cancellable periodic sweep."""

    def __init__(
        self,
        sweep: SweepFn,
        interval: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.sweep = sweep
        self.interval = interval
        self.clock = clock
        self.running = False
        self.task: asyncio.Task | None = None
        self.ticks = 0
        self.last_result: dict[str, Any] = {}

    def tick(self, now: float | None = None) -> dict[str, Any]:
        """Run one sweep synchronously."""
        now = self.clock() if now is None else now
        self.last_result = self.sweep(now)
        self.ticks += 1
        logger.debug("Maintenance sweep completed", extra={"result": self.last_result})
        return self.last_result

    def start(self) -> None:
        """Start the sweep loop on the running event loop."""
        if self.running:
            return

        self.running = True
        self.task = asyncio.create_task(self._loop())
        logger.info("Maintenance task started", extra={"interval": self.interval})

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to exit."""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("Maintenance task stopped")

    async def _loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.interval)
            try:
                self.tick()
            except Exception as e:
                logger.error("Error in maintenance loop", exc_info=e, extra={"error": str(e)})
