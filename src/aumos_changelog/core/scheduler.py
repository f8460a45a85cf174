"""Fixed-interval background tasks (queue worker, alert evaluator, partition manager)."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from aumos_changelog.observability import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Runs an async callable every ``interval_seconds`` until stopped.

    A failing cycle is logged and the next cycle still runs.

    Args:
        name: Task name used in logs.
        interval_seconds: Delay between the end of one cycle and the next.
        func: Zero-argument coroutine function executed each cycle.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self._interval = interval_seconds
        self._func = func
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.cycles = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Periodic task started", task=self.name, interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Periodic task stopped", task=self.name, cycles=self.cycles)

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self._func()
            except Exception as exc:
                self.failures += 1
                logger.error("Periodic task cycle failed", task=self.name, error=str(exc))
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
