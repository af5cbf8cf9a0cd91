"""
Ticker — periodic asyncio task with explicit start/stop.

Runs an async (or plain) callback after first_delay_s, then every
interval_s. Callback exceptions are logged and the ticker keeps running.
stop() cancels the task and waits for it, so shutdown is deterministic.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[Awaitable[Any], Any]]


class Ticker:
    """Self-rescheduling periodic task owned by the process."""

    def __init__(
        self,
        name: str,
        callback: TickCallback,
        interval_s: float,
        first_delay_s: Optional[float] = None,
    ):
        self.name = name
        self._callback = callback
        self._interval_s = interval_s
        self._first_delay_s = interval_s if first_delay_s is None else first_delay_s
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the ticker loop. Must be called from a running event loop."""
        if self.running:
            raise RuntimeError(f"Ticker {self.name} already running")
        self._task = asyncio.create_task(self._run(), name=f"ticker-{self.name}")
        logger.debug("Ticker %s started (first in %.0fs, then every %.0fs)",
                     self.name, self._first_delay_s, self._interval_s)
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Ticker %s stopped", self.name)

    async def tick(self) -> None:
        """Run the callback once, logging any failure."""
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
            self.ticks += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("Ticker %s callback failed: %s", self.name, e)

    async def _run(self) -> None:
        await asyncio.sleep(self._first_delay_s)
        while True:
            await self.tick()
            await asyncio.sleep(self._interval_s)
