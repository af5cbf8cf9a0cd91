"""
Admission Queue — Sliding-window rate limiter with a bounded FIFO backlog.

Bounds the rate at which sanitized records reach the store, independent of
the burst rate at which the extractor produces them.

    submit(item) ── can_proceed? ── yes ──> processor(item)      (direct admit)
                          │
                          no ──> backlog (max 50, oldest dropped first)
                                    │
                          drain task, every 3 s:
                            discard items older than 5 min,
                            process oldest while a slot is free,
                            exit when the backlog is empty

Queued items drain in FIFO order; a direct admit may overtake them.
Single event loop, no threading locks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from feedvault.config import AdmissionConfig

logger = logging.getLogger(__name__)

Processor = Callable[[Any], Awaitable[Any]]


@dataclass
class AdmissionOutcome:
    """What submit() did with an item."""

    admitted: bool
    queued: bool = False
    result: Any = None


@dataclass
class _QueuedItem:
    item: Any
    enqueued_at: float


class AdmissionQueue:
    """Sliding-window admission control for one processor."""

    def __init__(
        self,
        processor: Processor,
        config: Optional[AdmissionConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._processor = processor
        self._config = config or AdmissionConfig()
        self._clock = clock
        self._window_s = self._config.window_ms / 1000.0

        self._requests: Deque[float] = deque()
        self._queue: Deque[_QueuedItem] = deque()
        self._task: Optional[asyncio.Task] = None
        self._last_log = 0.0

        # Counters
        self._dropped = 0
        self._stale = 0
        self._errors = 0
        self._drained = 0

    # -- Rate window -------------------------------------------------------

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window_s:
            self._requests.popleft()

    def can_proceed(self) -> bool:
        """Admit iff fewer than max_requests admissions in the window. Records the admission."""
        now = self._clock()
        self._prune(now)
        if len(self._requests) >= self._config.max_requests:
            return False
        self._requests.append(now)
        return True

    # -- Submission --------------------------------------------------------

    async def submit(self, item: Any) -> AdmissionOutcome:
        """Process item now if a slot is free, otherwise queue it.

        Errors from a direct admit propagate to the caller; errors from
        queued items are logged by the drain loop.
        """
        if self.can_proceed():
            result = await self._processor(item)
            return AdmissionOutcome(admitted=True, result=result)
        self._enqueue(item)
        self._ensure_draining()
        return AdmissionOutcome(admitted=False, queued=True)

    def _enqueue(self, item: Any) -> None:
        if len(self._queue) >= self._config.queue_max:
            self._queue.popleft()
            self._dropped += 1
        now = self._clock()
        self._queue.append(_QueuedItem(item=item, enqueued_at=now))
        if now - self._last_log > self._config.log_throttle_s:
            logger.info("Rate limited: queued item (%d in queue)", len(self._queue))
            self._last_log = now

    def _ensure_draining(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain_loop())

    # -- Draining ----------------------------------------------------------

    async def _drain_loop(self) -> None:
        """Drain until empty, one pass per interval."""
        while self._queue:
            await asyncio.sleep(self._config.drain_interval_s)
            await self.drain_once()

    async def drain_once(self) -> int:
        """One drain pass. Returns the number of items processed."""
        processed = 0
        while self._queue:
            head = self._queue[0]
            if self._clock() - head.enqueued_at > self._config.staleness_s:
                self._queue.popleft()
                self._stale += 1
                continue
            if not self.can_proceed():
                break
            self._queue.popleft()
            try:
                await self._processor(head.item)
                processed += 1
            except Exception as e:
                self._errors += 1
                logger.warning("Error processing queued item: %s", e)
        self._drained += processed
        return processed

    async def stop(self) -> None:
        """Cancel the drain task and discard the backlog."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._queue:
            logger.info("Admission queue stopped with %d queued item(s) discarded", len(self._queue))
            self._queue.clear()

    # -- Observability -----------------------------------------------------

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> Dict[str, Any]:
        """Window occupancy, backlog depth, and when the next slot frees."""
        now = self._clock()
        self._prune(now)
        next_slot = self._requests[0] + self._window_s if self._requests else now
        return {
            "current_requests": len(self._requests),
            "max_requests": self._config.max_requests,
            "window_seconds": self._window_s,
            "can_proceed": len(self._requests) < self._config.max_requests,
            "queue_length": len(self._queue),
            "next_available_slot": datetime.fromtimestamp(next_slot, tz=timezone.utc).isoformat(),
            "draining": self.draining,
            "drained": self._drained,
            "dropped": self._dropped,
            "stale": self._stale,
            "errors": self._errors,
        }
