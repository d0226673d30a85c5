"""
Poll Fallback
=============

Unconditional timer that reloads the snapshot every ``interval`` seconds,
bounding staleness to one interval even when broadcast delivery and file
watching both fail silently.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from .base import UpdateTrigger

logger = logging.getLogger(__name__)

TickHandler = Callable[[], Union[None, Awaitable[None]]]


class PollFallback(UpdateTrigger):
    """
    Calls ``on_tick`` every ``interval`` seconds on the running loop.

    Usage:
        poller = PollFallback(5.0, client.on_poll_tick)
        await poller.start()
        # ... later ...
        await poller.stop()
    """

    name = "poll"

    def __init__(self, interval: float, on_tick: TickHandler):
        if interval <= 0:
            raise ValueError(f"poll interval must be positive, got {interval}")
        self.interval = interval
        self._on_tick = on_tick
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0

    @property
    def is_active(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._ticks

    async def start(self) -> bool:
        if self._running:
            return True
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.debug(f"[PollFallback] Started - every {self.interval}s")
        return True

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                self._ticks += 1
                result = self._on_tick()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[PollFallback] Tick error: {e}")
