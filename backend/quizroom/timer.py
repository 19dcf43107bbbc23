from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], Awaitable[None]]


class RoomTimer:
    """Per-room countdown handle.

    Every ``arm`` starts a new generation. A tick carries the generation it
    was armed with, and the room drops ticks whose generation is no longer
    current, so a tick racing a cancel or re-arm never mutates the room.
    """

    def __init__(self, room_code: str, on_tick: TickCallback, interval: float = 1.0):
        self.room_code = room_code
        self.interval = interval
        self._on_tick = on_tick
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_current(self, generation: int) -> bool:
        return self._task is not None and generation == self._generation

    def arm(self) -> int:
        self.cancel()
        generation = self._generation
        self._task = asyncio.create_task(self._run(generation), name=f"room-timer-{self.room_code}-{generation}")
        return generation

    def cancel(self) -> None:
        """Stop ticking. Safe to call repeatedly and from inside a tick."""
        self._generation += 1
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # A tick that ends the countdown cancels its own timer; let it finish
        # its work and exit on the generation check instead.
        if task is not asyncio.current_task():
            task.cancel()

    async def _run(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.interval)
            if generation != self._generation:
                return
            try:
                await self._on_tick(generation)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer tick failed for room %s", self.room_code)
