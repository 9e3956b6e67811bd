"""Trailing-edge debounced async writer."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Coalesce bursts of calls into one trailing call of ``action``.

    ``schedule()`` restarts the delay and cancels a pending run that has not
    started yet. A run that already started is never cancelled; the lock
    keeps two runs from overlapping.
    """

    def __init__(self, delay: float, action: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.action = action
        self._pending: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._started = False

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self) -> None:
        """Arm (or re-arm) the timer. Must be called from a running loop."""
        if self.pending and not self._started:
            self._pending.cancel()
        self._started = False
        self._pending = asyncio.get_running_loop().create_task(self._delayed())

    async def _delayed(self) -> None:
        await asyncio.sleep(self.delay)
        self._started = True
        await self._run()

    async def _run(self) -> None:
        async with self._lock:
            try:
                await self.action()
            except Exception:
                logger.exception("Debounced write failed")

    async def flush(self) -> None:
        """Run the pending write now, or wait for one that already started."""
        task = self._pending
        if task is None or task.done():
            return
        if self._started:
            await task
            return
        task.cancel()
        self._pending = None
        await self._run()

    def cancel(self) -> None:
        if self.pending and not self._started:
            self._pending.cancel()
        self._pending = None
