"""
Periodic background ticks on the running event loop.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs ``callback`` every ``interval`` seconds until stopped.

    A tick that is already running is allowed to finish when the task is
    stopped; only the sleep between ticks is cancelled. Exceptions raised
    by a tick are logged and the timer keeps running.

    Attributes:
        name: Label for log lines
        interval: Seconds between ticks
        ticks: Number of completed ticks
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[object]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._in_tick = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the timer on the running loop. No-op if already running."""
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"periodic:{self.name}")
        logger.debug(f"Started periodic task '{self.name}' every {self.interval:.3f}s")

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            if self._stopping:
                break
            self._in_tick = True
            try:
                await self._callback()
            except Exception as e:
                logger.error(f"Periodic task '{self.name}' tick failed: {e}", exc_info=True)
            finally:
                self._in_tick = False
                self.ticks += 1

    async def stop(self) -> None:
        """Stop after the current tick (if any) completes."""
        self._stopping = True
        task = self._task
        if task is None:
            return
        if task is asyncio.current_task():
            # called from inside our own tick; the loop exits after it returns
            return
        if not self._in_tick:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug(f"Stopped periodic task '{self.name}'")
