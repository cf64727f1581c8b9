"""
Cancellable asyncio timers for the sync engine.

Both timers swallow nothing silently: callback failures are logged and the
timer keeps running, because the next tick is the retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[object]]


class DebounceTimer:
    """Runs the callback once, `delay` seconds after the last schedule() call."""

    def __init__(self, delay: float, callback: Callback, name: str = "debounce"):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        """(Re)start the countdown; an already pending run is replaced, not stacked."""
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        self._task = None
        try:
            await self.callback()
        except Exception as e:
            logger.warning("%s callback failed: %s", self.name, e)


class IntervalTimer:
    """Runs the callback every `interval` seconds until stopped."""

    def __init__(self, interval: float, callback: Callback, name: str = "interval"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def set_interval(self, interval: float) -> None:
        """Change the period; a running timer restarts with the new one."""
        if interval == self.interval:
            return
        self.interval = interval
        if self._running:
            self.stop()
            self.start()

    def _is_current(self) -> bool:
        return self._running and self._task is asyncio.current_task()

    async def _run(self) -> None:
        while self._is_current():
            await asyncio.sleep(self.interval)
            if not self._is_current():
                break
            try:
                await self.callback()
            except Exception as e:
                logger.warning("%s callback failed: %s", self.name, e)
