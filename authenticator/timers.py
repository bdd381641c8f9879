"""
timers.py — Repeating asyncio timer used for code refresh and polling.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class RepeatingTimer:
    """
    Calls `callback` every `interval` seconds on the running event loop.

    The callback may be a plain function or a coroutine function. The next
    run is scheduled only after the previous one has finished, so a slow
    callback never overlaps itself. Errors are logged and the timer keeps
    going. stop() may be called from inside the callback.
    """

    def __init__(self, interval: float, callback: Callable[[], Any], name: str = "timer", immediate: bool = True):
        self.interval = interval
        self.name = name
        self.immediate = immediate
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        # bumped on every start/stop; a loop exits once its generation is stale
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Must be called with an event loop running."""
        if self.running:
            return
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation), name=self.name)

    def stop(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _run(self, generation: int) -> None:
        if not self.immediate:
            await asyncio.sleep(self.interval)
        while generation == self._generation:
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s: callback failed", self.name)
            if generation != self._generation:
                break
            await asyncio.sleep(self.interval)
