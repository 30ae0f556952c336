"""
Owned, cancelable timer handles for per-call components.

Every periodic activity of a call (pacer tick, keep-alive, silence check) runs as
a RepeatingTimer owned by the component that needs it, so that tearing the
component down cancels the timer with it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from voice_relay.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """
    Cancel a task and wait for it to finish.

    A task cannot wait for itself, so when teardown is triggered from inside
    the task being cancelled it is left to finish on its own.
    """
    if task is None or task.done():
        return
    if task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning(f"Task {task.get_name()} failed while cancelling: {e}")


class RepeatingTimer:
    """
    Calls an async callback every ``interval`` seconds.

    Ticks are scheduled against the loop clock (start + n * interval) so a slow
    callback does not push later ticks back. If a callback overruns by more than
    a whole interval the missed ticks are run back to back. Exceptions raised by
    the callback are logged and the timer keeps running.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]], name: str = "timer"):
        if interval <= 0:
            raise ValueError("Timer interval must be positive")
        self.interval = interval
        self.callback = callback
        self.name = name
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        """Cancel the timer. Safe to call more than once."""
        task, self._task = self._task, None
        await cancel_task(task)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while True:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            self.ticks += 1
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {self.name} tick: {e}", exc_info=True)
            if self._task is not asyncio.current_task():
                # stopped from inside the callback
                return
            next_tick += self.interval
