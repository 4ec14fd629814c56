"""Cancelable, reschedule-on-call debounced coroutine."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class DebouncedTask:
    """Run ``callback`` once ``delay`` seconds after the last ``schedule()``.

    Rescheduling while the timer is still waiting restarts it, so only the
    last schedule in a burst fires. A callback that has already started is
    left to finish; ``close()`` cancels that too.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        delay: float,
        name: str = "debounced",
    ) -> None:
        self.callback = callback
        self.delay = delay
        self.name = name
        self._timer: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """True while a schedule is waiting to fire."""
        return self._timer is not None and not self._timer.done()

    def schedule(self, delay: float | None = None) -> None:
        self.cancel()
        wait = self.delay if delay is None else delay
        self._timer = asyncio.get_running_loop().create_task(self._wait_then_fire(wait))

    def cancel(self) -> None:
        """Drop a pending schedule. A callback already running is unaffected."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def flush(self) -> None:
        """Fire immediately if a schedule is pending."""
        if self.pending:
            self.cancel()
            await self._fire()

    async def wait(self) -> None:
        """Wait for the pending schedule and any running callbacks to finish."""
        while self.pending or self._running:
            tasks = [t for t in (self._timer, *self._running) if t is not None]
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        """Cancel the pending schedule and any callback in flight."""
        self.cancel()
        for task in list(self._running):
            task.cancel()
        self._running.clear()

    async def _wait_then_fire(self, wait: float) -> None:
        await asyncio.sleep(wait)
        # Detach from the timer slot so a reschedule during the callback
        # cannot cancel it.
        task = asyncio.current_task()
        if task is not None:
            self._running.add(task)
        if self._timer is task:
            self._timer = None
        try:
            await self._fire()
        finally:
            if task is not None:
                self._running.discard(task)

    async def _fire(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Debounced task %s failed", self.name, exc_info=True)
