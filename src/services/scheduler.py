"""
Delayed-task loop used for the ingestion and publishing timers.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class DelayedLoop:
    """
    Runs an async action, asks for the next delay, waits, and repeats until stopped.

    The delay is re-read after every run so callers can apply backoff.
    Stopping interrupts the wait. An in-flight action finishes unless the
    caller asks for it to be cancelled.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[None]],
        next_delay: Callable[[], float],
        run_immediately: bool = True,
    ):
        self.name = name
        self.action = action
        self.next_delay = next_delay
        self.run_immediately = run_immediately
        self.runs = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"loop-{self.name}")

    async def stop(self, cancel_running: bool = False) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        if cancel_running:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        finally:
            self._task = None

    async def _run(self) -> None:
        if not self.run_immediately and await self._wait(self.next_delay()):
            return

        while not self._stop_event.is_set():
            try:
                await self.action()
            except Exception:
                logger.exception(f"Loop '{self.name}' action failed")
            self.runs += 1

            delay = self.next_delay()
            logger.debug(f"Loop '{self.name}' next run in {delay:.2f}s")
            if await self._wait(delay):
                return

    async def _wait(self, delay: float) -> bool:
        """Sleep for delay seconds; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0.0))
            return True
        except asyncio.TimeoutError:
            return False
