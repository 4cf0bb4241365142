"""Sync scheduler: periodic and event-triggered cycles that never overlap."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .connectivity import ConnectivityMonitor


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Drives sync cycles from a timer and from explicit triggers.

    At most one cycle runs at a time. A trigger that arrives while a cycle
    is in flight is dropped rather than queued; the next tick or trigger
    picks up whatever is still pending.
    """

    def __init__(self, run_cycle: Callable[[], Awaitable[Any]],
                 connectivity: ConnectivityMonitor):
        """Initialize the scheduler.

        Args:
            run_cycle: Coroutine function running one full sync cycle
            connectivity: Monitor consulted before each timer tick
        """
        self.run_cycle = run_cycle
        self.connectivity = connectivity
        self.interval_seconds: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def start(self, interval_seconds: float) -> None:
        """Arm the recurring timer, replacing any existing one.

        Must be called from a running event loop.

        Raises:
            ValueError: If the interval is not positive
        """
        if interval_seconds <= 0:
            raise ValueError("Sync interval must be positive")
        self.stop()
        self._loop = asyncio.get_running_loop()
        self.interval_seconds = interval_seconds
        self._timer_task = self._loop.create_task(self._tick_loop(interval_seconds))
        self.logger.debug(f"Sync timer armed every {interval_seconds}s")

    def stop(self) -> None:
        """Disarm the timer. An in-flight cycle runs to completion."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            self.logger.debug("Sync timer disarmed")

    async def _tick_loop(self, interval_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            if self.connectivity.is_online:
                self.trigger()

    def trigger(self) -> bool:
        """Start a cycle now unless one is already running.

        Safe to call from other threads once ``start`` has bound a loop.

        Returns:
            True if a cycle was started or handed to the scheduler's loop
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            if self._loop is not None and self._loop.is_running():
                self._loop.call_soon_threadsafe(self._start_cycle)
                return True
            self.logger.debug("No running event loop; sync deferred to the next tick")
            return False

        return self._start_cycle(loop)

    def _start_cycle(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        if self.is_cycle_running:
            self.logger.debug("Sync cycle already in progress; trigger dropped")
            return False
        loop = loop or asyncio.get_running_loop()
        self._cycle_task = loop.create_task(self._run_cycle())
        return True

    async def _run_cycle(self):
        try:
            return await self.run_cycle()
        except Exception as e:
            self.logger.error(f"Sync cycle raised unexpectedly: {e}", exc_info=True)
            return None

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        task = self._cycle_task
        if task is not None and not task.done():
            await asyncio.wait([task])
