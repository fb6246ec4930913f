"""
Timer service used for cache expiry, connection retries, health checks and
session sweeps.

Components never call ``asyncio.sleep`` or ``loop.call_later`` directly; they
receive a ``Scheduler`` so that tests can swap in virtual time.
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Set, Union

from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


async def invoke_callback(callback: TimerCallback) -> None:
    """
    Run a timer callback, awaiting it when it returns an awaitable.

    Exceptions are logged and swallowed: a failing callback must not take the
    timer service down with it.
    """
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Scheduled callback {callback!r} failed: {e}", exc_info=True)


class TimerHandle:
    """
    Cancellable reference to a scheduled callback.
    """

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._cancelled = False
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel:
            self._on_cancel()


class RepeatingTimerHandle(TimerHandle):
    """
    Handle for a periodic callback; tracks the currently armed one-shot timer.
    """

    def __init__(self):
        super().__init__(on_cancel=self._cancel_current)
        self.current: Optional[TimerHandle] = None

    def _cancel_current(self) -> None:
        if self.current is not None:
            self.current.cancel()


class Scheduler(ABC):
    """
    Abstract timer service.
    """

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        """
        Run ``callback`` every ``interval`` seconds until the handle is cancelled.

        The next tick is armed only after the current one finishes, so a slow
        callback never overlaps with itself.
        """
        handle = RepeatingTimerHandle()

        async def tick() -> None:
            if handle.cancelled:
                return
            await invoke_callback(callback)
            if not handle.cancelled:
                handle.current = self.call_later(interval, tick)

        handle.current = self.call_later(interval, tick)
        return handle


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by the running asyncio event loop.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()

    def now(self) -> float:
        return time.monotonic()

    @property
    def pending(self) -> int:
        """Number of timers armed on the loop that have not fired yet."""
        return len(self._timers)

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(timer)
            if handle.cancelled:
                return
            task = loop.create_task(invoke_callback(callback))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        def cancel() -> None:
            timer.cancel()
            self._timers.discard(timer)

        timer = loop.call_later(max(delay, 0.0), fire)
        self._timers.add(timer)
        handle = TimerHandle(on_cancel=cancel)
        return handle

    async def aclose(self) -> None:
        """
        Cancel timers that have not fired yet, then cancel callbacks that are
        currently running and wait for them to exit.
        """
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
