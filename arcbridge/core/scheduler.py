"""Timer abstraction used for every delay in the bridge.

The LED flush window, the reconnect backoff and the init pacing all go
through a :class:`Scheduler`, so tests can drive them with virtual time
instead of waiting on the wall clock.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger("arcbridge.scheduler")

TimerCallback = Callable[[], Awaitable[None]]


class Timer:
    """Handle for a single-shot delayed callback."""

    def __init__(self, when: float):
        self.when = when
        self.cancelled = False
        self.fired = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        if self.cancelled or self.fired:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def __repr__(self) -> str:
        state = "active" if self.active else ("fired" if self.fired else "cancelled")
        return f"<Timer when={self.when:.3f} {state}>"


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> Timer:
        """Run ``await callback()`` once after *delay* seconds."""

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        pass


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running event loop."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: TimerCallback) -> Timer:
        loop = asyncio.get_running_loop()
        delay = max(0.0, delay)
        timer = Timer(loop.time() + delay)

        def fire() -> None:
            if not timer.active:
                return
            timer.fired = True
            task = loop.create_task(callback())
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

        handle = loop.call_later(delay, fire)
        timer._on_cancel = handle.cancel
        return timer

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Timer callback failed: %s", exc, exc_info=exc)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
