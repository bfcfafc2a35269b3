"""
Pytest configuration and shared fixtures.
"""
import asyncio
from typing import List, Tuple

import pytest

from arcbridge.core.scheduler import Scheduler, Timer, TimerCallback
from arcbridge.transports.mock import MockTransport


class ManualScheduler(Scheduler):
    """Virtual clock: timers only fire when a test advances time."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: List[Tuple[Timer, TimerCallback]] = []
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> Timer:
        timer = Timer(self._now + max(0.0, delay))
        self._timers.append((timer, callback))
        return timer

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await self.advance(delay)

    @property
    def active_timers(self) -> List[Timer]:
        return [timer for timer, _ in self._timers if timer.active]

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while True:
            due = [item for item in self._timers if item[0].active and item[0].when <= target + 1e-9]
            if not due:
                break
            timer, callback = min(due, key=lambda item: item[0].when)
            self._now = max(self._now, timer.when)
            timer.fired = True
            await callback()
        self._now = max(self._now, target)
        self._timers = [item for item in self._timers if item[0].active]


async def _settle(rounds: int = 25) -> None:
    # let the read loop and worker tasks run
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def settle():
    return _settle


@pytest.fixture(autouse=True)
def _release_mock_handles():
    MockTransport._claimed.clear()
    yield
    MockTransport._claimed.clear()
