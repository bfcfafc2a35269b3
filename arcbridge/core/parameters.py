"""Canonical parameter state for the four encoder rings.

All mutations, whether they come from the hardware read loop or from the
application, are queued to one worker task and applied one at a time, so no
caller needs a lock and readers only ever see whole values.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from arcbridge.errors import UnknownParameterError, UnsupportedChannelError

logger = logging.getLogger("arcbridge.parameters")

DEFAULT_CHANNEL_NAMES: Tuple[str, ...] = ("volume", "brightness", "detune", "reverb")
DEFAULT_VALUES: Tuple[float, ...] = (0.5, 0.5, 0.0, 0.0)


def clamp(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        raise ValueError("Parameter value must be a number, got NaN")
    return max(0.0, min(1.0, value))


@dataclass
class Channel:
    index: int
    name: str
    value: float
    position: int = 0
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class SetResult:
    channel: int
    value: float
    changed: bool


@dataclass(frozen=True)
class HardwareUpdate:
    channel: int
    name: str
    value: float
    previous: float
    raw_delta: int
    position: int


class ParameterStore:
    """Fixed-size normalized parameter state owned by a single worker."""

    def __init__(
        self,
        names: Sequence[str] = DEFAULT_CHANNEL_NAMES,
        initial_values: Sequence[float] = DEFAULT_VALUES,
        clock: Callable[[], float] = time.time,
    ):
        if len(names) != len(initial_values):
            raise ValueError("Channel names and initial values must have the same length")
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate channel names: {list(names)}")
        self._clock = clock
        self._channels = [Channel(i, name, clamp(v)) for i, (name, v) in enumerate(zip(names, initial_values))]
        self._index = {ch.name: ch.index for ch in self._channels}
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- Reads (no serialization needed) ---

    def __len__(self) -> int:
        return len(self._channels)

    def get(self, channel: int) -> float:
        return self._channel(channel).value

    def channel(self, channel: int) -> Channel:
        """Return a copy of the channel record."""
        return replace(self._channel(channel))

    def snapshot(self) -> Tuple[float, ...]:
        return tuple(ch.value for ch in self._channels)

    def as_dict(self) -> Dict[str, float]:
        return {ch.name: ch.value for ch in self._channels}

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(ch.name for ch in self._channels)

    def name_of(self, channel: int) -> str:
        return self._channel(channel).name

    def index_of(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownParameterError(name) from None

    def _channel(self, channel: int) -> Channel:
        if not 0 <= channel < len(self._channels):
            raise UnsupportedChannelError(f"Channel {channel} out of range")
        return self._channels[channel]

    # --- Worker lifecycle ---

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker_task = asyncio.create_task(self._worker(), name="arcbridge-parameter-store")

    async def stop(self) -> None:
        if not self.running:
            return
        assert self._queue is not None
        self._queue.put_nowait(None)
        await self._worker_task
        self._worker_task = None

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                break
            op, args, future = item
            if future.cancelled():
                continue
            try:
                result = op(*args)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    async def _submit(self, op: Callable[..., Any], *args: Any) -> Any:
        if not self.running or self._queue is None:
            raise RuntimeError("ParameterStore is not running; call start() first")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((op, args, future))
        return await future

    # --- Mutations ---

    async def set(self, channel: int, value: float) -> SetResult:
        """Clamp and store *value*; ``changed`` is False for no-op writes.

        Any number is accepted and clamped to [0, 1]. NaN has no position on
        the ring and is rejected with ``ValueError``; the bridge logs and
        drops such commands.
        """
        return await self._submit(self._apply_set, channel, value)

    async def apply_hardware_delta(self, channel: int, raw_delta: int, reported_value: float) -> HardwareUpdate:
        """Store the device-reported value; the device owns its accumulated position."""
        return await self._submit(self._apply_hardware, channel, raw_delta, reported_value)

    def set_threadsafe(self, channel: int, value: float) -> concurrent.futures.Future:
        """Submit :meth:`set` from a thread other than the store's event loop."""
        if self._loop is None:
            raise RuntimeError("ParameterStore is not running; call start() first")
        return asyncio.run_coroutine_threadsafe(self.set(channel, value), self._loop)

    def _apply_set(self, channel: int, value: float) -> SetResult:
        ch = self._channel(channel)
        clamped = clamp(value)
        changed = clamped != ch.value
        if changed:
            ch.value = clamped
            ch.updated_at = self._clock()
        return SetResult(channel=channel, value=clamped, changed=changed)

    def _apply_hardware(self, channel: int, raw_delta: int, reported_value: float) -> HardwareUpdate:
        ch = self._channel(channel)
        previous = ch.value
        ch.value = clamp(reported_value)
        ch.position += int(raw_delta)
        ch.updated_at = self._clock()
        return HardwareUpdate(
            channel=channel,
            name=ch.name,
            value=ch.value,
            previous=previous,
            raw_delta=int(raw_delta),
            position=ch.position,
        )
