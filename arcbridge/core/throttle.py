"""Per-ring rate limiting for LED feedback.

The Arc's console runs at 115200 baud and parses Lua line by line; dragging a
UI slider can produce hundreds of updates a second. Each ring gets at most one
send per window, the latest deferred value is sent once the window closes,
and changes too small to see are dropped.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from .scheduler import Scheduler, Timer

logger = logging.getLogger("arcbridge.throttle")

DEFAULT_WINDOW = 0.05
DEFAULT_THRESHOLD = 0.02
# timer arithmetic is inexact; a send this close to the window edge is on time
_EPSILON = 1e-9

SendCallback = Callable[[int, float], Awaitable[None]]


class LedThrottler:
    """Coalesce LED updates per channel behind a fixed send window."""

    def __init__(
        self,
        send: SendCallback,
        scheduler: Scheduler,
        channels: int = 4,
        window: float = DEFAULT_WINDOW,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self._send = send
        self._scheduler = scheduler
        self.channels = channels
        self.window = window
        self.threshold = threshold

        self._shown: List[float] = [0.0] * channels
        self._last_sent_at: List[Optional[float]] = [None] * channels
        self._pending: List[Optional[float]] = [None] * channels
        self._timer: Optional[Timer] = None

        self.sent = 0
        self.coalesced = 0
        self.suppressed = 0

    # --- State management ---

    def reset(self, values: Sequence[float]) -> None:
        """Forget send history; *values* are what the device currently shows."""
        self.cancel()
        self._shown = [float(v) for v in values]
        self._last_sent_at = [None] * self.channels

    def observe(self, channel: int, value: float) -> None:
        """Record a value the device rendered on its own (encoder turn).

        A deferred value for the channel is older than what the device now
        shows, so it is dropped rather than flushed over the hardware value.
        """
        self._shown[channel] = float(value)
        self._pending[channel] = None

    def cancel(self) -> None:
        """Drop pending updates and disarm the flush timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = [None] * self.channels

    def pending(self, channel: int) -> Optional[float]:
        return self._pending[channel]

    @property
    def flush_armed(self) -> bool:
        return self._timer is not None and self._timer.active

    # --- Requests ---

    async def request(self, channel: int, value: float) -> bool:
        """Ask for *channel* to display *value*.

        Returns True when the value was sent immediately, False when it was
        deferred or suppressed.
        """
        if not 0 <= channel < self.channels:
            raise IndexError(f"LED channel {channel} out of range")

        if abs(value - self._shown[channel]) < self.threshold:
            self.suppressed += 1
            # the device already shows (nearly) this, so an older deferred value is stale
            self._pending[channel] = None
            return False

        now = self._scheduler.now()
        if self._window_open(channel, now):
            self._pending[channel] = None
            await self._send_now(channel, value, now)
            return True

        if self._pending[channel] is not None:
            self.coalesced += 1
        self._pending[channel] = value
        self._arm(now)
        return False

    def _window_open(self, channel: int, now: float) -> bool:
        last = self._last_sent_at[channel]
        return last is None or now - last >= self.window - _EPSILON

    async def _send_now(self, channel: int, value: float, now: float) -> None:
        self._shown[channel] = value
        self._last_sent_at[channel] = now
        self.sent += 1
        await self._send(channel, value)

    def _arm(self, now: float) -> None:
        if self.flush_armed:
            return
        due = [
            self._last_sent_at[ch] + self.window
            for ch in range(self.channels)
            if self._pending[ch] is not None and self._last_sent_at[ch] is not None
        ]
        if not due:
            return
        delay = max(0.0, min(due) - now)
        self._timer = self._scheduler.call_later(delay, self._flush)

    async def _flush(self) -> None:
        self._timer = None
        now = self._scheduler.now()
        for ch in range(self.channels):
            value = self._pending[ch]
            if value is None:
                continue
            if not self._window_open(ch, now):
                continue
            self._pending[ch] = None
            logger.debug("Flushing coalesced LED update ring=%d value=%.3f", ch + 1, value)
            await self._send_now(ch, value, now)
        if any(v is not None for v in self._pending):
            self._arm(self._scheduler.now())
