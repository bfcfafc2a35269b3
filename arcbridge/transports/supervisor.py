"""Reconnect supervision for the device link.

Adapted from a long-running reconnect loop into a single-shot timer: after an
unexpected loss exactly one attempt is scheduled after a fixed delay, and a
loss that happens while that attempt is pending does not add another.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from arcbridge.core.scheduler import Scheduler, Timer

from .ports import PortProvider

logger = logging.getLogger("arcbridge.transport.supervisor")

DEFAULT_RECONNECT_DELAY = 3.0

ConnectCallback = Callable[[str, "AttemptOrigin"], Awaitable[bool]]


class AttemptOrigin(str, Enum):
    AUTOMATIC = "automatic"
    STARTUP = "startup"
    USER = "user"


@dataclass
class ReconnectAttempt:
    scheduled_at: float
    due_at: float
    origin: AttemptOrigin


class ReconnectSupervisor:
    """Schedules delayed reconnect attempts against authorized ports."""

    def __init__(
        self,
        scheduler: Scheduler,
        ports: PortProvider,
        connect: ConnectCallback,
        delay: float = DEFAULT_RECONNECT_DELAY,
    ):
        self._scheduler = scheduler
        self._ports = ports
        self._connect = connect
        self.delay = delay
        self._timer: Optional[Timer] = None
        self._pending: Optional[ReconnectAttempt] = None
        self._suppressed = False
        self.attempts = 0
        self.history: List[ReconnectAttempt] = []

    @property
    def pending(self) -> Optional[ReconnectAttempt]:
        if self._timer is not None and self._timer.active:
            return self._pending
        return None

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def schedule(self, delay: Optional[float] = None, origin: AttemptOrigin = AttemptOrigin.AUTOMATIC) -> bool:
        """Arm one reconnect attempt. Returns False if suppressed or already pending."""
        if self._suppressed:
            logger.info("Reconnect suppressed after user disconnect")
            return False
        if self.pending is not None:
            logger.debug("Reconnect already scheduled for %.3f", self._pending.due_at)
            return False
        delay = self.delay if delay is None else delay
        now = self._scheduler.now()
        self._pending = ReconnectAttempt(scheduled_at=now, due_at=now + delay, origin=origin)
        self._timer = self._scheduler.call_later(delay, self._attempt)
        logger.info("Reconnect (%s) scheduled in %.1fs", origin.value, delay)
        return True

    def suppress(self) -> None:
        """User disconnect: drop any pending attempt and stop automatic ones."""
        self._suppressed = True
        self.cancel()

    def resume(self) -> None:
        """User connect: automatic reconnects are allowed again."""
        self._suppressed = False

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._pending = None

    async def _attempt(self) -> None:
        attempt, self._pending, self._timer = self._pending, None, None
        if attempt is None or self._suppressed:
            return
        self.attempts += 1
        self.history.append(attempt)
        logger.info("Attempting to reconnect (%s)", attempt.origin.value)
        ports = await self._ports.authorized_ports()
        if not ports:
            logger.warning("No previously authorized device found; manual connection required")
            return
        await self._connect(ports[0], attempt.origin)
