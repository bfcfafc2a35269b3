"""Typed events exchanged between the bridge and the rest of the system.

Outbound events describe the hardware lifecycle and encoder movement;
inbound events are commands from the application. Each event carries a
``topic`` string so an external pub/sub adapter can route it without
importing these classes.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger("arcbridge.events")


@dataclass(frozen=True)
class Event:
    topic: ClassVar[str] = "event"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["topic"] = self.topic
        return data


# --- Outbound ---

@dataclass(frozen=True)
class HardwareConnected(Event):
    topic: ClassVar[str] = "hardware:connected"
    timestamp: float
    parameter_values: Tuple[float, ...]
    auto_connect: bool = False


@dataclass(frozen=True)
class HardwareDisconnected(Event):
    topic: ClassVar[str] = "hardware:disconnected"
    timestamp: float


@dataclass(frozen=True)
class HardwareConnectionError(Event):
    topic: ClassVar[str] = "hardware:connectionError"
    message: str


@dataclass(frozen=True)
class ParameterChanged(Event):
    topic: ClassVar[str] = "hardware:parameterChanged"
    parameter_name: str
    value: float
    channel_index: int
    delta: float


# --- Inbound ---

@dataclass(frozen=True)
class ApplicationParameterChanged(Event):
    topic: ClassVar[str] = "application:parameterChanged"
    parameter_name: str
    value: float


@dataclass(frozen=True)
class ConnectRequested(Event):
    topic: ClassVar[str] = "hardware:requestConnect"
    handle: Optional[str] = None


@dataclass(frozen=True)
class DisconnectRequested(Event):
    topic: ClassVar[str] = "hardware:requestDisconnect"


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], None]


@dataclass
class _Subscription:
    handler: Handler
    priority: int = 0
    once: bool = False
    seq: int = field(default=0)


class EventBus:
    """In-process publish/subscribe keyed by event class.

    Handlers run synchronously in priority order (highest first, then
    subscription order). A failing handler is logged and does not stop the
    others.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[Type[Event], List[_Subscription]] = {}
        self._seq = 0

    def subscribe(
        self,
        event_type: Type[E],
        handler: Callable[[E], None],
        priority: int = 0,
        once: bool = False,
    ) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        self._seq += 1
        sub = _Subscription(handler=handler, priority=priority, once=once, seq=self._seq)
        self._subscriptions.setdefault(event_type, []).append(sub)
        logger.debug("Subscribed %r to %s", handler, event_type.topic)

        def unsubscribe() -> None:
            self._remove(event_type, sub)

        return unsubscribe

    def once(self, event_type: Type[E], handler: Callable[[E], None], priority: int = 0) -> Callable[[], None]:
        return self.subscribe(event_type, handler, priority=priority, once=True)

    def unsubscribe(self, event_type: Type[Event], handler: Handler) -> None:
        for sub in list(self._subscriptions.get(event_type, [])):
            if sub.handler == handler:
                self._remove(event_type, sub)
                break

    def _remove(self, event_type: Type[Event], sub: _Subscription) -> None:
        subs = self._subscriptions.get(event_type)
        if not subs or sub not in subs:
            return
        subs.remove(sub)
        if not subs:
            del self._subscriptions[event_type]

    def clear(self, event_type: Optional[Type[Event]] = None) -> None:
        if event_type is None:
            self._subscriptions.clear()
        else:
            self._subscriptions.pop(event_type, None)

    def has_subscribers(self, event_type: Type[Event]) -> bool:
        return bool(self._subscriptions.get(event_type))

    def publish(self, event: Event) -> bool:
        """Deliver *event*; returns True if at least one handler received it."""
        subs = sorted(
            self._subscriptions.get(type(event), []),
            key=lambda s: (-s.priority, s.seq),
        )
        if not subs:
            return False
        for sub in subs:
            if sub.once:
                self._remove(type(event), sub)
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Error in handler for %s", event.topic)
        return True
