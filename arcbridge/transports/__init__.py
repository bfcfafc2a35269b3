"""Device links and their supervision."""

from .base import DEFAULT_BAUDRATE, ConnectionState, TransportInterface
from .mock import MockTransport
from .ports import AuthorizedSerialPorts, PortProvider, StaticPorts
from .serial_async import SerialTransport
from .supervisor import AttemptOrigin, ReconnectAttempt, ReconnectSupervisor

__all__ = [
    "AttemptOrigin",
    "AuthorizedSerialPorts",
    "ConnectionState",
    "DEFAULT_BAUDRATE",
    "MockTransport",
    "PortProvider",
    "ReconnectAttempt",
    "ReconnectSupervisor",
    "SerialTransport",
    "StaticPorts",
    "TransportInterface",
]
