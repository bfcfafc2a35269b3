"""Arc Bridge - serial control surface bridge for the Monome Arc.

The bridge takes control of an Arc over its Lua console, turns encoder
reports into parameter events, and mirrors application parameter changes
back onto the LED rings with per-ring rate limiting.
"""

from .bridge import ArcBridge
from .config import BridgeConfig, config_from_dict, load_config
from .events import (
    ApplicationParameterChanged,
    ConnectRequested,
    DisconnectRequested,
    Event,
    EventBus,
    HardwareConnected,
    HardwareConnectionError,
    HardwareDisconnected,
    ParameterChanged,
)

__all__ = [
    "ArcBridge",
    "BridgeConfig",
    "config_from_dict",
    "load_config",
    "ApplicationParameterChanged",
    "ConnectRequested",
    "DisconnectRequested",
    "Event",
    "EventBus",
    "HardwareConnected",
    "HardwareConnectionError",
    "HardwareDisconnected",
    "ParameterChanged",
]
