"""Core state and timing: parameter store, LED throttle, scheduler."""

from .parameters import (
    DEFAULT_CHANNEL_NAMES,
    DEFAULT_VALUES,
    Channel,
    HardwareUpdate,
    ParameterStore,
    SetResult,
)
from .scheduler import AsyncioScheduler, Scheduler, Timer
from .throttle import LedThrottler

__all__ = [
    "AsyncioScheduler",
    "Channel",
    "DEFAULT_CHANNEL_NAMES",
    "DEFAULT_VALUES",
    "HardwareUpdate",
    "LedThrottler",
    "ParameterStore",
    "Scheduler",
    "SetResult",
    "Timer",
]
