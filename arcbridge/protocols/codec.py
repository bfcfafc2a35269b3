"""Text codec for the Arc's Lua console.

Incoming traffic is the encoder report printed by the handler we install::

    ENC:<ring 1-4>:<signed detent delta>:<value 0.000-1.000>

Outgoing traffic is Lua source for the device's own interpreter. The strings
built here are opaque payloads: nothing in this package evaluates them.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from arcbridge.errors import MalformedLineError, UnsupportedChannelError

logger = logging.getLogger("arcbridge.protocols.codec")

CHANNEL_COUNT = 4
# Each encoder detent moves the device-side value by this much.
DELTA_STEP = 0.01
LEDS_PER_RING = 64
LED_LEVEL = 15
ACKNOWLEDGEMENT = "Arc controlled"
COMMAND_TERMINATOR = b"\r\n"

_ENCODER_LINE = re.compile(r"ENC:(\d+):([+-]?\d+):(\d+(?:\.\d*)?|\.\d+)")


@dataclass(frozen=True)
class ChannelDelta:
    """One decoded encoder report (0-based channel)."""

    channel: int
    delta: int
    value: float

    @property
    def scaled_delta(self) -> float:
        """The delta in normalized units, as the device applied it."""
        return self.delta * DELTA_STEP


def _lua_number(value: float) -> str:
    text = f"{float(value):.4f}".rstrip("0").rstrip(".")
    return text or "0"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class ProtocolCodec:
    """Translate between wire text and bridge-level values."""

    def __init__(self, channels: int = CHANNEL_COUNT):
        self.channels = channels

    # --- Device -> bridge ---

    def parse(self, line: str) -> ChannelDelta:
        """Strictly parse an encoder report.

        Raises:
            MalformedLineError: the line is not an ``ENC:`` report.
            UnsupportedChannelError: the ring number is outside 1..channels.
        """
        match = _ENCODER_LINE.fullmatch(line.strip())
        if match is None:
            raise MalformedLineError(f"Not an encoder report: {line!r}")
        channel = int(match.group(1)) - 1
        if not 0 <= channel < self.channels:
            raise UnsupportedChannelError(f"Encoder ring {channel + 1} out of range")
        return ChannelDelta(
            channel=channel,
            delta=int(match.group(2)),
            value=float(match.group(3)),
        )

    def decode(self, line: str) -> Optional[ChannelDelta]:
        """Like :meth:`parse`, but returns ``None`` for anything unusable."""
        try:
            return self.parse(line)
        except (MalformedLineError, UnsupportedChannelError) as exc:
            logger.debug("Ignoring line: %s", exc)
            return None

    def is_acknowledgement(self, line: str) -> bool:
        return line.strip() == ACKNOWLEDGEMENT

    # --- Bridge -> device ---

    def encode_init(self, initial_values: Sequence[float]) -> List[str]:
        """Return the ordered setup sequence that takes control of the device.

        The order matters: running routines are stopped before the renderer
        and encoder handler are installed, values are seeded before every ring
        is drawn, and the acknowledgement comes last.
        """
        if len(initial_values) != self.channels:
            raise ValueError(f"Expected {self.channels} initial values, got {len(initial_values)}")
        seeded = ", ".join(_lua_number(_clamp(v)) for v in initial_values)
        return [
            "metro.allstop()",
            "old_tick = tick; tick = function() end",
            "old_redraw = redraw; redraw = function() end",
            (
                "function update_ring(n) "
                "local val = params[n]; "
                f"local num_leds = math.floor(val * {LEDS_PER_RING}); "
                "arc_led_all(n, 0); "
                "for i=1,num_leds do "
                f"local pos = (({LEDS_PER_RING // 2} + i - 2) % {LEDS_PER_RING}) + 1; "
                f"arc_led(n, pos, {LED_LEVEL}); "
                "end; "
                "arc_refresh() "
                "end"
            ),
            (
                "arc = function(n, d) "
                f"params[n] = math.max(0, math.min(1, params[n] + (d * {DELTA_STEP}))); "
                "update_ring(n); "
                'print(string.format("ENC:%d:%d:%.3f", n, d, params[n])) '
                "end"
            ),
            f"params = {{{seeded}}}",
            f"for i=1,{self.channels} do update_ring(i) end",
            f'print("{ACKNOWLEDGEMENT}")',
        ]

    def encode_led_update(self, channel: int, value: float) -> str:
        """Set the device-side value of *channel* and redraw its ring."""
        if not 0 <= channel < self.channels:
            raise UnsupportedChannelError(f"Channel {channel} out of range")
        if math.isnan(value):
            raise ValueError("LED value must be a number")
        ring = channel + 1
        return f"params[{ring}] = {_lua_number(_clamp(value))}; update_ring({ring})"

    @staticmethod
    def frame(command: str) -> bytes:
        """Encode a command for the wire (ASCII, CRLF terminated)."""
        return command.encode("ascii") + COMMAND_TERMINATOR
