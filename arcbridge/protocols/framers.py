"""Line framer for the Arc serial stream.

The device prints newline-terminated text, but the serial driver hands us
whatever bytes happened to arrive, so a single ``ENC:`` report can be split
anywhere, including in the middle of its decimal value. The framer keeps the
unterminated tail between reads and only releases whole lines.

Raw hooks receive every chunk before it is framed, which is how the CLI's
``--trace`` option shows the unprocessed traffic.
"""
from __future__ import annotations

import logging
from typing import Callable, List

logger = logging.getLogger("arcbridge.protocols.framers")

LINE_TERMINATOR = b"\n"
DEFAULT_MAX_LINE_LENGTH = 1024


class LineFramer:
    """Split an arbitrarily chunked byte stream into text lines."""

    def __init__(self, max_line_length: int = DEFAULT_MAX_LINE_LENGTH, encoding: str = "ascii"):
        self.max_line_length = max_line_length
        self.encoding = encoding
        self._buffer = bytearray()
        self._raw_hooks: List[Callable[[bytes], None]] = []
        self.discarded_bytes = 0

    def add_raw_hook(self, cb: Callable[[bytes], None]) -> None:
        """Register a callback that receives each raw chunk passed to :meth:`feed`."""
        self._raw_hooks.append(cb)

    def remove_raw_hook(self, cb: Callable[[bytes], None]) -> None:
        if cb in self._raw_hooks:
            self._raw_hooks.remove(cb)

    def _emit_raw(self, data: bytes) -> None:
        for cb in list(self._raw_hooks):
            try:
                cb(data)
            except Exception:
                # never let a tap break the read path
                logger.exception("Raw hook %r failed", cb)

    def feed(self, chunk: bytes) -> List[str]:
        """Append *chunk* and return the complete lines it finished, in order.

        Lines are decoded, stripped of the trailing ``\\r`` and surrounding
        whitespace, and blank lines are dropped. The final unterminated
        segment stays buffered for the next call.
        """
        if not chunk:
            return []
        self._emit_raw(bytes(chunk))
        self._buffer.extend(chunk)

        *complete, tail = self._buffer.split(LINE_TERMINATOR)
        self._buffer = bytearray(tail)

        if len(self._buffer) > self.max_line_length:
            logger.warning(
                "Discarding %d unterminated bytes (no newline within %d bytes)",
                len(self._buffer),
                self.max_line_length,
            )
            self.discarded_bytes += len(self._buffer)
            self._buffer.clear()

        lines: List[str] = []
        for raw in complete:
            text = raw.decode(self.encoding, errors="replace").strip()
            if text:
                lines.append(text)
        return lines

    def reset(self) -> None:
        """Drop any buffered partial line (used when the link goes away)."""
        self._buffer.clear()

    @property
    def pending(self) -> bytes:
        """Bytes received since the last line terminator."""
        return bytes(self._buffer)
