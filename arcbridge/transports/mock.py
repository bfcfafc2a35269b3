import asyncio
from typing import Any, ClassVar, Iterable, List, Optional, Set, Tuple

from arcbridge.errors import ConnectionError

from .base import TransportInterface


class _MockWriter:
    """Stand-in for ``asyncio.StreamWriter`` that records what was written."""

    def __init__(self, owner: "MockTransport"):
        self._owner = owner
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("Mock writer closed")
        if self._owner.write_error is not None:
            exc, self._owner.write_error = self._owner.write_error, None
            raise exc
        self._owner.written.append(bytes(data))

    async def drain(self) -> None:
        if self._owner.drain_delay:
            await asyncio.sleep(self._owner.drain_delay)
        if self._closed:
            raise ConnectionResetError("Mock writer closed")

    def close(self) -> None:
        self._closed = True

    async def wait_closed(self) -> None:
        return None


class MockTransport(TransportInterface):
    """In-memory device link for tests and dry runs.

    Bytes passed to :meth:`feed` come out of the real read loop; writes are
    captured in :attr:`written`. Handles must be listed in ``handles`` to open,
    and each handle can be held by one transport at a time.
    """

    _claimed: ClassVar[Set[str]] = set()

    def __init__(self, handles: Iterable[str] = ("mock://arc",), write_timeout: float = 1.0):
        super().__init__(write_timeout=write_timeout)
        self.handles = set(handles)
        self.written: List[bytes] = []
        self.write_error: Optional[BaseException] = None
        self.drain_delay = 0.0
        self.open_count = 0
        self._mock_reader: Optional[asyncio.StreamReader] = None

    async def _open_streams(self, handle: str, baudrate: int) -> Tuple[asyncio.StreamReader, Any]:
        if handle not in self.handles:
            raise ConnectionError(f"Device {handle} not available")
        if handle in MockTransport._claimed:
            raise ConnectionError(f"Device {handle} is already open")
        MockTransport._claimed.add(handle)
        self.open_count += 1
        self._mock_reader = asyncio.StreamReader()
        return self._mock_reader, _MockWriter(self)

    async def _release(self, handle: str) -> None:
        MockTransport._claimed.discard(handle)

    # --- Test controls ---

    def feed(self, data: bytes) -> None:
        """Queue bytes as if the device had sent them."""
        if self._mock_reader is None:
            raise RuntimeError("MockTransport is not open")
        self._mock_reader.feed_data(data)

    def hang_up(self) -> None:
        """Simulate the device going away (read loop sees EOF)."""
        if self._mock_reader is not None:
            self._mock_reader.feed_eof()

    def fail_next_write(self, exc: Optional[BaseException] = None) -> None:
        self.write_error = exc or OSError("device unplugged")

    @property
    def commands(self) -> List[str]:
        """Written commands decoded as text, without the CRLF terminator."""
        return [chunk.decode("ascii").rstrip("\r\n") for chunk in self.written]
