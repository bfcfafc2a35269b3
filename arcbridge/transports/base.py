"""Shared link lifecycle for byte-stream transports.

Subclasses only know how to turn a handle into an asyncio reader/writer pair;
the state machine, the single-writer lock, the read loop and loss reporting
live here so the serial and mock transports behave identically.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from arcbridge.errors import ConnectionError, WriteError

logger = logging.getLogger("arcbridge.transport")

DEFAULT_BAUDRATE = 115200
READ_CHUNK_SIZE = 4096

Receiver = Callable[[bytes], Awaitable[None]]
LostHandler = Callable[[Optional[BaseException]], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class TransportInterface(ABC):
    """One device link: open/close, exclusive writes, and a read loop.

    ``receiver`` is awaited with every chunk the read loop produces.
    ``lost_handler`` is awaited at most once per open, when the link fails
    while OPEN (read EOF, read error, write error). A user-initiated
    :meth:`close` never counts as a loss.
    """

    def __init__(self, write_timeout: float = 1.0):
        self.write_timeout = write_timeout
        self.handle: Optional[str] = None
        self.baudrate: int = DEFAULT_BAUDRATE
        self._state = ConnectionState.DISCONNECTED
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[Any] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._receiver: Optional[Receiver] = None
        self._lost_handler: Optional[LostHandler] = None
        self._loss_reported = False

    @abstractmethod
    async def _open_streams(self, handle: str, baudrate: int) -> Tuple[asyncio.StreamReader, Any]:
        """Open *handle* and return ``(reader, writer)``; raise ConnectionError on failure."""

    async def _release(self, handle: str) -> None:
        """Hook for subclasses that track handle ownership."""

    # --- Wiring ---

    def set_receiver(self, receiver: Receiver) -> None:
        self._receiver = receiver

    def set_lost_handler(self, handler: LostHandler) -> None:
        self._lost_handler = handler

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    # --- Lifecycle ---

    async def open(self, handle: str, baudrate: int = DEFAULT_BAUDRATE) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            raise ConnectionError(f"Transport busy ({self._state.value}); close it before opening {handle}")
        self._state = ConnectionState.CONNECTING
        logger.info("Opening %s at %d baud", handle, baudrate)
        try:
            reader, writer = await self._open_streams(handle, baudrate)
        except ConnectionError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except (OSError, ValueError) as exc:
            self._state = ConnectionState.DISCONNECTED
            raise ConnectionError(f"Cannot open {handle}: {exc}") from exc
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self.handle = handle
        self.baudrate = baudrate
        self._reader = reader
        self._writer = writer
        self._loss_reported = False
        self._state = ConnectionState.OPEN
        self._rx_task = asyncio.create_task(self._rx_loop(), name=f"arcbridge-rx-{handle}")
        logger.info("Opened %s", handle)

    async def close(self) -> None:
        """Cancel the read loop and release the handle. Safe to call repeatedly."""
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSING):
            return
        self._state = ConnectionState.CLOSING

        task, self._rx_task = self._rx_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            # closing the writer makes any in-flight drain() fail instead of blocking us
            try:
                writer.close()
                await asyncio.wait_for(writer.wait_closed(), timeout=self.write_timeout)
            except (OSError, asyncio.TimeoutError) as exc:
                logger.debug("Ignoring error while closing %s: %s", self.handle, exc)

        if self.handle is not None:
            await self._release(self.handle)
        self._state = ConnectionState.DISCONNECTED
        logger.info("Closed %s", self.handle)

    # --- I/O ---

    async def write(self, data: bytes) -> None:
        if not self.is_open:
            raise WriteError(f"Transport not open ({self._state.value})")
        async with self._write_lock:
            writer = self._writer
            if not self.is_open or writer is None:
                raise WriteError("Transport closed while waiting to write")
            try:
                writer.write(data)
                await asyncio.wait_for(writer.drain(), timeout=self.write_timeout)
            except (OSError, RuntimeError, asyncio.TimeoutError) as exc:
                logger.error("Write to %s failed: %s", self.handle, exc)
                await self._report_loss(exc)
                raise WriteError(f"Write to {self.handle} failed: {exc}") from exc
        logger.debug("TX %r", data)

    async def _rx_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            while self.is_open and self._reader is not None:
                data = await self._reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.warning("Read stream from %s ended", self.handle)
                    break
                logger.debug("RX %r", data)
                if self._receiver is not None:
                    await self._receiver(data)
        except asyncio.CancelledError:
            return
        except OSError as exc:
            logger.error("Read from %s failed: %s", self.handle, exc)
            error = exc
        except Exception as exc:
            logger.exception("Read loop for %s crashed", self.handle)
            error = exc
        await self._report_loss(error)

    async def _report_loss(self, error: Optional[BaseException]) -> None:
        if self._loss_reported or not self.is_open:
            return
        self._loss_reported = True
        if self._lost_handler is None:
            await self.close()
            return
        await self._lost_handler(error)
