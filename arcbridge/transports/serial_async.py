import asyncio
import logging
from typing import Any, Tuple

import serial
import serial_asyncio

from arcbridge.errors import ConnectionError

from .base import DEFAULT_BAUDRATE, TransportInterface

logger = logging.getLogger("arcbridge.transport.serial")


class SerialTransport(TransportInterface):
    """Serial link to the Arc via pyserial-asyncio.

    Ports are opened with ``exclusive=True`` so a port already held by another
    process fails the open instead of silently sharing the stream.
    """

    def __init__(self, write_timeout: float = 1.0, open_timeout: float = 5.0):
        super().__init__(write_timeout=write_timeout)
        self.open_timeout = open_timeout

    async def _open_streams(self, handle: str, baudrate: int = DEFAULT_BAUDRATE) -> Tuple[asyncio.StreamReader, Any]:
        logger.debug("SerialTransport: opening port=%s baud=%s", handle, baudrate)
        try:
            return await asyncio.wait_for(
                serial_asyncio.open_serial_connection(
                    url=handle,
                    baudrate=baudrate,
                    bytesize=serial.EIGHTBITS,
                    parity=serial.PARITY_NONE,
                    stopbits=serial.STOPBITS_ONE,
                    exclusive=True,
                ),
                timeout=self.open_timeout,
            )
        except serial.SerialException as exc:
            raise ConnectionError(f"Cannot open {handle}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ConnectionError(f"Timed out opening {handle}") from exc
