"""Host-side list of previously authorized device handles.

The bridge never goes looking for new hardware. A handle is only reused if
the user authorized it earlier (listed in the config or on the command line)
and the host currently reports it as present.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

from serial.tools import list_ports

logger = logging.getLogger("arcbridge.transport.ports")


class PortProvider(ABC):
    @abstractmethod
    async def authorized_ports(self) -> List[str]:
        """Return the authorized handles currently available, in preference order."""


class StaticPorts(PortProvider):
    """Fixed list, returned as-is (tests, mock and URL handles)."""

    def __init__(self, ports: Iterable[str] = ()):
        self.ports = list(ports)

    async def authorized_ports(self) -> List[str]:
        return list(self.ports)


class AuthorizedSerialPorts(PortProvider):
    """Configured ports filtered by what ``serial.tools.list_ports`` can see.

    Entries containing ``://`` (pyserial URL handlers such as ``socket://``)
    cannot be enumerated and are passed through unchanged.
    """

    def __init__(self, ports: Iterable[str] = ()):
        self.ports = list(ports)

    async def authorized_ports(self) -> List[str]:
        if not self.ports:
            return []
        present = await asyncio.to_thread(lambda: {p.device for p in list_ports.comports()})
        available = [p for p in self.ports if "://" in p or p in present]
        missing = [p for p in self.ports if p not in available]
        if missing:
            logger.debug("Authorized ports not present: %s", ", ".join(missing))
        return available
