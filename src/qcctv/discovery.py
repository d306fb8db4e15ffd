from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Callable

from .constants import BROADCAST_HOST, DISCOVERY_INTERVAL_SECONDS, DISCOVERY_PORT, DISCOVERY_TOKEN

logger = logging.getLogger(__name__)

_TOKEN_BYTES = DISCOVERY_TOKEN.encode("ascii")


def numeric_ipv4(address: str) -> str:
    """Normalize a dotted IPv4 address; hostnames raise ``ValueError``."""
    try:
        return str(ipaddress.IPv4Address(address.strip()))
    except ValueError as exc:
        raise ValueError(f"expected a numeric IPv4 address, got {address!r}") from exc


class DiscoveryBeacon(asyncio.DatagramProtocol):
    """Announces a camera by periodically sending the discovery token.

    Runs on an asyncio loop: the datagram endpoint is opened by :meth:`start`
    and the next send is re-armed with ``loop.call_later`` after every tick.
    """

    def __init__(
        self,
        *,
        host: str = BROADCAST_HOST,
        port: int = DISCOVERY_PORT,
        interval: float = DISCOVERY_INTERVAL_SECONDS,
    ):
        self._host: str = numeric_ipv4(host)
        self._port: int = int(port)
        self._interval: float = float(interval)
        self._transport: asyncio.DatagramTransport | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self.sent: int = 0
        self.errors: int = 0

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    async def open(self) -> None:
        if self._transport is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if self._host == BROADCAST_HOST:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        loop = asyncio.get_running_loop()
        transport, _protocol = await loop.create_datagram_endpoint(lambda: self, sock=sock)
        self._transport = transport

    def error_received(self, exc: Exception) -> None:
        # no route / network down: the next tick tries again
        self.errors += 1
        logger.debug("discovery broadcast to %s:%d failed: %s", self._host, self._port, exc)

    def send(self) -> bool:
        """Send one beacon; failures are counted, never raised."""
        transport = self._transport
        if transport is None or transport.is_closing():
            return False
        errors = self.errors
        transport.sendto(_TOKEN_BYTES, (self._host, self._port))
        if self.errors != errors:
            return False
        self.sent += 1
        return True

    async def start(self) -> None:
        await self.open()
        self._loop = asyncio.get_running_loop()
        self._arm()

    def _arm(self) -> None:
        if self._loop is not None:
            self._timer = self._loop.call_later(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        try:
            _ = self.send()
        finally:
            self._arm()

    def stop(self) -> None:
        self._loop = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        self.stop()
        transport = self._transport
        self._transport = None
        if transport is not None:
            transport.close()


class DiscoveryListener(asyncio.DatagramProtocol):
    """Watches the discovery port and reports the address of every beacon.

    Repeated beacons from the same camera are reported every time; callers
    can use them as a keep-alive.
    """

    def __init__(
        self,
        on_discovered: Callable[[str], None] | None = None,
        *,
        host: str = "",
        port: int = DISCOVERY_PORT,
    ):
        self._host: str = host
        self._port: int = int(port)
        self._on_discovered: Callable[[str], None] | None = on_discovered
        self._transport: asyncio.DatagramTransport | None = None
        self.datagrams: int = 0
        self.ignored: int = 0

    def set_callback(self, callback: Callable[[str], None]) -> None:
        self._on_discovered = callback

    @property
    def port(self) -> int:
        if self._transport is None:
            return self._port
        return int(self._transport.get_extra_info("sockname")[1])

    async def open(self) -> None:
        if self._transport is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, self._port))
        except OSError:
            sock.close()
            raise
        sock.setblocking(False)
        loop = asyncio.get_running_loop()
        transport, _protocol = await loop.create_datagram_endpoint(lambda: self, sock=sock)
        self._transport = transport

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.datagrams += 1
        if data != _TOKEN_BYTES:
            self.ignored += 1
            return

        address = str(addr[0])
        if self._on_discovered is not None:
            self._on_discovered(address)

    def error_received(self, exc: Exception) -> None:
        logger.warning("discovery socket error: %s", exc)

    def close(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None:
            transport.close()
