from __future__ import annotations

import asyncio
import itertools
import logging
import socket
from collections.abc import Callable
from typing import Protocol

from qcctv.command_codec import CommandPacket, InvalidCommandError, decode_command

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096


class OutboundPacketBuffer:
    """Holds the single encoded frame waiting to be broadcast."""

    def __init__(self) -> None:
        self._data: bytes | None = None

    @property
    def pending(self) -> bool:
        return self._data is not None

    def put(self, data: bytes) -> bool:
        if self._data is not None:
            return False
        self._data = bytes(data)
        return True

    def peek(self) -> bytes | None:
        return self._data

    def clear(self) -> None:
        self._data = None


class StreamSocket(Protocol):
    def fileno(self) -> int: ...

    def send(self, data: bytes, /) -> int: ...

    def recv(self, bufsize: int, /) -> bytes: ...

    def setblocking(self, flag: bool, /) -> None: ...

    def close(self) -> None: ...


class _Connection:
    def __init__(self, handle: int, sock: StreamSocket, address: str):
        self.handle: int = handle
        self.sock: StreamSocket = sock
        self.address: str = address
        self.outgoing: bytearray = bytearray()
        self.frames_sent: int = 0
        self.frames_skipped: int = 0


class ConnectionManager:
    """Owns every viewer connection of a camera node.

    All methods are meant to run on the node's asyncio loop; nothing else
    touches the connection set.
    """

    def __init__(
        self,
        outbound: OutboundPacketBuffer,
        *,
        listener: socket.socket | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        on_command: Callable[[CommandPacket], None] | None = None,
    ):
        self._outbound: OutboundPacketBuffer = outbound
        self._listener: socket.socket | None = listener
        self._loop: asyncio.AbstractEventLoop | None = loop
        self._on_command: Callable[[CommandPacket], None] | None = on_command
        self._connections: dict[int, _Connection] = {}
        self._handles: itertools.count[int] = itertools.count(1)

        self.commands_received: int = 0
        self.commands_dropped: int = 0

        if self._listener is not None:
            self._listener.setblocking(False)
            if self._loop is not None:
                self._loop.add_reader(self._listener, self._on_listener_readable)

    @property
    def connections(self) -> dict[int, str]:
        return {handle: conn.address for handle, conn in self._connections.items()}

    def connected_hosts(self) -> list[str]:
        return [conn.address for conn in self._connections.values()]

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, handle: object) -> bool:
        return handle in self._connections

    def _on_listener_readable(self) -> None:
        _ = self.accept()

    def accept(self) -> list[int]:
        """Accept every connection currently pending on the listening socket."""
        accepted: list[int] = []
        listener = self._listener
        if listener is None:
            return accepted

        while True:
            try:
                sock, addr = listener.accept()
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                logger.warning("accept failed: %s", exc)
                break

            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass
            accepted.append(self.add_connection(sock, str(addr[0])))

        return accepted

    def add_connection(self, sock: StreamSocket, address: str) -> int:
        sock.setblocking(False)
        handle = next(self._handles)
        self._connections[handle] = _Connection(handle, sock, address)
        if self._loop is not None:
            self._loop.add_reader(sock, self._dispatch_readable, handle)
        logger.info("viewer %s connected (handle %d, %d total)", address, handle, len(self._connections))
        return handle

    def _dispatch_readable(self, handle: int) -> None:
        command = self.on_readable(handle)
        if command is not None and self._on_command is not None:
            self._on_command(command)

    def on_readable(self, handle: int) -> CommandPacket | None:
        """Read one command from ``handle``; ``None`` if nothing valid arrived.

        Each read is treated as exactly one command. Reads of any other size
        are dropped whole.
        """
        conn = self._connections.get(handle)
        if conn is None:
            return None

        try:
            data = conn.sock.recv(READ_CHUNK_BYTES)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as exc:
            logger.info("viewer %s read error: %s", conn.address, exc)
            self.on_disconnected(handle)
            return None

        if not data:
            self.on_disconnected(handle)
            return None

        try:
            command = decode_command(data)
        except InvalidCommandError as exc:
            self.commands_dropped += 1
            logger.debug("dropped command from %s: %s", conn.address, exc)
            return None

        self.commands_received += 1
        return command

    def on_disconnected(self, handle: int) -> None:
        conn = self._connections.pop(handle, None)
        if conn is None:
            return
        self._release(conn.sock)
        try:
            conn.sock.close()
        except OSError:
            pass
        logger.info("viewer %s disconnected (handle %d, %d left)", conn.address, handle, len(self._connections))

    def broadcast(self, data: bytes) -> bool:
        """Queue ``data`` on every live connection without waiting for the peers.

        A peer still draining an earlier frame skips this one. A peer whose
        write fails is removed. Returns ``True`` (and clears the outbound
        buffer) when there is no peer or at least one peer took the frame.
        """
        delivered = 0
        failed: list[int] = []

        for handle, conn in list(self._connections.items()):
            if conn.outgoing:
                conn.frames_skipped += 1
                continue

            conn.outgoing.extend(data)
            if self._flush(conn):
                conn.frames_sent += 1
                delivered += 1
            else:
                failed.append(handle)

        for handle in failed:
            self.on_disconnected(handle)

        if delivered or not self._connections:
            self._outbound.clear()
            return True
        return False

    def on_writable(self, handle: int) -> None:
        conn = self._connections.get(handle)
        if conn is None:
            return
        if not self._flush(conn):
            self.on_disconnected(handle)

    def _flush(self, conn: _Connection) -> bool:
        while conn.outgoing:
            try:
                sent = conn.sock.send(bytes(conn.outgoing))
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                logger.info("viewer %s write error: %s", conn.address, exc)
                return False
            if sent <= 0:
                break
            del conn.outgoing[:sent]

        if self._loop is not None and conn.handle in self._connections:
            if conn.outgoing:
                self._loop.add_writer(conn.sock, self.on_writable, conn.handle)
            else:
                _ = self._loop.remove_writer(conn.sock)
        return True

    def _release(self, sock: StreamSocket | socket.socket) -> None:
        if self._loop is not None:
            _ = self._loop.remove_reader(sock)
            _ = self._loop.remove_writer(sock)

    def backlog(self, handle: int) -> int:
        conn = self._connections.get(handle)
        return len(conn.outgoing) if conn is not None else 0

    def close_all(self) -> None:
        for handle in list(self._connections):
            self.on_disconnected(handle)
        listener = self._listener
        self._listener = None
        if listener is not None:
            self._release(listener)
            try:
                listener.close()
            except OSError:
                pass
