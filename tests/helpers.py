"""Shared helpers for tests that drive camera and station code on asyncio.

Example:
    from helpers import wait_until

    async def test_session_streams(...):
        assert await wait_until(lambda: session.is_streaming)
"""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Callable
from typing import cast


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Yield to the running loop until ``predicate`` holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            return predicate()
        await asyncio.sleep(interval)
    return True


def free_tcp_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        addr = cast(tuple[str, int], sock.getsockname())
        return int(addr[1])


def free_udp_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind((host, 0))
        addr = cast(tuple[str, int], sock.getsockname())
        return int(addr[1])
