from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from qcctv.constants import IMAGE_QUALITY
from qcctv.frame_codec import FramePacket, encode_frame
from qcctv.status import clamp_fps

from .connections import ConnectionManager, OutboundPacketBuffer

logger = logging.getLogger(__name__)


class StreamScheduler:
    """Drives the camera stream: health check, encode, broadcast.

    The timer is one-shot and re-armed after each tick with a period derived
    from the current fps, so an fps change applies from the next tick on.
    """

    def __init__(
        self,
        *,
        snapshot: Callable[[], FramePacket],
        outbound: OutboundPacketBuffer,
        connections: ConnectionManager,
        fps: Callable[[], int],
        health_check: Callable[[], None] | None = None,
        quality: int = IMAGE_QUALITY,
    ):
        self._snapshot: Callable[[], FramePacket] = snapshot
        self._outbound: OutboundPacketBuffer = outbound
        self._connections: ConnectionManager = connections
        self._fps: Callable[[], int] = fps
        self._health_check: Callable[[], None] | None = health_check
        self._quality: int = int(quality)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None

        self.ticks: int = 0
        self.frames_encoded: int = 0
        self.frames_skipped: int = 0
        self.broadcasts: int = 0

    def interval(self) -> float:
        return 1.0 / clamp_fps(self._fps())

    def produce(self) -> bool:
        """Encode a new frame unless the previous one is still unsent."""
        if self._outbound.pending:
            self.frames_skipped += 1
            return False
        data = encode_frame(self._snapshot(), quality=self._quality)
        _ = self._outbound.put(data)
        self.frames_encoded += 1
        return True

    def tick(self) -> None:
        self.ticks += 1
        if self._health_check is not None:
            self._health_check()

        try:
            _ = self.produce()
        except ValueError as exc:
            logger.warning("frame encoding failed: %s", exc)

        data = self._outbound.peek()
        if data is not None and self._connections.broadcast(data):
            self.broadcasts += 1

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is not None:
            raise RuntimeError("stream scheduler already running")
        self._loop = loop
        self._arm()

    def _arm(self) -> None:
        if self._loop is not None:
            self._timer = self._loop.call_later(self.interval(), self._on_timer)

    def _on_timer(self) -> None:
        try:
            self.tick()
        finally:
            self._arm()

    def stop(self) -> None:
        self._loop = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def is_running(self) -> bool:
        return self._loop is not None

    @property
    def stats(self) -> dict[str, int]:
        return {
            "ticks": self.ticks,
            "frames_encoded": self.frames_encoded,
            "frames_skipped": self.frames_skipped,
            "broadcasts": self.broadcasts,
            "viewers": len(self._connections),
        }
