from __future__ import annotations

import argparse
import asyncio
import logging
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from qcctv.command_codec import CommandPacket
from qcctv.constants import (
    BROADCAST_HOST,
    DEFAULT_CAMERA_NAME,
    DEFAULT_FPS,
    DISCOVERY_INTERVAL_SECONDS,
    DISCOVERY_PORT,
    IMAGE_QUALITY,
    STREAM_PORT,
)
from qcctv.discovery import DiscoveryBeacon, numeric_ipv4
from qcctv.frame_codec import FramePacket
from qcctv.image import status_image
from qcctv.signals import Signal
from qcctv.status import LightStatus, StatusFlag, StatusFlags, clamp_fps

from .backends import (
    BackendUnavailableError,
    FrameSource,
    LightController,
    NullLight,
    create_frame_source,
    create_light,
)
from .connections import ConnectionManager, OutboundPacketBuffer
from .grabber import FrameGrabber
from .scheduler import StreamScheduler

logger = logging.getLogger(__name__)


@dataclass
class CameraIdentity:
    name: str = DEFAULT_CAMERA_NAME
    address: str = ""
    group: str = ""


class CameraState:
    """Everything a camera reports to its viewers.

    One re-entrant lock guards all fields so the frame grabber thread, UI
    code and the event loop can share it. Every setter returns whether the
    value changed and emits the matching signal only in that case.
    """

    def __init__(
        self,
        *,
        light: LightController | None = None,
        focus: Callable[[], None] | None = None,
        name: str = DEFAULT_CAMERA_NAME,
        group: str = "",
        fps: int = DEFAULT_FPS,
    ):
        self._lock: threading.RLock = threading.RLock()
        self._light: LightController = light if light is not None else NullLight()
        self._focus: Callable[[], None] | None = focus

        self._identity: CameraIdentity = CameraIdentity(name=name, group=group)
        self._fps: int = clamp_fps(fps)
        self._light_status: LightStatus = LightStatus.OFF
        self._status: StatusFlags = StatusFlags()
        self._image: np.ndarray = status_image()
        self._has_image: bool = False

        self.name_changed: Signal = Signal()
        self.group_changed: Signal = Signal()
        self.fps_changed: Signal = Signal()
        self.light_status_changed: Signal = Signal()
        self.image_changed: Signal = Signal()
        self.focus_requested: Signal = Signal()

    @property
    def status_changed(self) -> Signal:
        return self._status.changed

    @property
    def name(self) -> str:
        with self._lock:
            return self._identity.name

    def set_name(self, name: str) -> bool:
        with self._lock:
            if self._identity.name == name:
                return False
            self._identity.name = name
        self.name_changed.emit(name)
        return True

    @property
    def group(self) -> str:
        with self._lock:
            return self._identity.group

    def set_group(self, group: str) -> bool:
        with self._lock:
            if self._identity.group == group:
                return False
            self._identity.group = group
        self.group_changed.emit(group)
        return True

    @property
    def address(self) -> str:
        with self._lock:
            return self._identity.address

    def set_address(self, address: str) -> None:
        with self._lock:
            self._identity.address = address

    @property
    def fps(self) -> int:
        with self._lock:
            return self._fps

    def set_fps(self, fps: int) -> bool:
        value = clamp_fps(fps)
        with self._lock:
            if self._fps == value:
                return False
            self._fps = value
        self.fps_changed.emit(value)
        return True

    @property
    def light_status(self) -> LightStatus:
        with self._lock:
            return self._light_status

    def light_available(self) -> bool:
        return self._light.is_available()

    def set_light_status(self, status: LightStatus) -> bool:
        """Switch the light; rejected when the light hardware is unavailable."""
        with self._lock:
            if self._light_status == status:
                return False
            if not self._light.is_available():
                logger.debug("light change to %s rejected: light unavailable", status.name)
                return False
            try:
                self._light.set_enabled(status == LightStatus.ON)
            except BackendUnavailableError as exc:
                logger.warning("light change to %s failed: %s", status.name, exc)
                return False
            self._light_status = status
        self.light_status_changed.emit(status)
        return True

    @property
    def status(self) -> StatusFlags:
        with self._lock:
            return self._status.copy()

    def add_status_flag(self, flag: StatusFlag) -> bool:
        with self._lock:
            return self._status.add(flag)

    def remove_status_flag(self, flag: StatusFlag) -> bool:
        with self._lock:
            return self._status.remove(flag)

    def status_string(self) -> str:
        with self._lock:
            return self._status.describe()

    @property
    def image(self) -> np.ndarray:
        with self._lock:
            return self._image

    @property
    def has_image(self) -> bool:
        with self._lock:
            return self._has_image

    def set_image(self, image: np.ndarray | None) -> bool:
        if image is None or image.size == 0:
            return False
        with self._lock:
            self._image = image
            self._has_image = True
        self.image_changed.emit()
        return True

    def focus(self) -> None:
        if self._focus is not None:
            self._focus()
        self.focus_requested.emit()

    def snapshot(self) -> FramePacket:
        with self._lock:
            return FramePacket(
                name=self._identity.name,
                fps=self._fps,
                light_status=self._light_status,
                status=self._status.copy(),
                image=self._image,
            )


@dataclass
class CameraNodeConfig:
    name: str = DEFAULT_CAMERA_NAME
    group: str = ""
    tcp_host: str = "0.0.0.0"
    tcp_port: int = STREAM_PORT
    discovery_host: str = BROADCAST_HOST
    discovery_port: int = DISCOVERY_PORT
    discovery_interval: float = DISCOVERY_INTERVAL_SECONDS
    backend: str = "dummy"
    light: str = "none"
    fps: int = DEFAULT_FPS
    quality: int = IMAGE_QUALITY
    grayscale: bool = False
    shrink_ratio: float = 1.0


class CameraNode:
    """Camera side of the protocol: beacon, viewer connections and stream.

    Everything except the frame grabber runs on the asyncio loop that calls
    :meth:`start`; the grabber thread only touches :class:`CameraState`.
    """

    def __init__(
        self,
        config: CameraNodeConfig,
        *,
        source: FrameSource | None = None,
        light: LightController | None = None,
    ):
        self._config: CameraNodeConfig = config
        self._source: FrameSource = source if source is not None else create_frame_source(config.backend)
        self._light: LightController = light if light is not None else create_light(config.light)

        self.state: CameraState = CameraState(
            light=self._light,
            focus=self._focus_source,
            name=config.name,
            group=config.group,
            fps=config.fps,
        )
        self._grabber: FrameGrabber = FrameGrabber(
            source=self._source,
            on_frame=self._on_frame,
            target_fps=float(self.state.fps),
            shrink_ratio=config.shrink_ratio,
            grayscale=config.grayscale,
        )
        self.state.fps_changed.connect(self._on_fps_changed)

        self._outbound: OutboundPacketBuffer = OutboundPacketBuffer()
        self._server_socket: socket.socket | None = None
        self._connections: ConnectionManager | None = None
        self._scheduler: StreamScheduler | None = None
        self._beacon: DiscoveryBeacon = DiscoveryBeacon(
            host=config.discovery_host,
            port=config.discovery_port,
            interval=config.discovery_interval,
        )
        self._stopped: asyncio.Event | None = None
        self._running: bool = False

    @property
    def connections(self) -> ConnectionManager:
        if self._connections is None:
            raise RuntimeError("camera node is not open")
        return self._connections

    @property
    def scheduler(self) -> StreamScheduler:
        if self._scheduler is None:
            raise RuntimeError("camera node is not open")
        return self._scheduler

    @property
    def grabber(self) -> FrameGrabber:
        return self._grabber

    @property
    def beacon(self) -> DiscoveryBeacon:
        return self._beacon

    @property
    def stream_port(self) -> int:
        if self._server_socket is None:
            return int(self._config.tcp_port)
        return int(self._server_socket.getsockname()[1])

    def open(self) -> None:
        """Bind the stream port; must be called from the running loop."""
        if self._server_socket is not None:
            return
        loop = asyncio.get_running_loop()

        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self._config.tcp_host, self._config.tcp_port))
            server_socket.listen()
        except OSError:
            server_socket.close()
            raise
        self._server_socket = server_socket
        self.state.set_address(str(server_socket.getsockname()[0]))

        self._connections = ConnectionManager(
            self._outbound,
            listener=server_socket,
            loop=loop,
            on_command=self.handle_command,
        )
        self._scheduler = StreamScheduler(
            snapshot=self.state.snapshot,
            outbound=self._outbound,
            connections=self._connections,
            fps=lambda: self.state.fps,
            health_check=self.update_status,
            quality=self._config.quality,
        )
        logger.info(
            "camera %r streaming on %s:%d",
            self.state.name,
            self._config.tcp_host,
            self.stream_port,
        )

    async def start(self) -> None:
        """Open the node and start capturing, streaming and announcing."""
        if self._running:
            return
        self.open()
        self._stopped = asyncio.Event()
        self._grabber.start()
        self.scheduler.start(asyncio.get_running_loop())
        await self._beacon.start()
        self._running = True

    async def serve_forever(self) -> None:
        await self.start()
        assert self._stopped is not None
        try:
            _ = await self._stopped.wait()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Release every socket and stop the grabber. Safe to call twice."""
        self._running = False
        if self._stopped is not None:
            self._stopped.set()
        if self._scheduler is not None:
            self._scheduler.stop()
        self._beacon.close()
        if self._connections is not None:
            self._connections.close_all()
        elif self._server_socket is not None:
            self._server_socket.close()
        self._server_socket = None
        self._grabber.stop()

    def update_status(self) -> None:
        if self._grabber.healthy:
            _ = self.state.remove_status_flag(StatusFlag.VIDEO_FAILURE)
        else:
            _ = self.state.add_status_flag(StatusFlag.VIDEO_FAILURE)

        if self.state.light_available():
            _ = self.state.remove_status_flag(StatusFlag.LIGHT_FAILURE)
        else:
            _ = self.state.add_status_flag(StatusFlag.LIGHT_FAILURE)

    def handle_command(self, command: CommandPacket) -> None:
        _ = self.state.set_fps(command.fps)

        light = command.light
        if light is None:
            logger.debug("ignoring unknown light status %d", command.light_status)
        else:
            _ = self.state.set_light_status(light)

        if command.force_focus:
            self.state.focus()

    def _on_frame(self, frame: np.ndarray) -> None:
        _ = self.state.set_image(frame)

    def _on_fps_changed(self, fps: int) -> None:
        self._grabber.set_target_fps(float(fps))

    def _focus_source(self) -> None:
        try:
            self._source.focus()
        except Exception as exc:
            logger.warning("focus request failed: %s", exc)

    def set_grayscale(self, grayscale: bool) -> None:
        self._grabber.set_grayscale(grayscale)

    def set_shrink_ratio(self, ratio: float) -> None:
        self._grabber.set_shrink_ratio(ratio)

    def connected_hosts(self) -> list[str]:
        if self._connections is None:
            return []
        return self._connections.connected_hosts()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, object]:
        stats: dict[str, object] = {
            "name": self.state.name,
            "fps": self.state.fps,
            "status": self.state.status_string(),
            "frames_captured": self._grabber.frames_captured,
            "beacons_sent": self._beacon.sent,
        }
        if self._scheduler is not None:
            stats.update(self._scheduler.stats)
        return stats


def parse_args(argv: list[str] | None = None) -> tuple[CameraNodeConfig, str]:
    parser = argparse.ArgumentParser(prog="python -m camera", description="QCCTV camera node")
    _ = parser.add_argument("--name", default=DEFAULT_CAMERA_NAME, help="Camera name shown to stations")
    _ = parser.add_argument("--group", default="", help="Camera group label")
    _ = parser.add_argument("--tcp-host", default="0.0.0.0", help="TCP bind host")
    _ = parser.add_argument("--tcp-port", type=int, default=STREAM_PORT, help="TCP stream port")
    _ = parser.add_argument(
        "--discovery-host",
        default=BROADCAST_HOST,
        help="Numeric IPv4 destination of discovery beacons (default: broadcast)",
    )
    _ = parser.add_argument("--discovery-port", type=int, default=DISCOVERY_PORT, help="UDP discovery port")
    _ = parser.add_argument(
        "--discovery-interval",
        type=float,
        default=DISCOVERY_INTERVAL_SECONDS,
        help="Seconds between discovery beacons",
    )
    _ = parser.add_argument(
        "--backend",
        choices=("dummy", "picamera2"),
        default="dummy",
        help="Capture backend to use (default: dummy)",
    )
    _ = parser.add_argument(
        "--light",
        choices=("none", "dummy"),
        default="none",
        help="Light controller to use (default: none)",
    )
    _ = parser.add_argument("--fps", type=int, default=DEFAULT_FPS, help="Initial stream fps")
    _ = parser.add_argument("--quality", type=int, default=IMAGE_QUALITY, help="JPEG quality 1-100")
    _ = parser.add_argument("--grayscale", action="store_true", help="Stream grayscale images")
    _ = parser.add_argument("--shrink-ratio", type=float, default=1.0, help="Image scale factor in (0, 1]")
    _ = parser.add_argument("--log-level", default="INFO", help="Logging level")

    namespace = parser.parse_args(argv)

    if not 1 <= namespace.quality <= 100:
        raise SystemExit("--quality must be within 1-100")
    if not 0.0 < namespace.shrink_ratio <= 1.0:
        raise SystemExit("--shrink-ratio must be within (0, 1]")
    if namespace.discovery_interval <= 0.0:
        raise SystemExit("--discovery-interval must be positive")
    try:
        discovery_host = numeric_ipv4(namespace.discovery_host)
    except ValueError as exc:
        raise SystemExit(f"--discovery-host: {exc}")

    config = CameraNodeConfig(
        name=namespace.name,
        group=namespace.group,
        tcp_host=namespace.tcp_host,
        tcp_port=namespace.tcp_port,
        discovery_host=discovery_host,
        discovery_port=namespace.discovery_port,
        discovery_interval=namespace.discovery_interval,
        backend=namespace.backend,
        light=namespace.light,
        fps=clamp_fps(namespace.fps),
        quality=namespace.quality,
        grayscale=namespace.grayscale,
        shrink_ratio=namespace.shrink_ratio,
    )
    return config, str(namespace.log_level)


def main(argv: list[str] | None = None) -> int:
    config, log_level = parse_args(argv)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    node = CameraNode(config)

    try:
        asyncio.run(node.serve_forever())
    except KeyboardInterrupt:
        pass
    finally:
        node.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
