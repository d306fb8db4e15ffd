"""
QCCTV station: discovers cameras on the LAN and streams from each of them.

Provides functionality to:
- Listen for discovery beacons and open a session per camera address
- Reconnect disconnected cameras when they announce themselves again
- Drop cameras whose beacons stopped (optional liveness timeout)
- Command line viewer printing one JSON line per received frame
"""

import argparse
import asyncio
import json
import logging
import socket
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, List, Tuple, Callable, Any

import cv2

from qcctv.constants import DISCOVERY_PORT, STREAM_PORT
from qcctv.discovery import DiscoveryListener, numeric_ipv4
from qcctv.frame_codec import FramePacket
from qcctv.status import LightStatus, clamp_fps

from .session import RemoteSession, SessionState

logger = logging.getLogger(__name__)


@dataclass
class StationConfig:
    """Station settings."""
    discovery_host: str = ""
    discovery_port: int = DISCOVERY_PORT
    stream_port: int = STREAM_PORT
    cameras: List[str] = field(default_factory=list)  # "host" or "host:port", no discovery needed
    discovery: bool = True
    camera_timeout: float = 0.0  # seconds without beacon before dropping; 0 disables
    fps: Optional[int] = None
    light: Optional[LightStatus] = None
    focus: bool = False
    output_dir: Optional[str] = None
    duration: Optional[float] = None


class Station:
    """
    Owns the discovery listener and every camera session of a station.

    All sockets and timers live on the asyncio loop that calls :meth:`open`.

    Usage:
        station = Station(StationConfig())
        station.set_frame_callback(on_frame)
        await station.run(duration=10.0)
    """

    LIVENESS_CHECK_INTERVAL = 1.0

    def __init__(self, config: StationConfig):
        """
        Initialize station.

        Args:
            config: Station settings
        """
        self.config = config

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sessions: Dict[str, RemoteSession] = {}
        self._last_seen: Dict[str, float] = {}
        self._listener: Optional[DiscoveryListener] = None
        self._liveness_timer: Optional[asyncio.TimerHandle] = None
        self._stopped: Optional[asyncio.Event] = None

        self._frame_callback: Optional[Callable[[RemoteSession, FramePacket], None]] = None
        self._session_callback: Optional[Callable[[RemoteSession], None]] = None
        self._started = False

    def set_frame_callback(self, callback: Callable[[RemoteSession, FramePacket], None]) -> None:
        """Set callback for every applied frame."""
        self._frame_callback = callback

    def set_session_callback(self, callback: Callable[[RemoteSession], None]) -> None:
        """Set callback for session state changes."""
        self._session_callback = callback

    @property
    def sessions(self) -> Dict[str, RemoteSession]:
        return dict(self._sessions)

    @property
    def discovery_port(self) -> int:
        if self._listener is None:
            return self.config.discovery_port
        return self._listener.port

    def last_seen(self, address: str) -> Optional[float]:
        """Monotonic time of the last beacon from ``address``."""
        return self._last_seen.get(address)

    @property
    def is_running(self) -> bool:
        return self._started

    async def open(self) -> None:
        """Bind the discovery socket and connect the static cameras."""
        if self._started:
            return
        self._started = True
        self._loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()

        if self.config.discovery:
            listener = DiscoveryListener(
                self.on_discovered,
                host=self.config.discovery_host,
                port=self.config.discovery_port,
            )
            try:
                await listener.open()
            except OSError:
                self._started = False
                raise
            self._listener = listener

        for entry in self.config.cameras:
            host, port = parse_host_port(entry, self.config.stream_port)
            try:
                address = await resolve_address(host, port)
            except OSError as e:
                logger.warning("could not resolve camera %s: %s", host, e)
                continue
            self.add_camera(address, port)

        if self.config.camera_timeout > 0:
            self._liveness_timer = self._loop.call_later(self.LIVENESS_CHECK_INTERVAL, self._check_liveness)

    async def run(self, duration: Optional[float] = None) -> None:
        """Serve until :meth:`stop` is called or ``duration`` seconds passed."""
        await self.open()
        stopped = self._stopped
        try:
            if stopped is None:
                return
            if duration is None:
                await stopped.wait()
            else:
                try:
                    await asyncio.wait_for(stopped.wait(), timeout=duration)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.stop()

    def stop(self) -> None:
        """Close every session and the discovery socket. Safe to call twice."""
        if self._liveness_timer is not None:
            self._liveness_timer.cancel()
            self._liveness_timer = None
        for session in list(self._sessions.values()):
            session.disconnect()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        self._started = False
        if self._stopped is not None:
            self._stopped.set()

    def on_discovered(self, address: str) -> None:
        """Handle a beacon: track liveness and (re)connect the camera."""
        self._last_seen[address] = time.monotonic()
        session = self._sessions.get(address)
        if session is None:
            logger.info("discovered camera at %s", address)
            self.add_camera(address)
        elif session.state is SessionState.DISCONNECTED:
            _ = session.connect()

    def add_camera(self, address: str, port: Optional[int] = None) -> RemoteSession:
        session = self._sessions.get(address)
        if session is None:
            stream_port = self.config.stream_port if port is None else port
            session = RemoteSession(address, port=stream_port, loop=self._loop)
            session.frame_received.connect(self._on_frame)
            session.state_changed.connect(self._on_state_changed)
            self._sessions[address] = session
        if session.state is SessionState.DISCONNECTED:
            _ = session.connect()
        return session

    def remove_camera(self, address: str) -> None:
        session = self._sessions.pop(address, None)
        self._last_seen.pop(address, None)
        if session is not None:
            session.disconnect()

    def _check_liveness(self) -> None:
        now = time.monotonic()
        timeout = self.config.camera_timeout
        for address, seen in list(self._last_seen.items()):
            if now - seen > timeout:
                logger.info("camera %s stopped announcing itself", address)
                self.remove_camera(address)
        if self._started and self._loop is not None:
            self._liveness_timer = self._loop.call_later(self.LIVENESS_CHECK_INTERVAL, self._check_liveness)

    def _on_state_changed(self, session: RemoteSession) -> None:
        if session.state is SessionState.STREAMING:
            self._apply_intents(session)
        if self._session_callback:
            self._session_callback(session)

    def _apply_intents(self, session: RemoteSession) -> None:
        if self.config.fps is not None:
            _ = session.set_fps(self.config.fps)
        if self.config.light is not None:
            _ = session.set_light_status(self.config.light)
        if self.config.focus:
            _ = session.request_focus()

    def _on_frame(self, session: RemoteSession, packet: FramePacket) -> None:
        if self.config.output_dir and packet.image is not None:
            self._save_image(session, packet)
        if self._frame_callback:
            self._frame_callback(session, packet)

    def _save_image(self, session: RemoteSession, packet: FramePacket) -> None:
        out_dir = Path(self.config.output_dir or ".")
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{session.address.replace(':', '_')}.jpg"
        if not cv2.imwrite(str(path), packet.image):
            logger.warning("could not write %s", path)

    def get_stats(self) -> Dict[str, Any]:
        """Get station statistics."""
        return {
            "cameras": {address: s.stats for address, s in self._sessions.items()},
            "discovery": {
                "datagrams": self._listener.datagrams if self._listener else 0,
                "ignored": self._listener.ignored if self._listener else 0,
            },
        }


def parse_host_port(value: str, default_port: int = STREAM_PORT) -> Tuple[str, int]:
    """
    Parse a camera address given as "host" or "host:port".

    Raises:
        ValueError: If the host is empty or the port is not an integer in 1-65535
    """
    raw = value.strip()
    if not raw:
        raise ValueError("camera address is empty")

    if ":" not in raw:
        return raw, int(default_port)

    host, port_str = raw.rsplit(":", 1)
    host = host.strip()
    port_str = port_str.strip()
    if not host:
        raise ValueError(f"camera address {value!r}: host is empty")

    try:
        port = int(port_str)
    except ValueError as exc:
        raise ValueError(f"camera address {value!r}: port must be integer") from exc
    if port <= 0 or port > 65535:
        raise ValueError(f"camera address {value!r}: port out of range")

    return host, port


async def resolve_address(host: str, port: int = STREAM_PORT) -> str:
    """
    Resolve a camera host to a numeric IPv4 address without blocking the loop.

    Raises:
        OSError: If the host has no IPv4 address
    """
    try:
        return numeric_ipv4(host)
    except ValueError:
        pass

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"no IPv4 address for {host!r}")
    return str(infos[0][4][0])


def frame_summary(session: RemoteSession, packet: FramePacket) -> Dict[str, Any]:
    size = packet.image_size
    return {
        "address": session.address,
        "name": packet.name,
        "fps": packet.fps,
        "light": packet.light_status.name.lower(),
        "status": packet.status.describe(),
        "width": size[0] if size else None,
        "height": size[1] if size else None,
    }


def _parse_light(value: str) -> LightStatus:
    try:
        return LightStatus[value.upper()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"light must be 'on' or 'off', got {value!r}")


def _build_cli_and_run(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m station", description="QCCTV station (stream viewer)")
    parser.add_argument("--discovery-host", default="", help="Host to bind the discovery listener to")
    parser.add_argument("--discovery-port", type=int, default=DISCOVERY_PORT, help=f"UDP discovery port (default {DISCOVERY_PORT})")
    parser.add_argument("--stream-port", type=int, default=STREAM_PORT, help=f"Camera stream port (default {STREAM_PORT})")
    parser.add_argument("--connect", action="append", default=[], metavar="HOST[:PORT]", help="Camera address to connect to directly (repeatable)")
    parser.add_argument("--no-discovery", action="store_true", help="Do not listen for discovery beacons")
    parser.add_argument("--camera-timeout", type=float, default=0.0, help="Drop cameras silent for this many seconds (0 = never)")
    parser.add_argument("--fps", type=int, default=None, help="Ask cameras for this fps")
    parser.add_argument("--light", type=_parse_light, default=None, help="Ask cameras to turn the light on/off")
    parser.add_argument("--focus", action="store_true", help="Ask cameras to focus once connected")
    parser.add_argument("--output-dir", default=None, help="Write the latest JPEG of each camera here")
    parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.no_discovery and not args.connect:
        raise SystemExit("--no-discovery requires at least one --connect address")

    for entry in args.connect:
        try:
            _ = parse_host_port(entry, args.stream_port)
        except ValueError as exc:
            raise SystemExit(f"--connect: {exc}")

    config = StationConfig(
        discovery_host=args.discovery_host,
        discovery_port=args.discovery_port,
        stream_port=args.stream_port,
        cameras=list(args.connect),
        discovery=not args.no_discovery,
        camera_timeout=args.camera_timeout,
        fps=clamp_fps(args.fps) if args.fps is not None else None,
        light=args.light,
        focus=args.focus,
        output_dir=args.output_dir,
        duration=args.duration,
    )

    station = Station(config)

    def on_frame(session: RemoteSession, packet: FramePacket) -> None:
        print(json.dumps(frame_summary(session, packet)), flush=True)

    station.set_frame_callback(on_frame)

    try:
        asyncio.run(station.run(duration=config.duration))
    except KeyboardInterrupt:
        pass
    finally:
        station.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    return _build_cli_and_run(argv)


if __name__ == "__main__":
    raise SystemExit(main())
