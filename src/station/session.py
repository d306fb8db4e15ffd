"""
Remote camera session for QCCTV stations.

Provides functionality to:
- Open a non-blocking stream connection to a discovered camera
- Reassemble and decode frame packets as they arrive
- Expose the latest camera state (image, name, fps, light, status flags)
- Translate station intents (fps, light, focus) into 3-byte commands
"""

import asyncio
import enum
import errno
import logging
import socket
from typing import Optional, Dict, Any

import numpy as np

from qcctv.command_codec import encode_command
from qcctv.constants import DEFAULT_CAMERA_NAME, DEFAULT_FPS, STREAM_PORT
from qcctv.discovery import numeric_ipv4
from qcctv.frame_codec import DecodeError, FramePacket, FrameStreamDecoder
from qcctv.image import status_image
from qcctv.signals import Signal
from qcctv.status import LightStatus, StatusFlags, clamp_fps

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"


class RemoteSession:
    """
    Connection from a station to a single camera.

    State machine: DISCONNECTED -> CONNECTING -> STREAMING -> DISCONNECTED.
    A failed connect goes straight back to DISCONNECTED; retrying is up to
    the caller. All methods run on the station's asyncio loop.

    Commands carry every camera setting at once, so intents given before the
    camera's first frame are held back and sent together once its real fps
    and light status are known.

    Signals:
        state_changed(session): after every state transition
        frame_received(session, packet): after a frame was applied
        frame_dropped(session, error): when an inbound packet was rejected
        image_changed(session): when a new image replaced the current one

    Usage:
        session = RemoteSession("192.168.1.20")
        session.frame_received.connect(on_frame)
        session.connect()  # from a coroutine on the station loop
    """

    def __init__(
        self,
        address: str,
        port: int = STREAM_PORT,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        group: str = ""
    ):
        """
        Initialize a session.

        Args:
            address: Numeric IPv4 address of the camera (usually the discovery source)
            port: Camera stream port
            loop: Loop that drives the socket (default: the running loop at connect time)
            group: Station-side group label for this camera

        Raises:
            ValueError: If address is a hostname; resolve it before creating the session
        """
        self.address = numeric_ipv4(address)
        self.port = int(port)
        self.group = group
        self._loop = loop

        self._socket: Optional[socket.socket] = None
        self._state = SessionState.DISCONNECTED
        self._decoder = FrameStreamDecoder()
        self._outgoing = bytearray()

        # Latest state reported by the camera
        self._name = DEFAULT_CAMERA_NAME
        self._fps = DEFAULT_FPS
        self._light_status = LightStatus.OFF
        self._status = StatusFlags()
        self._image: np.ndarray = status_image()
        self._has_image = False
        self._state_known = False  # set by the first frame of a connection

        # Intents; None means "keep whatever the camera reports"
        self._requested_fps: Optional[int] = None
        self._requested_light: Optional[LightStatus] = None
        self._command_pending = False
        self._focus_pending = False

        self.state_changed = Signal()
        self.frame_received = Signal()
        self.frame_dropped = Signal()
        self.image_changed = Signal()

        # Statistics
        self._frames_received = 0
        self._frames_dropped = 0
        self._bytes_received = 0
        self._commands_sent = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state is SessionState.STREAMING

    # ------------------------------------------------------------------
    # Observable camera state
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def light_status(self) -> LightStatus:
        return self._light_status

    @property
    def status(self) -> StatusFlags:
        return self._status.copy()

    @property
    def image(self) -> np.ndarray:
        """Latest decoded image, or a placeholder until the first frame."""
        return self._image

    @property
    def has_image(self) -> bool:
        return self._has_image

    @property
    def image_size(self) -> tuple:
        height, width = self._image.shape[:2]
        return int(width), int(height)

    @property
    def command_pending(self) -> bool:
        """True while intents wait for the camera's first frame."""
        return self._command_pending

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        """
        Start connecting to the camera.

        Returns:
            False if the session was not DISCONNECTED or the connect attempt
            failed immediately, True otherwise
        """
        if self._state is not SessionState.DISCONNECTED:
            return False
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        self._socket = sock
        self._decoder.reset()
        self._outgoing.clear()
        self._set_state(SessionState.CONNECTING)

        try:
            err = sock.connect_ex((self.address, self.port))
        except OSError as e:
            err = e.errno or errno.EHOSTUNREACH

        if err == 0:
            self._on_connected()
        elif err in (errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY, errno.EAGAIN):
            self._loop.add_writer(sock, self._on_connect_ready)
        else:
            logger.info("connect to %s:%d failed: %s", self.address, self.port, errno.errorcode.get(err, err))
            self._release()
            return False
        return True

    def _on_connect_ready(self) -> None:
        sock = self._socket
        if sock is None or self._state is not SessionState.CONNECTING:
            return

        err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err != 0:
            logger.info("connect to %s:%d failed: %s", self.address, self.port, errno.errorcode.get(err, err))
            self._release()
            return

        self._on_connected()

    def _on_connected(self) -> None:
        sock = self._socket
        if sock is None or self._loop is None:
            return
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

        self._loop.remove_writer(sock)
        self._loop.add_reader(sock, self.on_readable)
        logger.info("streaming from camera %s:%d", self.address, self.port)
        self._set_state(SessionState.STREAMING)

    def disconnect(self) -> None:
        """Close the connection. Safe to call in any state."""
        self._release()

    def _release(self) -> None:
        sock = self._socket
        self._socket = None
        if sock is not None:
            if self._loop is not None:
                self._loop.remove_reader(sock)
                self._loop.remove_writer(sock)
            try:
                sock.close()
            except OSError:
                pass
        self._outgoing.clear()
        self._decoder.reset()
        self._state_known = False
        self._command_pending = False
        self._focus_pending = False
        if self._state is not SessionState.DISCONNECTED:
            self._set_state(SessionState.DISCONNECTED)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("camera %s: %s -> %s", self.address, previous.value, state.value)
        self.state_changed.emit(self)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def on_readable(self) -> None:
        sock = self._socket
        if sock is None:
            return

        try:
            data = sock.recv(READ_CHUNK_BYTES)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            logger.info("camera %s read error: %s", self.address, e)
            self._release()
            return

        if not data:
            logger.info("camera %s closed the connection", self.address)
            self._release()
            return

        self.feed(data)

    def feed(self, data: bytes) -> None:
        """Hand raw stream bytes to the decoder and apply complete frames."""
        self._bytes_received += len(data)
        for result in self._decoder.feed(data):
            if isinstance(result, DecodeError):
                self._frames_dropped += 1
                logger.debug("dropped frame from %s: %s", self.address, result)
                self.frame_dropped.emit(self, result)
            else:
                self._apply(result)

    def _apply(self, packet: FramePacket) -> None:
        self._name = packet.name
        self._fps = clamp_fps(packet.fps)
        self._light_status = packet.light_status
        self._status = packet.status

        if packet.image is not None:
            self._image = packet.image
            self._has_image = True
            self.image_changed.emit(self)

        self._frames_received += 1
        if not self._state_known:
            self._state_known = True
            if self._command_pending:
                self._send_now()
        self.frame_received.emit(self, packet)

    # ------------------------------------------------------------------
    # Outbound commands
    # ------------------------------------------------------------------

    def set_fps(self, fps: int) -> bool:
        self._requested_fps = clamp_fps(fps)
        return self._send_command()

    def set_light_status(self, status: LightStatus) -> bool:
        self._requested_light = LightStatus(status)
        return self._send_command()

    def request_focus(self) -> bool:
        if not self.is_streaming:
            return False
        self._focus_pending = True
        return self._send_command()

    def _send_command(self) -> bool:
        """
        Send the current intents as one command packet.

        Returns:
            False when not streaming (fps/light intents are kept for later
            commands); True once the command is sent or queued for the
            camera's first frame
        """
        if self._socket is None or self._state is not SessionState.STREAMING:
            return False

        self._command_pending = True
        if not self._state_known:
            logger.debug("camera %s: command held until its first frame", self.address)
            return True
        self._send_now()
        return True

    def _send_now(self) -> None:
        fps = self._requested_fps if self._requested_fps is not None else self._fps
        light = self._requested_light if self._requested_light is not None else self._light_status
        self._outgoing.extend(encode_command(fps, int(light), self._focus_pending))
        self._command_pending = False
        self._focus_pending = False
        self._commands_sent += 1
        self._flush()

    def _flush(self) -> None:
        sock = self._socket
        if sock is None or self._loop is None:
            return

        while self._outgoing:
            try:
                sent = sock.send(bytes(self._outgoing))
            except (BlockingIOError, InterruptedError):
                break
            except OSError as e:
                logger.info("camera %s write error: %s", self.address, e)
                self._release()
                return
            del self._outgoing[:sent]

        if self._outgoing:
            self._loop.add_writer(sock, self._flush)
        else:
            self._loop.remove_writer(sock)

    @property
    def stats(self) -> Dict[str, Any]:
        """Get session statistics."""
        return {
            "address": self.address,
            "state": self._state.value,
            "frames_received": self._frames_received,
            "frames_dropped": self._frames_dropped,
            "bytes_received": self._bytes_received,
            "commands_sent": self._commands_sent,
        }
