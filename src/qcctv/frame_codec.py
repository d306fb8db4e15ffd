from __future__ import annotations

import struct
from dataclasses import dataclass, field

import numpy as np

from .constants import END_MARKER, IMAGE_QUALITY, MAX_NAME_BYTES, MAX_PAYLOAD_BYTES
from .image import decode_image, encode_image
from .status import LightStatus, StatusFlags

_STATE_FORMAT = ">BBBI"
_STATE_SIZE = struct.calcsize(_STATE_FORMAT)


class DecodeError(ValueError):
    pass


@dataclass
class FramePacket:
    name: str
    fps: int
    light_status: LightStatus
    status: StatusFlags = field(default_factory=StatusFlags)
    image: np.ndarray | None = None

    @property
    def image_size(self) -> tuple[int, int] | None:
        if self.image is None:
            return None
        height, width = self.image.shape[:2]
        return int(width), int(height)


def _encode_name(name: str) -> bytes:
    raw = name.encode("utf-8")
    if len(raw) <= MAX_NAME_BYTES:
        return raw
    # cut on a character boundary
    return raw[:MAX_NAME_BYTES].decode("utf-8", errors="ignore").encode("utf-8")


def encode_frame(packet: FramePacket, quality: int = IMAGE_QUALITY) -> bytes:
    name = _encode_name(packet.name)
    fps = int(packet.fps)
    if not 0 <= fps <= 0xFF:
        raise ValueError(f"fps out of byte range: {fps}")

    payload = b""
    if packet.image is not None and packet.image.size > 0:
        payload = encode_image(packet.image, quality=quality)

    header = bytes([len(name)]) + name
    state = struct.pack(
        _STATE_FORMAT,
        fps,
        int(packet.light_status),
        packet.status.to_bits(),
        len(payload),
    )
    return header + state + payload + END_MARKER


def packet_length(data: bytes | bytearray) -> int | None:
    """Total length of the packet at the start of ``data``.

    Returns ``None`` while the header itself is incomplete. Raises
    :class:`DecodeError` if the header announces an impossible payload.
    """
    if len(data) < 1:
        return None
    name_len = data[0]
    header_len = 1 + name_len + _STATE_SIZE
    if len(data) < header_len:
        return None
    _fps, _light, _status, payload_len = struct.unpack_from(_STATE_FORMAT, data, 1 + name_len)
    if payload_len > MAX_PAYLOAD_BYTES:
        raise DecodeError(f"payload too large: {payload_len}")
    return header_len + payload_len + len(END_MARKER)


def decode_frame(data: bytes | bytearray) -> FramePacket:
    expected = packet_length(data)
    if expected is None:
        raise DecodeError("truncated header")
    if len(data) < expected:
        raise DecodeError(f"truncated packet: {len(data)} < {expected}")
    if len(data) > expected:
        raise DecodeError(f"trailing bytes: {len(data) - expected}")
    if bytes(data[-len(END_MARKER):]) != END_MARKER:
        raise DecodeError("missing end marker")

    name_len = data[0]
    try:
        name = bytes(data[1 : 1 + name_len]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError("invalid camera name") from exc

    offset = 1 + name_len
    fps, light_code, status_bits, payload_len = struct.unpack_from(_STATE_FORMAT, data, offset)
    offset += _STATE_SIZE

    try:
        light_status = LightStatus(light_code)
    except ValueError as exc:
        raise DecodeError(f"invalid light status: {light_code}") from exc

    image: np.ndarray | None = None
    if payload_len:
        image = decode_image(bytes(data[offset : offset + payload_len]))
        if image is None:
            raise DecodeError("corrupt image payload")

    return FramePacket(
        name=name,
        fps=int(fps),
        light_status=light_status,
        status=StatusFlags.from_bits(status_bits),
        image=image,
    )


class FrameStreamDecoder:
    """Reassembles frame packets from arbitrarily chunked stream data."""

    def __init__(self) -> None:
        self._buffer: bytearray = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> list[FramePacket | DecodeError]:
        """Append ``data`` and return every packet (or error) it completed."""
        self._buffer.extend(data)
        results: list[FramePacket | DecodeError] = []

        while self._buffer:
            try:
                total = packet_length(self._buffer)
            except DecodeError as exc:
                results.append(exc)
                self._resync()
                continue

            if total is None or len(self._buffer) < total:
                break

            if bytes(self._buffer[total - len(END_MARKER) : total]) != END_MARKER:
                results.append(DecodeError("missing end marker"))
                self._resync()
                continue

            chunk = bytes(self._buffer[:total])
            del self._buffer[:total]
            try:
                results.append(decode_frame(chunk))
            except DecodeError as exc:
                results.append(exc)

        return results

    def _resync(self) -> None:
        # Drop everything up to and including the next end marker. Without
        # one, keep only a tail that could still be the start of a marker.
        idx = self._buffer.find(END_MARKER)
        if idx >= 0:
            del self._buffer[: idx + len(END_MARKER)]
            return
        keep = len(END_MARKER) - 1
        del self._buffer[: max(1, len(self._buffer) - keep)]
