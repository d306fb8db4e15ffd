"""
Shared protocol pieces for QCCTV cameras and stations.

Modules:
- constants: ports, discovery token, fps range, wire constants
- status: status flags, light status and fps clamping
- signals: change notification hook
- image: JPEG helpers and placeholder images
- frame_codec: camera -> station frame packets
- command_codec: station -> camera 3-byte commands
- discovery: UDP discovery beacon and listener
"""

from .constants import DISCOVERY_TOKEN, DISCOVERY_PORT, STREAM_PORT, MIN_FPS, MAX_FPS, DEFAULT_FPS
from .status import LightStatus, StatusFlag, StatusFlags, clamp_fps
from .signals import Signal
from .image import encode_image, decode_image, status_image, prepare_frame
from .frame_codec import (
    DecodeError, FramePacket, FrameStreamDecoder,
    encode_frame, decode_frame
)
from .command_codec import CommandPacket, InvalidCommandError, encode_command, decode_command
from .discovery import DiscoveryBeacon, DiscoveryListener, numeric_ipv4

__all__ = [
    # Constants
    "DISCOVERY_TOKEN",
    "DISCOVERY_PORT",
    "STREAM_PORT",
    "MIN_FPS",
    "MAX_FPS",
    "DEFAULT_FPS",
    # Status
    "LightStatus",
    "StatusFlag",
    "StatusFlags",
    "clamp_fps",
    "Signal",
    # Images
    "encode_image",
    "decode_image",
    "status_image",
    "prepare_frame",
    # Codecs
    "DecodeError",
    "FramePacket",
    "FrameStreamDecoder",
    "encode_frame",
    "decode_frame",
    "CommandPacket",
    "InvalidCommandError",
    "encode_command",
    "decode_command",
    # Discovery
    "DiscoveryBeacon",
    "DiscoveryListener",
    "numeric_ipv4",
]
