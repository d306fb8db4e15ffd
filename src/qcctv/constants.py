from __future__ import annotations

DISCOVERY_TOKEN = "QCCTV_DISCOVERY_SERVICE"
DISCOVERY_PORT = 1100
STREAM_PORT = 1110
DISCOVERY_INTERVAL_SECONDS = 1.0
BROADCAST_HOST = "255.255.255.255"

MIN_FPS = 1
MAX_FPS = 60
DEFAULT_FPS = 24

IMAGE_FORMAT = ".jpg"
IMAGE_QUALITY = 50

# Trailer written after every frame packet. Framing uses the explicit
# payload length; the marker only confirms that a packet ended where the
# header said it would.
END_MARKER = b"QCCTV_EOD"
MAX_NAME_BYTES = 255
MAX_PAYLOAD_BYTES = 16 * 1024 * 1024

COMMAND_SIZE = 3
FORCE_FOCUS = 0x01
NO_FOCUS = 0x00

DEFAULT_CAMERA_NAME = "Unknown Camera"
PLACEHOLDER_SIZE = (320, 240)
NO_IMAGE_TEXT = "NO CAMERA IMAGE"
