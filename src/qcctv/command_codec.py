from __future__ import annotations

from dataclasses import dataclass

from .constants import COMMAND_SIZE, FORCE_FOCUS, NO_FOCUS
from .status import LightStatus


class InvalidCommandError(ValueError):
    pass


@dataclass(frozen=True)
class CommandPacket:
    """Viewer request, one byte per field exactly as it was received."""

    fps: int
    light_status: int
    focus: int = NO_FOCUS

    @property
    def force_focus(self) -> bool:
        return self.focus == FORCE_FOCUS

    @property
    def light(self) -> LightStatus | None:
        try:
            return LightStatus(self.light_status)
        except ValueError:
            return None


def encode_command(fps: int, light_status: int, force_focus: bool = False) -> bytes:
    fps_value = int(fps)
    light_value = int(light_status)
    if not 0 <= fps_value <= 0xFF:
        raise ValueError(f"fps out of byte range: {fps_value}")
    if not 0 <= light_value <= 0xFF:
        raise ValueError(f"light status out of byte range: {light_value}")
    return bytes([fps_value, light_value, FORCE_FOCUS if force_focus else NO_FOCUS])


def decode_command(data: bytes) -> CommandPacket:
    if len(data) != COMMAND_SIZE:
        raise InvalidCommandError(f"command must be {COMMAND_SIZE} bytes, got {len(data)}")
    return CommandPacket(fps=data[0], light_status=data[1], focus=data[2])
