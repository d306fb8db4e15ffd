from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator

from .constants import MAX_FPS, MIN_FPS
from .signals import Signal


class LightStatus(enum.IntEnum):
    OFF = 0
    ON = 1


class StatusFlag(enum.Enum):
    """Camera fault conditions. Values are the bits used on the wire."""

    VIDEO_FAILURE = 0x01
    LIGHT_FAILURE = 0x02


def clamp_fps(fps: int) -> int:
    return max(MIN_FPS, min(MAX_FPS, int(fps)))


class StatusFlags:
    """Set of active :class:`StatusFlag` values.

    ``add`` and ``remove`` are idempotent: they return ``True`` and emit
    ``changed`` only when the set was actually modified.
    """

    def __init__(self, flags: Iterable[StatusFlag] = ()) -> None:
        self._flags: set[StatusFlag] = set(flags)
        self.changed: Signal = Signal()

    def add(self, flag: StatusFlag) -> bool:
        if flag in self._flags:
            return False
        self._flags.add(flag)
        self.changed.emit(self)
        return True

    def remove(self, flag: StatusFlag) -> bool:
        if flag not in self._flags:
            return False
        self._flags.discard(flag)
        self.changed.emit(self)
        return True

    def has(self, flag: StatusFlag) -> bool:
        return flag in self._flags

    def update(self, flag: StatusFlag, present: bool) -> bool:
        return self.add(flag) if present else self.remove(flag)

    def to_bits(self) -> int:
        bits = 0
        for flag in self._flags:
            bits |= flag.value
        return bits

    @classmethod
    def from_bits(cls, bits: int) -> StatusFlags:
        return cls(flag for flag in StatusFlag if int(bits) & flag.value)

    def describe(self) -> str:
        if not self._flags:
            return "OK"
        return " | ".join(flag.name for flag in sorted(self._flags, key=lambda f: f.value))

    def copy(self) -> StatusFlags:
        return StatusFlags(self._flags)

    def __contains__(self, flag: object) -> bool:
        return flag in self._flags

    def __iter__(self) -> Iterator[StatusFlag]:
        return iter(sorted(self._flags, key=lambda f: f.value))

    def __len__(self) -> int:
        return len(self._flags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StatusFlags):
            return self._flags == other._flags
        return NotImplemented

    def __repr__(self) -> str:
        return f"StatusFlags({self.describe()})"
