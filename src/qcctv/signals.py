from __future__ import annotations

import threading
from collections.abc import Callable


class Signal:
    """Minimal change-notification hook.

    Mutators emit a signal only when they actually changed something, so a
    subscriber sees exactly one notification per change.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._slots: list[Callable[..., None]] = []

    def connect(self, slot: Callable[..., None]) -> None:
        with self._lock:
            if slot not in self._slots:
                self._slots.append(slot)

    def disconnect(self, slot: Callable[..., None]) -> None:
        with self._lock:
            if slot in self._slots:
                self._slots.remove(slot)

    def emit(self, *args: object) -> None:
        with self._lock:
            slots = list(self._slots)
        for slot in slots:
            slot(*args)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
