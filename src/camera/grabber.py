from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

import numpy as np

from qcctv.constants import DEFAULT_FPS
from qcctv.image import prepare_frame

from .backends import BackendUnavailableError, FrameSource

logger = logging.getLogger(__name__)


class FrameGrabber:
    """Pulls frames from a :class:`FrameSource` on its own thread.

    Each captured frame is resized/desaturated as configured and handed to
    ``on_frame``. ``healthy`` reflects whether the last capture succeeded.
    """

    def __init__(
        self,
        *,
        source: FrameSource,
        on_frame: Callable[[np.ndarray], None],
        target_fps: float = DEFAULT_FPS,
        shrink_ratio: float = 1.0,
        grayscale: bool = False,
        max_frames: int | None = None,
    ):
        self._source: FrameSource = source
        self._on_frame: Callable[[np.ndarray], None] = on_frame
        self._max_frames: int | None = max_frames

        self._lock: threading.Lock = threading.Lock()
        self._target_fps: float = float(target_fps)
        self._shrink_ratio: float = float(shrink_ratio)
        self._grayscale: bool = bool(grayscale)

        self._stop_event: threading.Event = threading.Event()
        self._thread: threading.Thread | None = None
        self._healthy: bool = False
        self.frames_captured: int = 0
        self.capture_errors: int = 0

    @property
    def source(self) -> FrameSource:
        return self._source

    @property
    def healthy(self) -> bool:
        with self._lock:
            return self._healthy and self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("frame grabber already running")

        try:
            self._source.start()
        except BackendUnavailableError as exc:
            logger.warning("frame source unavailable: %s", exc)
            with self._lock:
                self._healthy = False
            return

        with self._lock:
            self._stop_event.clear()
            self._healthy = True
            self._thread = threading.Thread(target=self._loop, daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
            self._thread = None
            self._healthy = False
        if thread is not None:
            thread.join(timeout=1.0)
        try:
            self._source.stop()
        except Exception as exc:
            logger.debug("frame source stop failed: %s", exc)

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def set_target_fps(self, fps: float) -> None:
        with self._lock:
            self._target_fps = float(fps)
        try:
            self._source.set_fps(int(fps))
        except Exception as exc:
            logger.debug("frame source rejected fps %s: %s", fps, exc)

    def set_shrink_ratio(self, ratio: float) -> None:
        value = float(ratio)
        if value <= 0.0 or value > 1.0:
            raise ValueError(f"shrink_ratio must be in (0, 1], got {value}")
        with self._lock:
            self._shrink_ratio = value

    @property
    def shrink_ratio(self) -> float:
        with self._lock:
            return self._shrink_ratio

    def set_grayscale(self, grayscale: bool) -> None:
        with self._lock:
            self._grayscale = bool(grayscale)

    @property
    def grayscale(self) -> bool:
        with self._lock:
            return self._grayscale

    def _loop(self) -> None:
        captured = 0
        next_tick = time.perf_counter()
        while not self._stop_event.is_set():
            with self._lock:
                fps = self._target_fps
                ratio = self._shrink_ratio
                grayscale = self._grayscale

            try:
                frame = self._source.next_frame()
                frame = prepare_frame(frame, shrink_ratio=ratio, grayscale=grayscale)
            except Exception as exc:
                self.capture_errors += 1
                with self._lock:
                    was_healthy = self._healthy
                    self._healthy = False
                if was_healthy:
                    logger.warning("frame capture failed: %s", exc)
            else:
                with self._lock:
                    self._healthy = True
                self.frames_captured += 1
                captured += 1
                self._on_frame(frame)
                if self._max_frames is not None and captured >= self._max_frames:
                    return

            period = 1.0 / fps if fps > 0.0 else 0.0
            if period > 0.0:
                next_tick += period
                now = time.perf_counter()
                wait_s = next_tick - now
                if wait_s > 0:
                    _ = self._stop_event.wait(wait_s)
                else:
                    next_tick = now
