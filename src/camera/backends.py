from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Protocol, cast

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class BackendUnavailableError(RuntimeError):
    pass


class FrameSource(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def next_frame(self) -> np.ndarray: ...

    def set_fps(self, fps: int) -> None: ...

    def focus(self) -> None: ...


class LightController(Protocol):
    def is_available(self) -> bool: ...

    def set_enabled(self, enabled: bool) -> None: ...


@dataclass
class DummySourceConfig:
    width: int = 640
    height: int = 480
    num_dots: int = 3
    seed: int = 0
    dot_radius: int = 12
    background: tuple[int, int, int] = (40, 40, 40)
    dot_color: tuple[int, int, int] = (0, 200, 255)


class DummyFrameSource:
    """Synthetic BGR frames: random dots plus a frame counter."""

    def __init__(self, config: DummySourceConfig | None = None):
        self._config: DummySourceConfig = config if config is not None else DummySourceConfig()
        self._frame_index: int = 0
        self._fps: int | None = None
        self._running: bool = False
        self.focus_requests: int = 0

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    def set_fps(self, fps: int) -> None:
        self._fps = int(fps)

    def focus(self) -> None:
        self.focus_requests += 1

    @property
    def frame_index(self) -> int:
        return self._frame_index

    def next_frame(self) -> np.ndarray:
        cfg = self._config
        frame = np.empty((cfg.height, cfg.width, 3), dtype=np.uint8)
        frame[:, :] = cfg.background

        radius = max(1, int(cfg.dot_radius))
        x_high = max(radius + 1, cfg.width - radius)
        y_high = max(radius + 1, cfg.height - radius)

        rng = np.random.default_rng(cfg.seed + self._frame_index)
        for _ in range(max(0, int(cfg.num_dots))):
            x = int(rng.integers(radius, x_high))
            y = int(rng.integers(radius, y_high))
            _ = cv2.circle(frame, (x, y), radius, cfg.dot_color, thickness=-1)

        _ = cv2.putText(
            frame,
            f"#{self._frame_index}",
            (8, cfg.height - 10),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (255, 255, 255),
            1,
            cv2.LINE_AA,
        )

        self._frame_index += 1
        return frame


class _Picamera2Api(Protocol):
    def create_video_configuration(self, *, main: dict[str, object]) -> object: ...

    def configure(self, config: object) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...

    def capture_array(self) -> object: ...

    def set_controls(self, controls: dict[str, object]) -> object: ...


@dataclass
class Picamera2SourceConfig:
    width: int = 640
    height: int = 480
    format: str = "RGB888"


class Picamera2FrameSource:
    """Frames from a Raspberry Pi camera module.

    ``picamera2`` is imported when the source starts, so nodes on machines
    without it can still use the dummy backend.
    """

    def __init__(self, config: Picamera2SourceConfig | None = None):
        self._config: Picamera2SourceConfig = (
            config if config is not None else Picamera2SourceConfig()
        )
        self._camera: _Picamera2Api | None = None
        self._frame_duration_us: int | None = None

    @property
    def is_running(self) -> bool:
        return self._camera is not None

    def start(self) -> None:
        if self._camera is not None:
            return

        camera = _open_camera_module()
        try:
            camera.configure(self._video_configuration(camera))
            camera.start()
        except Exception as exc:
            _release_camera(camera)
            raise BackendUnavailableError(f"camera module failed to start: {exc}") from exc

        self._camera = camera
        if self._frame_duration_us is not None:
            self._limit_frame_duration(camera, self._frame_duration_us)

    def _video_configuration(self, camera: _Picamera2Api) -> object:
        size = (int(self._config.width), int(self._config.height))
        try:
            return camera.create_video_configuration(
                main={"size": size, "format": str(self._config.format)}
            )
        except Exception as exc:
            logger.info("pixel format %s refused (%s); using the sensor default", self._config.format, exc)
            return camera.create_video_configuration(main={"size": size})

    def stop(self) -> None:
        camera = self._camera
        self._camera = None
        if camera is not None:
            _release_camera(camera)

    def set_fps(self, fps: int) -> None:
        if int(fps) <= 0:
            return
        self._frame_duration_us = int(round(1_000_000 / int(fps)))
        if self._camera is not None:
            self._limit_frame_duration(self._camera, self._frame_duration_us)

    @staticmethod
    def _limit_frame_duration(camera: _Picamera2Api, duration_us: int) -> None:
        try:
            _ = camera.set_controls({"FrameDurationLimits": (duration_us, duration_us)})
        except Exception as exc:
            logger.warning("camera module refused a %d us frame duration: %s", duration_us, exc)

    def focus(self) -> None:
        camera = self._camera
        if camera is None:
            return
        try:
            # AfMode 1: auto, AfTrigger 0: start a scan
            _ = camera.set_controls({"AfMode": 1, "AfTrigger": 0})
        except Exception as exc:
            logger.debug("autofocus not supported by this sensor: %s", exc)

    def next_frame(self) -> np.ndarray:
        camera = self._camera
        if camera is None:
            raise BackendUnavailableError("camera module is not started")

        frame = camera.capture_array()
        if not isinstance(frame, np.ndarray):
            raise BackendUnavailableError(f"camera module returned {type(frame).__name__}, not an image")
        if frame.ndim == 3 and frame.shape[2] == 4:
            frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
        return frame


def _open_camera_module() -> _Picamera2Api:
    try:
        module = importlib.import_module("picamera2")
    except ImportError as exc:
        raise BackendUnavailableError("picamera2 is not installed") from exc

    camera_class = getattr(module, "Picamera2", None)
    if camera_class is None:
        raise BackendUnavailableError("picamera2 has no Picamera2 class")
    try:
        return cast(_Picamera2Api, camera_class())
    except Exception as exc:
        raise BackendUnavailableError(f"no camera module found: {exc}") from exc


def _release_camera(camera: _Picamera2Api) -> None:
    for step in (camera.stop, camera.close):
        try:
            step()
        except Exception as exc:
            logger.debug("camera module release: %s", exc)


class NullLight:
    """Light controller for nodes without a torch."""

    def is_available(self) -> bool:
        return False

    def set_enabled(self, enabled: bool) -> None:
        raise BackendUnavailableError("no light hardware")


class DummyLight:
    def __init__(self, available: bool = True):
        self.available: bool = available
        self.enabled: bool = False

    def is_available(self) -> bool:
        return self.available

    def set_enabled(self, enabled: bool) -> None:
        if not self.available:
            raise BackendUnavailableError("light unavailable")
        self.enabled = bool(enabled)


def create_frame_source(name: str) -> FrameSource:
    if name == "dummy":
        return DummyFrameSource()
    if name == "picamera2":
        return Picamera2FrameSource()
    raise BackendUnavailableError(f"unknown_backend: {name}")


def create_light(name: str) -> LightController:
    if name == "none":
        return NullLight()
    if name == "dummy":
        return DummyLight()
    raise BackendUnavailableError(f"unknown_light: {name}")
