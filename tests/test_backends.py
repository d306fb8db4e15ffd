from __future__ import annotations

import importlib.util
import sys
import threading
import time
import types
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camera.backends import (
    BackendUnavailableError,
    DummyFrameSource,
    DummyLight,
    DummySourceConfig,
    NullLight,
    Picamera2FrameSource,
    create_frame_source,
    create_light,
)
from camera.grabber import FrameGrabber
from qcctv.constants import PLACEHOLDER_SIZE
from qcctv.image import decode_image, encode_image, prepare_frame, status_image


class BrokenSource(DummyFrameSource):
    def start(self) -> None:
        raise BackendUnavailableError("no sensor")


class FlakySource(DummyFrameSource):
    def next_frame(self) -> np.ndarray:
        if self.frame_index >= 2:
            raise RuntimeError("sensor timeout")
        return super().next_frame()


def test_dummy_frames_are_deterministic() -> None:
    config = DummySourceConfig(width=96, height=64, seed=7)
    first = DummyFrameSource(config)
    second = DummyFrameSource(config)

    a = first.next_frame()
    b = second.next_frame()
    assert a.shape == (64, 96, 3)
    assert a.dtype == np.uint8
    assert np.array_equal(a, b)
    assert not np.array_equal(first.next_frame(), a)
    assert first.frame_index == 2


def test_prepare_frame_shrinks_and_desaturates() -> None:
    frame = np.full((100, 200, 3), 128, dtype=np.uint8)

    small = prepare_frame(frame, shrink_ratio=0.5)
    assert small.shape == (50, 100, 3)

    gray = prepare_frame(frame, shrink_ratio=0.25, grayscale=True)
    assert gray.shape == (25, 50)

    assert prepare_frame(frame) is frame


@pytest.mark.parametrize("ratio", [0.0, -0.5, 1.5])
def test_prepare_frame_rejects_bad_ratio(ratio: float) -> None:
    with pytest.raises(ValueError):
        _ = prepare_frame(np.zeros((10, 10, 3), dtype=np.uint8), shrink_ratio=ratio)


def test_status_image_is_placeholder_sized() -> None:
    image = status_image()
    width, height = PLACEHOLDER_SIZE
    assert image.shape == (height, width, 3)
    assert image.any()
    assert image[0, 0].tolist() == [0, 0, 0]


def test_encode_image_rejects_bad_quality() -> None:
    with pytest.raises(ValueError):
        _ = encode_image(np.zeros((8, 8, 3), dtype=np.uint8), quality=0)
    assert decode_image(b"not a jpeg") is None


def test_grabber_delivers_frames_until_max() -> None:
    frames: list[np.ndarray] = []
    done = threading.Event()

    def on_frame(frame: np.ndarray) -> None:
        frames.append(frame)
        if len(frames) == 3:
            done.set()

    grabber = FrameGrabber(
        source=DummyFrameSource(DummySourceConfig(width=80, height=60)),
        on_frame=on_frame,
        target_fps=200.0,
        shrink_ratio=0.5,
        grayscale=True,
        max_frames=3,
    )
    grabber.start()
    try:
        assert done.wait(2.0)
        grabber.join(timeout=1.0)
        assert len(frames) == 3
        assert frames[0].shape == (30, 40)
        assert grabber.frames_captured == 3
    finally:
        grabber.stop()
    assert not grabber.healthy


def test_grabber_with_unavailable_source_stays_unhealthy() -> None:
    grabber = FrameGrabber(source=BrokenSource(), on_frame=lambda _frame: None)
    grabber.start()
    assert not grabber.healthy
    grabber.stop()


def test_grabber_reports_capture_failures() -> None:
    grabber = FrameGrabber(
        source=FlakySource(DummySourceConfig(width=32, height=24)),
        on_frame=lambda _frame: None,
        target_fps=200.0,
    )
    grabber.start()
    try:
        for _ in range(100):
            if grabber.capture_errors > 0:
                break
            time.sleep(0.01)
        assert grabber.frames_captured == 2
        assert grabber.capture_errors > 0
        assert not grabber.healthy
    finally:
        grabber.stop()


def test_grabber_settings_are_validated() -> None:
    source = DummyFrameSource()
    grabber = FrameGrabber(source=source, on_frame=lambda _frame: None)
    with pytest.raises(ValueError):
        grabber.set_shrink_ratio(0.0)
    grabber.set_shrink_ratio(0.5)
    grabber.set_grayscale(True)
    grabber.set_target_fps(12)
    assert grabber.shrink_ratio == 0.5
    assert grabber.grayscale


def test_lights() -> None:
    light = DummyLight()
    assert light.is_available()
    light.set_enabled(True)
    assert light.enabled

    with pytest.raises(BackendUnavailableError):
        NullLight().set_enabled(True)
    assert not NullLight().is_available()


def test_factories() -> None:
    assert isinstance(create_frame_source("dummy"), DummyFrameSource)
    assert isinstance(create_light("none"), NullLight)
    with pytest.raises(BackendUnavailableError):
        _ = create_frame_source("webcam")
    with pytest.raises(BackendUnavailableError):
        _ = create_light("laser")


def test_picamera2_unavailable_raises() -> None:
    if importlib.util.find_spec("picamera2") is not None:
        pytest.skip("picamera2 is installed")
    source = Picamera2FrameSource()
    with pytest.raises(BackendUnavailableError):
        source.start()
    with pytest.raises(BackendUnavailableError):
        _ = source.next_frame()
    # no-ops while stopped
    source.focus()
    source.stop()


class FakePicamera2:
    instances: list["FakePicamera2"] = []

    def __init__(self, *, refuse_format: bool = False, refuse_controls: bool = False):
        self.refuse_format = refuse_format
        self.refuse_controls = refuse_controls
        self.configured: object = None
        self.controls: list[dict[str, object]] = []
        self.calls: list[str] = []
        FakePicamera2.instances.append(self)

    def create_video_configuration(self, *, main: dict[str, object]) -> object:
        if self.refuse_format and "format" in main:
            raise ValueError("unsupported format")
        return dict(main)

    def configure(self, config: object) -> None:
        self.configured = config

    def start(self) -> None:
        self.calls.append("start")

    def stop(self) -> None:
        self.calls.append("stop")

    def close(self) -> None:
        self.calls.append("close")

    def capture_array(self) -> object:
        return np.zeros((4, 6, 4), dtype=np.uint8)

    def set_controls(self, controls: dict[str, object]) -> object:
        if self.refuse_controls:
            raise RuntimeError("control not supported")
        self.controls.append(controls)
        return None


def _install_picamera2(monkeypatch: pytest.MonkeyPatch, **options: bool) -> None:
    FakePicamera2.instances = []
    module = types.ModuleType("picamera2")
    setattr(module, "Picamera2", lambda: FakePicamera2(**options))
    monkeypatch.setitem(sys.modules, "picamera2", module)


def test_picamera2_applies_fps_given_before_start(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_picamera2(monkeypatch)
    source = Picamera2FrameSource()
    source.set_fps(25)
    source.set_fps(0)  # ignored
    source.start()

    camera = FakePicamera2.instances[0]
    assert source.is_running
    assert camera.configured == {"size": (640, 480), "format": "RGB888"}
    assert camera.controls == [{"FrameDurationLimits": (40000, 40000)}]

    source.set_fps(10)
    assert camera.controls[-1] == {"FrameDurationLimits": (100000, 100000)}

    frame = source.next_frame()
    assert frame.shape == (4, 6, 3)

    source.focus()
    assert camera.controls[-1] == {"AfMode": 1, "AfTrigger": 0}

    source.stop()
    assert camera.calls == ["start", "stop", "close"]
    assert not source.is_running


def test_picamera2_falls_back_to_sensor_format(monkeypatch: pytest.MonkeyPatch) -> None:
    _install_picamera2(monkeypatch, refuse_format=True, refuse_controls=True)
    source = Picamera2FrameSource()
    source.start()

    camera = FakePicamera2.instances[0]
    assert camera.configured == {"size": (640, 480)}
    # refused controls are logged, not raised
    source.set_fps(15)
    source.focus()
    source.stop()


def test_picamera2_without_camera_class(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "picamera2", types.ModuleType("picamera2"))
    source = Picamera2FrameSource()
    with pytest.raises(BackendUnavailableError, match="no Picamera2 class"):
        source.start()
    assert not source.is_running
