"""
Camera node for the QCCTV streaming protocol.

Modules:
- backends: frame sources (dummy, picamera2) and light controllers
- grabber: capture thread feeding frames into the camera state
- connections: viewer connection registry and outbound frame buffer
- scheduler: periodic health check / encode / broadcast cycle
- node: camera state, command handling and the command line entry point
"""

from .backends import (
    BackendUnavailableError, FrameSource, LightController,
    DummyFrameSource, DummySourceConfig, Picamera2FrameSource,
    NullLight, DummyLight, create_frame_source, create_light
)
from .grabber import FrameGrabber
from .connections import ConnectionManager, OutboundPacketBuffer
from .scheduler import StreamScheduler
from .node import CameraIdentity, CameraState, CameraNode, CameraNodeConfig

__all__ = [
    # Backends
    "BackendUnavailableError",
    "FrameSource",
    "LightController",
    "DummyFrameSource",
    "DummySourceConfig",
    "Picamera2FrameSource",
    "NullLight",
    "DummyLight",
    "create_frame_source",
    "create_light",
    # Capture
    "FrameGrabber",
    # Streaming
    "ConnectionManager",
    "OutboundPacketBuffer",
    "StreamScheduler",
    # Node
    "CameraIdentity",
    "CameraState",
    "CameraNode",
    "CameraNodeConfig",
]
