"""
Station-side modules for QCCTV.

Modules:
- session: connection to one camera, frame decoding and command sending
- station: discovery-driven session management and the viewer CLI
"""

from .session import RemoteSession, SessionState
from .station import Station, StationConfig, frame_summary, parse_host_port, resolve_address

__all__ = [
    # Session
    "RemoteSession",
    "SessionState",
    # Station
    "Station",
    "StationConfig",
    "frame_summary",
    "parse_host_port",
    "resolve_address",
]
