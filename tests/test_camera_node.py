from __future__ import annotations

import asyncio
import os
import socket
import subprocess
import sys
import time
from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import TypedDict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camera.backends import DummyFrameSource, DummyLight, DummySourceConfig, NullLight
from camera.node import CameraNode, CameraNodeConfig, parse_args
from helpers import free_tcp_port, free_udp_port, wait_until
from qcctv.command_codec import CommandPacket
from qcctv.constants import DISCOVERY_PORT, STREAM_PORT
from qcctv.frame_codec import FramePacket, FrameStreamDecoder
from qcctv.status import LightStatus, StatusFlag
from station.session import RemoteSession
from station.station import Station, StationConfig


class FrameReader:
    def __init__(self, reader: asyncio.StreamReader):
        self._reader: asyncio.StreamReader = reader
        self._decoder: FrameStreamDecoder = FrameStreamDecoder()
        self._ready: list[FramePacket] = []

    async def next_packet(self, timeout: float = 3.0) -> FramePacket:
        deadline = time.monotonic() + timeout
        while not self._ready:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssertionError("no frame received")
            data = await asyncio.wait_for(self._reader.read(65536), remaining)
            assert data, "camera closed the stream"
            self._ready.extend(r for r in self._decoder.feed(data) if isinstance(r, FramePacket))
        return self._ready.pop(0)


def _node_config(name: str = "Cam1", fps: int = 15, discovery_port: int = 9) -> CameraNodeConfig:
    return CameraNodeConfig(
        name=name,
        tcp_host="127.0.0.1",
        tcp_port=0,
        discovery_host="127.0.0.1",
        discovery_port=discovery_port,
        discovery_interval=0.05,
        fps=fps,
    )


NodeFixture = tuple[CameraNode, DummyFrameSource, DummyLight]


@pytest.fixture()
async def node() -> AsyncGenerator[NodeFixture, None]:
    source = DummyFrameSource(DummySourceConfig(width=160, height=120))
    light = DummyLight()
    camera = CameraNode(_node_config(), source=source, light=light)
    await camera.start()
    try:
        yield camera, source, light
    finally:
        camera.shutdown()


@pytest.mark.asyncio
async def test_viewer_receives_named_frames(node: NodeFixture) -> None:
    camera, _source, _light = node

    reader, writer = await asyncio.open_connection("127.0.0.1", camera.stream_port)
    try:
        assert await wait_until(lambda: len(camera.connected_hosts()) == 1)
        assert await wait_until(lambda: camera.state.has_image)

        frames = FrameReader(reader)
        packet = await frames.next_packet()
        # the first frames may predate the first capture
        while packet.image_size != (160, 120):
            packet = await frames.next_packet()

        assert packet.name == "Cam1"
        assert packet.fps == 15
        assert packet.light_status is LightStatus.OFF
        assert not packet.status.has(StatusFlag.VIDEO_FAILURE)
        assert not packet.status.has(StatusFlag.LIGHT_FAILURE)
    finally:
        writer.close()


@pytest.mark.asyncio
async def test_raw_command_updates_fps_and_light_without_focus(node: NodeFixture) -> None:
    camera, source, light = node

    reader, writer = await asyncio.open_connection("127.0.0.1", camera.stream_port)
    try:
        writer.write(bytes([30, 1, 0]))
        await writer.drain()
        assert await wait_until(lambda: camera.state.fps == 30 and camera.state.light_status is LightStatus.ON)

        assert light.enabled
        assert source.focus_requests == 0

        frames = FrameReader(reader)
        packet = await frames.next_packet()
        while packet.fps != 30:
            packet = await frames.next_packet()
        assert packet.light_status is LightStatus.ON

        writer.write(bytes([30, 1, 1]))
        await writer.drain()
        assert await wait_until(lambda: source.focus_requests == 1)
    finally:
        writer.close()


@pytest.mark.asyncio
async def test_station_session_controls_camera(node: NodeFixture) -> None:
    camera, _source, _light = node
    session = RemoteSession("127.0.0.1", port=camera.stream_port)

    try:
        assert session.connect()
        assert await wait_until(lambda: session.has_image and session.name == "Cam1")

        assert session.set_fps(120)
        assert await wait_until(lambda: camera.state.fps == 60)
        assert await wait_until(lambda: session.fps == 60)

        assert session.request_focus()
        assert await wait_until(lambda: session.stats["commands_sent"] == 2, timeout=1.0)
    finally:
        session.disconnect()

    assert await wait_until(lambda: camera.connected_hosts() == [])


@pytest.mark.asyncio
async def test_focus_only_station_keeps_camera_fps_and_light() -> None:
    source = DummyFrameSource(DummySourceConfig(width=64, height=48))
    camera = CameraNode(_node_config(fps=10), source=source, light=DummyLight())
    assert camera.state.set_light_status(LightStatus.ON)
    await camera.start()

    station = Station(
        StationConfig(discovery=False, cameras=[f"127.0.0.1:{camera.stream_port}"], focus=True)
    )
    try:
        await station.open()
        assert await wait_until(lambda: source.focus_requests == 1)

        assert camera.state.fps == 10
        assert camera.state.light_status is LightStatus.ON
        session = station.sessions["127.0.0.1"]
        assert session.stats["commands_sent"] == 1
    finally:
        station.stop()
        camera.shutdown()


@pytest.mark.asyncio
async def test_station_discovers_and_streams_from_camera() -> None:
    station = Station(StationConfig(discovery_host="127.0.0.1", discovery_port=0))
    await station.open()
    camera = CameraNode(
        _node_config(name="Garage", discovery_port=station.discovery_port),
        source=DummyFrameSource(DummySourceConfig(width=64, height=48)),
        light=DummyLight(),
    )

    try:
        camera.open()
        station.config.stream_port = camera.stream_port
        await camera.start()

        def streaming() -> bool:
            session = station.sessions.get("127.0.0.1")
            return session is not None and session.has_image and session.name == "Garage"

        assert await wait_until(streaming)
        assert station.last_seen("127.0.0.1") is not None
        assert station.get_stats()["discovery"]["datagrams"] >= 1
    finally:
        camera.shutdown()
        station.stop()


@pytest.mark.asyncio
async def test_shutdown_releases_the_stream_port() -> None:
    camera = CameraNode(_node_config(), source=DummyFrameSource(), light=DummyLight())
    await camera.start()
    port = camera.stream_port
    _reader, writer = await asyncio.open_connection("127.0.0.1", port)
    assert await wait_until(lambda: len(camera.connected_hosts()) == 1)

    camera.shutdown()
    camera.shutdown()
    writer.close()

    assert not camera.is_running
    assert not camera.beacon.is_open
    assert not camera.scheduler.is_running
    with pytest.raises(OSError):
        _ = await asyncio.open_connection("127.0.0.1", port)


@pytest.mark.asyncio
async def test_serve_forever_returns_after_shutdown() -> None:
    camera = CameraNode(_node_config(), source=DummyFrameSource(), light=DummyLight())
    task = asyncio.create_task(camera.serve_forever())
    assert await wait_until(lambda: camera.is_running)

    camera.shutdown()
    await asyncio.wait_for(task, timeout=2.0)
    assert not camera.grabber.healthy


def test_missing_light_is_reported_and_rejected() -> None:
    camera = CameraNode(_node_config(), source=DummyFrameSource(), light=NullLight())

    camera.update_status()
    assert camera.state.status.has(StatusFlag.LIGHT_FAILURE)
    # the grabber was never started
    assert camera.state.status.has(StatusFlag.VIDEO_FAILURE)

    camera.handle_command(CommandPacket(fps=20, light_status=1, focus=0))
    assert camera.state.fps == 20
    assert camera.state.light_status is LightStatus.OFF


def test_unknown_light_code_leaves_light_alone() -> None:
    light = DummyLight()
    camera = CameraNode(_node_config(), source=DummyFrameSource(), light=light)

    camera.handle_command(CommandPacket(fps=0, light_status=7, focus=0))
    assert camera.state.fps == 1
    assert camera.state.light_status is LightStatus.OFF
    assert not light.enabled


def test_parse_args_defaults() -> None:
    config, log_level = parse_args([])
    assert config.tcp_port == STREAM_PORT
    assert config.discovery_port == DISCOVERY_PORT
    assert config.fps == 24
    assert config.backend == "dummy"
    assert log_level == "INFO"


def test_parse_args_rejects_bad_shrink_ratio() -> None:
    with pytest.raises(SystemExit):
        _ = parse_args(["--shrink-ratio", "0"])


class CameraProcessInfo(TypedDict):
    ip: str
    tcp_port: int
    discovery_port: int
    proc: subprocess.Popen[str]


@pytest.fixture(scope="module")
def camera_process() -> Generator[CameraProcessInfo, None, None]:
    ip = "127.0.0.1"
    tcp_port = free_tcp_port()
    discovery_port = free_udp_port()

    env = dict(os.environ)
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONPATH"] = os.pathsep.join([str(SRC), env.get("PYTHONPATH", "")])

    cmd = [
        sys.executable,
        "-m",
        "camera",
        "--name",
        "Porch",
        "--tcp-host",
        ip,
        "--tcp-port",
        str(tcp_port),
        "--discovery-host",
        ip,
        "--discovery-port",
        str(discovery_port),
        "--discovery-interval",
        "0.1",
        "--fps",
        "10",
    ]

    proc = subprocess.Popen(
        cmd,
        cwd=str(ROOT),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                out, err = proc.communicate(timeout=1.0)
                raise AssertionError(
                    f"camera node exited early: returncode={proc.returncode}\nstdout=\n{out}\nstderr=\n{err}"
                )
            try:
                with socket.create_connection((ip, tcp_port), timeout=0.2):
                    break
            except OSError:
                time.sleep(0.05)
        else:
            raise AssertionError("camera node did not start listening")

        yield {"ip": ip, "tcp_port": tcp_port, "discovery_port": discovery_port, "proc": proc}
    finally:
        proc.terminate()
        try:
            _out, _err = proc.communicate(timeout=2.0)
        except subprocess.TimeoutExpired:
            proc.kill()
            _out, _err = proc.communicate(timeout=2.0)


@pytest.mark.asyncio
async def test_camera_process_streams_to_station(camera_process: CameraProcessInfo) -> None:
    frames: list[FramePacket] = []
    station = Station(
        StationConfig(
            discovery_host=camera_process["ip"],
            discovery_port=camera_process["discovery_port"],
            stream_port=camera_process["tcp_port"],
            fps=20,
        ),
    )
    station.set_frame_callback(lambda _session, packet: frames.append(packet))

    try:
        await station.open()
        assert await wait_until(lambda: any(p.fps == 20 for p in frames), timeout=5.0)

        session = station.sessions[camera_process["ip"]]
        assert session.name == "Porch"
        assert session.has_image
        assert station.last_seen(camera_process["ip"]) is not None
    finally:
        station.stop()
