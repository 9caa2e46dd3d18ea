"""Tests for the MJPEG preview supervisor and registry."""

from __future__ import annotations

import asyncio

import pytest

from cam_recorder.camera import Camera, NotFound
from cam_recorder.config import RecordingSettings, StreamSettings
from cam_recorder.events import EventLog
from cam_recorder.frames import FrameBroadcaster
from cam_recorder.streaming import (
    MJPEGStreamer,
    StreamerRegistry,
    build_stream_command,
    multipart_media_type,
    render_multipart_chunk,
)


def test_build_stream_command_pipes_jpeg_frames() -> None:
    settings = StreamSettings(fps=5, width=320, quality=7)

    command = build_stream_command(settings, "rtsp://camera.local/live", ffmpeg_binary="ff")

    assert command[0] == "ff"
    assert command[command.index("-rtsp_transport") + 1] == "tcp"
    assert command[command.index("-vf") + 1] == "fps=5,scale=320:-1"
    assert command[command.index("-c:v") + 1] == "mjpeg"
    assert command[command.index("-q:v") + 1] == "7"
    assert command[-3:] == ["-f", "image2pipe", "-"]


def test_render_multipart_chunk() -> None:
    payload = b"\xff\xd8abc\xff\xd9"

    chunk = render_multipart_chunk(payload)

    assert chunk == (
        b"--frame\r\nContent-Type: image/jpeg\r\nContent-Length: 7\r\n\r\n" + payload + b"\r\n"
    )
    assert multipart_media_type("cam") == "multipart/x-mixed-replace; boundary=cam"


def test_streamer_publishes_frames_and_clears_on_stop(stream_command, stream_frame, wait_until) -> None:
    broadcaster = FrameBroadcaster()
    broadcaster.register("Cam1")
    log = EventLog()

    async def _exercise() -> bytes | None:
        streamer = MJPEGStreamer(
            Camera("Cam1", "rtsp://example/1"),
            StreamSettings(),
            broadcaster,
            command_builder=stream_command(),
            retry_delay=0.05,
            stop_timeout=3.0,
            event_log=log,
        )
        await streamer.start()
        await wait_until(lambda: streamer.latest_frame is not None)
        frame = streamer.latest_frame
        assert streamer.is_running is True
        await streamer.stop()
        assert streamer.latest_frame is None
        assert streamer.is_running is False
        return frame

    frame = asyncio.run(_exercise())

    assert frame is not None
    assert frame[:2] == b"\xff\xd8" and frame[-2:] == b"\xff\xd9"
    assert frame in {stream_frame(index) for index in range(200)}
    assert [entry.event for entry in log.tail(category="streaming")] == ["started", "stopped"]


def test_streamer_restarts_when_stream_ends(stream_command, wait_until) -> None:
    broadcaster = FrameBroadcaster()
    broadcaster.register("Cam1")
    launches: list[str] = []
    build = stream_command(2)

    def _builder(settings: StreamSettings, source: str) -> list[str]:
        launches.append(source)
        return build(settings, source)

    async def _exercise() -> MJPEGStreamer:
        streamer = MJPEGStreamer(
            Camera("Cam1", "rtsp://example/1"),
            StreamSettings(),
            broadcaster,
            command_builder=_builder,
            retry_delay=0.05,
        )
        await streamer.start()
        await wait_until(lambda: len(launches) >= 2)
        await streamer.stop()
        return streamer

    streamer = asyncio.run(_exercise())

    assert streamer.last_error is not None
    assert "live preview ended" in streamer.last_error


def test_registry_registers_broadcaster_slots(stream_command, wait_until) -> None:
    async def _exercise() -> None:
        registry = StreamerRegistry(
            StreamSettings(),
            recording=RecordingSettings(retry_delay=0.05, stop_timeout=3.0),
            command_builder=stream_command(),
        )
        await registry.add_camera(Camera("Cam1", "rtsp://example/1", enabled=False))
        assert "Cam1" in registry.broadcaster
        assert registry.latest_frame("Cam1") is None
        assert registry.get("Cam1").is_running is False

        await registry.start("Cam1")
        frames = registry.frames("Cam1")
        first = await asyncio.wait_for(frames.__anext__(), timeout=5.0)
        assert first.startswith(b"\xff\xd8")

        chunks = registry.multipart("Cam1")
        chunk = await asyncio.wait_for(chunks.__anext__(), timeout=5.0)
        assert chunk.startswith(b"--frame\r\nContent-Type: image/jpeg\r\n")

        await registry.remove_camera("Cam1")
        assert "Cam1" not in registry.broadcaster
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()
        await chunks.aclose()

    asyncio.run(_exercise())


def test_registry_unknown_camera_raises() -> None:
    registry = StreamerRegistry(StreamSettings())

    with pytest.raises(NotFound):
        registry.latest_frame("ghost")
    with pytest.raises(NotFound):
        registry.frames("ghost")
    with pytest.raises(NotFound):
        registry.multipart("ghost")


def test_registry_stop_all_stops_previews(stream_command, wait_until) -> None:
    async def _exercise() -> StreamerRegistry:
        registry = StreamerRegistry(
            StreamSettings(),
            recording=RecordingSettings(retry_delay=0.05, stop_timeout=3.0),
            command_builder=stream_command(),
        )
        for index in range(3):
            await registry.add_camera(Camera(f"Cam{index}", f"rtsp://example/{index}"))
        await wait_until(
            lambda: all(registry.latest_frame(name) is not None for name in registry.names())
        )
        await asyncio.wait_for(registry.stop_all(), timeout=10)
        return registry

    registry = asyncio.run(_exercise())

    assert all(not status["running"] for status in registry.status().values())
    assert all(registry.latest_frame(name) is None for name in registry.names())
