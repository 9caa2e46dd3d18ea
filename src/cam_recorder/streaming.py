"""Live MJPEG preview backed by an ffmpeg image pipe."""
from __future__ import annotations

import logging
import subprocess
from typing import AsyncGenerator, AsyncIterator, Callable, List

from .camera import Camera, RuntimeFailure
from .config import RecordingSettings, StreamSettings
from .events import EventLog
from .frames import FrameBroadcaster, FrameDemuxer
from .supervisor import ProcessSupervisor, SupervisorRegistry

logger = logging.getLogger(__name__)

StreamCommandBuilder = Callable[[StreamSettings, str], List[str]]

DEFAULT_BOUNDARY = "frame"


def build_stream_command(
    settings: StreamSettings, source: str, *, ffmpeg_binary: str = "ffmpeg"
) -> list[str]:
    """Return the ffmpeg invocation writing JPEG frames of ``source`` to stdout."""

    command = [ffmpeg_binary, "-hide_banner", "-loglevel", "error", "-nostdin"]
    if source.lower().startswith("rtsp://"):
        command += ["-rtsp_transport", "tcp"]
    command += [
        "-i",
        source,
        "-vf",
        f"fps={settings.fps},scale={settings.width}:-1",
        "-c:v",
        "mjpeg",
        "-q:v",
        str(settings.quality),
        "-f",
        "image2pipe",
        "-",
    ]
    return command


def multipart_media_type(boundary: str = DEFAULT_BOUNDARY) -> str:
    """Return the MIME type advertised for MJPEG responses."""

    return f"multipart/x-mixed-replace; boundary={boundary}"


def render_multipart_chunk(frame: bytes, boundary: str = DEFAULT_BOUNDARY) -> bytes:
    header = (
        f"--{boundary}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n"
        "\r\n"
    ).encode("ascii")
    return header + frame + b"\r\n"


class MJPEGStreamer(ProcessSupervisor):
    """Keep a preview encoder running and publish its frames."""

    role = "streaming"
    event_category = "streaming"

    def __init__(
        self,
        camera: Camera,
        settings: StreamSettings,
        broadcaster: FrameBroadcaster,
        *,
        command_builder: StreamCommandBuilder | None = None,
        ffmpeg_binary: str = "ffmpeg",
        retry_delay: float = 5.0,
        stop_timeout: float = 10.0,
        event_log: EventLog | None = None,
    ) -> None:
        super().__init__(
            camera, retry_delay=retry_delay, stop_timeout=stop_timeout, event_log=event_log
        )
        self._settings = settings
        self._broadcaster = broadcaster
        if command_builder is None:
            def command_builder(stream: StreamSettings, source: str) -> list[str]:
                return build_stream_command(stream, source, ffmpeg_binary=ffmpeg_binary)
        self._command_builder = command_builder

    @property
    def latest_frame(self) -> bytes | None:
        return self._broadcaster.latest(self.name)

    async def _run_once(self) -> None:
        command = self._command_builder(self._settings, self.camera.source)
        process = await self._launch(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        assert process.stdout is not None
        demuxer = FrameDemuxer()
        await demuxer.run(process.stdout, self._publish)
        returncode = await process.wait()
        if not self._stopping:
            raise RuntimeFailure(f"live preview ended unexpectedly (exit code {returncode})")

    def _publish(self, frame: bytes) -> None:
        self._broadcaster.publish(self.name, frame)

    def _on_stopped(self) -> None:
        self._broadcaster.clear(self.name)


class StreamerRegistry(SupervisorRegistry[MJPEGStreamer]):
    """Directory of live preview sessions keyed by camera name."""

    role = "streaming"

    def __init__(
        self,
        settings: StreamSettings,
        *,
        broadcaster: FrameBroadcaster | None = None,
        recording: RecordingSettings | None = None,
        command_builder: StreamCommandBuilder | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        super().__init__(event_log=event_log)
        self._settings = settings
        self._broadcaster = broadcaster or FrameBroadcaster()
        self._recording = recording or RecordingSettings()
        self._command_builder = command_builder

    @property
    def broadcaster(self) -> FrameBroadcaster:
        return self._broadcaster

    def _create(self, camera: Camera) -> MJPEGStreamer:
        return MJPEGStreamer(
            camera,
            self._settings,
            self._broadcaster,
            command_builder=self._command_builder,
            ffmpeg_binary=self._recording.ffmpeg_binary,
            retry_delay=self._recording.retry_delay,
            stop_timeout=self._recording.stop_timeout,
            event_log=self._event_log,
        )

    def _on_added(self, camera: Camera) -> None:
        self._broadcaster.register(camera.name)

    def _on_removed(self, name: str) -> None:
        self._broadcaster.unregister(name)

    def latest_frame(self, name: str) -> bytes | None:
        self.get(name)
        return self._broadcaster.latest(name)

    def frames(self, name: str) -> AsyncIterator[bytes]:
        """Iterate over the live frames of ``name``, skipping stale ones."""

        self.get(name)
        return self._broadcaster.subscribe(name)

    def multipart(
        self, name: str, boundary: str = DEFAULT_BOUNDARY
    ) -> AsyncGenerator[bytes, None]:
        frames = self.frames(name)

        async def _render() -> AsyncGenerator[bytes, None]:
            async for frame in frames:
                yield render_multipart_chunk(frame, boundary)

        return _render()


__all__ = [
    "DEFAULT_BOUNDARY",
    "MJPEGStreamer",
    "StreamCommandBuilder",
    "StreamerRegistry",
    "build_stream_command",
    "multipart_media_type",
    "render_multipart_chunk",
]
