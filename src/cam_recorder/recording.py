"""Segmented recording of camera sources through ffmpeg."""
from __future__ import annotations

import asyncio
import logging
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List

from .camera import Camera, RuntimeFailure, StorageError, safe_camera_name
from .config import RecordingSettings
from .events import EventLog
from .process import describe_exit
from .storage import Segment, SegmentCatalog
from .supervisor import ProcessSupervisor, SupervisorRegistry

logger = logging.getLogger(__name__)

SegmentCommandBuilder = Callable[[RecordingSettings, str, Path], List[str]]

_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def build_segment_command(
    settings: RecordingSettings, source: str, output_path: Path
) -> list[str]:
    """Return the ffmpeg invocation recording one segment of ``source``."""

    command = [settings.ffmpeg_binary, "-hide_banner", "-loglevel", "error", "-nostdin"]
    if source.lower().startswith("rtsp://"):
        command += ["-rtsp_transport", "tcp"]
    command += [
        "-i",
        source,
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-crf",
        "23",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-t",
        _format_seconds(settings.segment_duration),
        "-movflags",
        "+faststart",
        "-y",
        str(output_path),
    ]
    return command


def segment_filename(camera_name: str, when: datetime, fmt: str) -> str:
    """Return the segment filename for ``camera_name`` started at ``when``.

    Timestamps are rendered in UTC with millisecond precision so that
    lexical order matches creation order.
    """

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    when = when.astimezone(timezone.utc)
    stamp = f"{when.strftime(_TIMESTAMP_FORMAT)}_{when.microsecond // 1000:03d}"
    return f"{safe_camera_name(camera_name)}_{stamp}.{fmt}"


class SegmentRecorder(ProcessSupervisor):
    """Record a camera into consecutive fixed-length segment files."""

    role = "recording"
    event_category = "recording"

    def __init__(
        self,
        camera: Camera,
        settings: RecordingSettings,
        *,
        catalog: SegmentCatalog | None = None,
        command_builder: SegmentCommandBuilder | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        super().__init__(
            camera,
            retry_delay=settings.retry_delay,
            stop_timeout=settings.stop_timeout,
            event_log=event_log,
        )
        self._settings = settings
        self._catalog = catalog or SegmentCatalog(settings)
        self._command_builder = command_builder or build_segment_command
        self._output_dir = self._catalog.camera_dir(camera.name)
        self._last_stamp: datetime | None = None

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def next_segment_path(self, now: datetime | None = None) -> Path:
        """Return a fresh output path, later than any previously issued."""

        when = now or datetime.now(timezone.utc)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        when = when.astimezone(timezone.utc)
        when = when.replace(microsecond=(when.microsecond // 1000) * 1000)
        if self._last_stamp is not None and when <= self._last_stamp:
            when = self._last_stamp + timedelta(milliseconds=1)
        self._last_stamp = when
        return self._output_dir / segment_filename(self.name, when, self._settings.format)

    def list_segments(self) -> list[Segment]:
        return self._catalog.list_segments(self.name)

    def status(self) -> dict[str, object]:
        payload = super().status()
        payload["output_dir"] = str(self._output_dir)
        return payload

    async def _prepare(self) -> None:
        try:
            await asyncio.to_thread(self._output_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                f"Unable to create output directory {self._output_dir}: {exc}"
            ) from exc

    async def _run_once(self) -> None:
        path = self.next_segment_path()
        command = self._command_builder(self._settings, self.camera.source, path)
        logger.debug("Recording segment %s for camera %s", path.name, self.name)
        process = await self._launch(command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        _, stderr = await process.communicate()
        if process.returncode != 0 and not self._stopping:
            raise RuntimeFailure(describe_exit(process.returncode, stderr))


class RecorderRegistry(SupervisorRegistry[SegmentRecorder]):
    """Directory of recording sessions keyed by camera name."""

    role = "recording"

    def __init__(
        self,
        settings: RecordingSettings,
        *,
        catalog: SegmentCatalog | None = None,
        command_builder: SegmentCommandBuilder | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        super().__init__(event_log=event_log)
        self._settings = settings
        self._catalog = catalog or SegmentCatalog(settings)
        self._command_builder = command_builder

    @property
    def catalog(self) -> SegmentCatalog:
        return self._catalog

    def _create(self, camera: Camera) -> SegmentRecorder:
        return SegmentRecorder(
            camera,
            self._settings,
            catalog=self._catalog,
            command_builder=self._command_builder,
            event_log=self._event_log,
        )

    def list_all_segments(self) -> list[Segment]:
        """Return the segments of every registered camera, newest first."""

        segments: list[Segment] = []
        for recorder in self.list_all().values():
            try:
                segments.extend(recorder.list_segments())
            except StorageError as exc:
                logger.warning("Unable to list segments for camera %s: %s", recorder.name, exc)
        segments.sort(key=lambda item: (item.created_at, item.filename), reverse=True)
        return segments


__all__ = [
    "RecorderRegistry",
    "SegmentCommandBuilder",
    "SegmentRecorder",
    "build_segment_command",
    "segment_filename",
]
