"""Segment catalogue, storage statistics and the retention sweeper."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .camera import (
    NotFound,
    StorageError,
    camera_name_from_dir,
    check_camera_name,
    safe_camera_name,
)
from .config import RecordingSettings
from .events import EventLog

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Return ``size`` using binary units, for example ``"1.5 MB"``."""

    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    value = size // unit
    while value >= unit:
        div *= unit
        exp += 1
        value //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def _isoformat(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class Segment:
    """A recorded file on disk."""

    filename: str
    camera: str
    path: Path
    size: int
    created_at: float
    duration: float

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "camera": self.camera,
            "path": str(self.path),
            "size": self.size,
            "size_human": format_bytes(self.size),
            "created_at": _isoformat(self.created_at),
            "duration": self.duration,
        }


@dataclass(slots=True)
class CameraStorageStats:
    name: str
    size: int = 0
    file_count: int = 0
    oldest: float | None = None
    newest: float | None = None

    def include(self, size: int, mtime: float) -> None:
        self.size += size
        self.file_count += 1
        if self.oldest is None or mtime < self.oldest:
            self.oldest = mtime
        if self.newest is None or mtime > self.newest:
            self.newest = mtime

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "size_human": format_bytes(self.size),
            "file_count": self.file_count,
            "oldest": _isoformat(self.oldest),
            "newest": _isoformat(self.newest),
        }


@dataclass(slots=True)
class StorageStats:
    retention_days: float
    last_sweep: float | None = None
    cameras: list[CameraStorageStats] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(camera.size for camera in self.cameras)

    @property
    def file_count(self) -> int:
        return sum(camera.file_count for camera in self.cameras)

    @property
    def oldest(self) -> float | None:
        values = [camera.oldest for camera in self.cameras if camera.oldest is not None]
        return min(values) if values else None

    @property
    def newest(self) -> float | None:
        values = [camera.newest for camera in self.cameras if camera.newest is not None]
        return max(values) if values else None

    def to_dict(self) -> dict[str, object]:
        total = self.total_size
        return {
            "total_size_bytes": total,
            "total_size_human": format_bytes(total),
            "file_count": self.file_count,
            "oldest_file": _isoformat(self.oldest),
            "newest_file": _isoformat(self.newest),
            "last_sweep": _isoformat(self.last_sweep),
            "retention_days": self.retention_days,
            "cameras": [camera.to_dict() for camera in self.cameras],
        }


@dataclass(frozen=True, slots=True)
class SweepReport:
    """Outcome of a single retention sweep."""

    deleted_files: int
    deleted_bytes: int
    failed: int
    cutoff: float
    finished_at: float

    def to_dict(self) -> dict[str, object]:
        return {
            "deleted_files": self.deleted_files,
            "deleted_bytes": self.deleted_bytes,
            "deleted_human": format_bytes(self.deleted_bytes),
            "failed": self.failed,
            "cutoff": _isoformat(self.cutoff),
            "finished_at": _isoformat(self.finished_at),
        }


class SegmentCatalog:
    """Read and delete recorded segments beneath the output root.

    Nothing is cached; every call walks the filesystem. ``lock`` serialises
    listings, statistics and deletions with retention sweeps. Recorders never
    take it.
    """

    def __init__(self, settings: RecordingSettings) -> None:
        self._settings = settings
        self._root = Path(settings.output_dir)
        self.lock = threading.RLock()
        self.last_sweep: float | None = None

    @property
    def root(self) -> Path:
        return self._root

    @property
    def settings(self) -> RecordingSettings:
        return self._settings

    def camera_dir(self, name: str) -> Path:
        try:
            check_camera_name(name)
        except ValueError as exc:
            raise StorageError(str(exc)) from None
        return self._root / safe_camera_name(name)

    def _is_segment(self, filename: str) -> bool:
        return filename.endswith(f".{self._settings.format}")

    def _segment(self, path: Path, camera: str, stat: os.stat_result) -> Segment:
        return Segment(
            filename=path.name,
            camera=camera,
            path=path,
            size=stat.st_size,
            created_at=stat.st_mtime,
            duration=self._settings.segment_duration,
        )

    def list_segments(self, name: str) -> list[Segment]:
        """Return ``name``'s segments, oldest first."""

        directory = self.camera_dir(name)
        segments: list[Segment] = []
        with self.lock:
            try:
                entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
            except FileNotFoundError:
                return segments
            except OSError as exc:
                raise StorageError(f"Unable to list {directory}: {exc}") from exc
            for entry in entries:
                if not entry.is_file() or not self._is_segment(entry.name):
                    continue
                try:
                    stat = entry.stat()
                except OSError:
                    continue
                segments.append(self._segment(Path(entry.path), name, stat))
        return segments

    def list_files(
        self,
        camera: str | None = None,
        filter: str | None = None,
        limit: int = 100,
    ) -> list[Segment]:
        """Return recorded files newest first.

        ``camera`` restricts the walk to one camera directory, ``filter`` is a
        case-insensitive substring match on the filename and ``limit`` caps
        the result (``0`` or less disables the cap).
        """

        search_dir = self.camera_dir(camera) if camera else self._root
        needle = filter.lower() if filter else None
        files: list[Segment] = []
        with self.lock:
            for dirpath, _dirnames, filenames in os.walk(search_dir):
                directory = Path(dirpath)
                try:
                    relative = directory.relative_to(self._root)
                except ValueError:
                    relative = Path()
                camera_name = camera_name_from_dir(relative.parts[0]) if relative.parts else ""
                for filename in filenames:
                    if not self._is_segment(filename):
                        continue
                    if needle is not None and needle not in filename.lower():
                        continue
                    path = directory / filename
                    try:
                        stat = path.stat()
                    except OSError:
                        continue
                    files.append(self._segment(path, camera_name, stat))
        files.sort(key=lambda item: (item.created_at, item.filename), reverse=True)
        if limit and limit > 0:
            files = files[:limit]
        return files

    def stats(self) -> StorageStats:
        """Compute storage usage for every camera directory."""

        stats = StorageStats(
            retention_days=self._settings.retention_days, last_sweep=self.last_sweep
        )
        with self.lock:
            try:
                camera_dirs = sorted(
                    (entry for entry in os.scandir(self._root) if entry.is_dir()),
                    key=lambda entry: entry.name,
                )
            except FileNotFoundError:
                return stats
            except OSError as exc:
                raise StorageError(f"Unable to read {self._root}: {exc}") from exc
            for camera_dir in camera_dirs:
                camera_stats = CameraStorageStats(name=camera_name_from_dir(camera_dir.name))
                try:
                    entries = list(os.scandir(camera_dir.path))
                except OSError:
                    entries = []
                for entry in entries:
                    if not entry.is_file() or not self._is_segment(entry.name):
                        continue
                    try:
                        stat = entry.stat()
                    except OSError:
                        continue
                    camera_stats.include(stat.st_size, stat.st_mtime)
                stats.cameras.append(camera_stats)
        return stats

    def _candidate(self, camera: str | None, filename: str) -> Path:
        base = self.camera_dir(camera) if camera else self._root
        candidate = (base / filename).resolve()
        root = self._root.resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise StorageError("invalid file path")
        return candidate

    def resolve(self, camera: str | None, filename: str) -> Path:
        """Return the path of an existing recorded file."""

        path = self._candidate(camera, filename)
        if not path.is_file():
            raise NotFound(f"Recording {filename} not found")
        return path

    def delete(self, camera: str | None, filename: str) -> None:
        with self.lock:
            path = self._candidate(camera, filename)
            try:
                path.unlink()
            except FileNotFoundError:
                raise NotFound(f"Recording {filename} not found") from None
            except OSError as exc:
                raise StorageError(f"Unable to delete {filename}: {exc}") from exc
        logger.info("Deleted recording %s", path)


class RetentionSweeper:
    """Delete files older than the retention horizon on a fixed schedule."""

    def __init__(
        self,
        catalog: SegmentCatalog,
        settings: RecordingSettings | None = None,
        *,
        event_log: EventLog | None = None,
    ) -> None:
        self._catalog = catalog
        self._settings = settings or catalog.settings
        self._event_log = event_log
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def last_sweep(self) -> float | None:
        return self._catalog.last_sweep

    @property
    def running(self) -> bool:
        return self._task is not None

    def sweep(self, now: float | None = None) -> SweepReport:
        """Delete every file whose modification time precedes the horizon."""

        now = time.time() if now is None else now
        cutoff = now - self._settings.retention_seconds
        root = self._catalog.root
        deleted = 0
        deleted_bytes = 0
        failed = 0
        with self._catalog.lock:
            self._catalog.last_sweep = now
            try:
                camera_dirs = [entry for entry in os.scandir(root) if entry.is_dir()]
            except FileNotFoundError:
                camera_dirs = []
            except OSError as exc:
                raise StorageError(f"Unable to read {root}: {exc}") from exc
            for camera_dir in camera_dirs:
                try:
                    entries = list(os.scandir(camera_dir.path))
                except OSError as exc:
                    logger.warning("Unable to scan %s: %s", camera_dir.path, exc)
                    continue
                for entry in entries:
                    try:
                        if not entry.is_file():
                            continue
                        stat = entry.stat()
                    except OSError:
                        continue
                    if stat.st_mtime >= cutoff:
                        continue
                    try:
                        os.remove(entry.path)
                    except OSError as exc:
                        failed += 1
                        logger.warning("Failed to delete %s: %s", entry.path, exc)
                        continue
                    deleted += 1
                    deleted_bytes += stat.st_size
        report = SweepReport(
            deleted_files=deleted,
            deleted_bytes=deleted_bytes,
            failed=failed,
            cutoff=cutoff,
            finished_at=time.time(),
        )
        if deleted:
            message = f"Deleted {deleted} files ({format_bytes(deleted_bytes)})"
            logger.info("Retention sweep: %s", message)
            if self._event_log is not None:
                self._event_log.record(
                    "storage",
                    "sweep",
                    message,
                    metadata={"deleted_files": deleted, "deleted_bytes": deleted_bytes, "failed": failed},
                )
        return report

    def start(self) -> None:
        """Sweep now and then every ``sweep_interval`` seconds."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(self._stop_event))

    async def aclose(self) -> None:
        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        try:
            await task
        finally:
            self._task = None
            self._stop_event = None

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Retention sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._settings.sweep_interval)
            except asyncio.TimeoutError:
                continue


__all__ = [
    "CameraStorageStats",
    "RetentionSweeper",
    "Segment",
    "SegmentCatalog",
    "StorageStats",
    "SweepReport",
    "format_bytes",
]
