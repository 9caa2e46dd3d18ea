"""Supervision loop shared by the recording and live preview roles."""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Generic, Sequence, TypeVar

from .camera import (
    AlreadyExists,
    AlreadyRunning,
    Camera,
    EncoderFailure,
    NotFound,
    safe_camera_name,
)
from .events import EventLog
from .process import interrupt, kill, spawn

logger = logging.getLogger(__name__)


class ProcessSupervisor(ABC):
    """Keep one camera's encoder process alive until asked to stop.

    Subclasses implement :meth:`_run_once`, which performs a single encoder
    invocation and raises :class:`~cam_recorder.camera.EncoderFailure` when
    it fails. Failures are recorded, logged and retried after
    ``retry_delay`` seconds, forever. :meth:`stop` interrupts the active
    child and waits ``stop_timeout`` seconds before killing it.
    """

    role = "process"
    event_category = "system"

    def __init__(
        self,
        camera: Camera,
        *,
        retry_delay: float = 5.0,
        stop_timeout: float = 10.0,
        event_log: EventLog | None = None,
    ) -> None:
        if retry_delay <= 0:
            raise ValueError("retry_delay must be positive")
        if stop_timeout <= 0:
            raise ValueError("stop_timeout must be positive")
        self._camera = camera
        self._retry_delay = float(retry_delay)
        self._stop_timeout = float(stop_timeout)
        self._event_log = event_log
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._running = False
        self._started_at: float | None = None
        self._last_error: str | None = None
        self._last_error_at: float | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def camera(self) -> Camera:
        return self._camera

    @property
    def name(self) -> str:
        return self._camera.name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime(self) -> float:
        if not self._running or self._started_at is None:
            return 0.0
        return max(0.0, time.monotonic() - self._started_at)

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def last_error_at(self) -> float | None:
        return self._last_error_at

    async def start(self) -> None:
        """Launch the supervision loop and return without waiting for output."""

        async with self._lock:
            if self._running:
                raise AlreadyRunning(f"{self.role} for camera {self.name} is already running")
            await self._prepare()
            stop_event = asyncio.Event()
            self._stop_event = stop_event
            self._running = True
            self._started_at = time.monotonic()
            self._task = asyncio.create_task(
                self._run(stop_event), name=f"{self.role}:{self.name}"
            )
        logger.info("Started %s for camera %s", self.role, self.name)
        self._record("started", f"Started {self.role} for {self.name}")

    async def stop(self) -> None:
        """Stop the loop and wait until no child process survives."""

        async with self._lock:
            if not self._running:
                return
            self._running = False
            self._started_at = None
            task = self._task
            assert self._stop_event is not None
            self._stop_event.set()
            interrupt(self._process)
            try:
                if task is not None:
                    await self._join(task)
            finally:
                self._task = None
                self._stop_event = None
                self._on_stopped()
        logger.info("Stopped %s for camera %s", self.role, self.name)
        self._record("stopped", f"Stopped {self.role} for {self.name}")

    def status(self) -> dict[str, object]:
        return {
            "camera": self.name,
            "role": self.role,
            "running": self._running,
            "uptime": round(self.uptime, 3),
            "last_error": self._last_error,
            "last_error_at": self._last_error_at,
        }

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    async def _prepare(self) -> None:
        """Run before the loop is launched. Errors abort :meth:`start`."""

    def _on_stopped(self) -> None:
        """Run once the loop and its child have exited."""

    @abstractmethod
    async def _run_once(self) -> None:
        """Run a single encoder invocation."""

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @property
    def _stopping(self) -> bool:
        return self._stop_event is None or self._stop_event.is_set()

    async def _launch(
        self, command: Sequence[str], *, stdout: int | None, stderr: int | None
    ) -> asyncio.subprocess.Process:
        process = await spawn(command, stdout=stdout, stderr=stderr)
        self._process = process
        if self._stopping:
            # stop() may have run while the child was being created
            interrupt(process)
        return process

    async def _join(self, task: asyncio.Task[None]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "%s for camera %s did not exit within %.1fs", self.role, self.name, self._stop_timeout
            )
        kill(self._process)
        await task

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self._run_once()
            except asyncio.CancelledError:
                raise
            except EncoderFailure as exc:
                if stop_event.is_set():
                    break
                self._note_failure(str(exc))
            except Exception as exc:
                logger.exception("Unexpected error in %s for camera %s", self.role, self.name)
                if stop_event.is_set():
                    break
                self._note_failure(f"unexpected error: {exc}")
            else:
                if not stop_event.is_set():
                    self._last_error = None
                continue
            finally:
                self._process = None
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._retry_delay)
            except asyncio.TimeoutError:
                continue

    def _note_failure(self, message: str) -> None:
        self._last_error = message
        self._last_error_at = time.time()
        logger.warning(
            "%s for camera %s failed: %s (retrying in %.1fs)",
            self.role,
            self.name,
            message,
            self._retry_delay,
        )
        self._record("failed", message)

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is None:
            return
        try:
            self._event_log.record(
                self.event_category, event, message, camera=self.name, metadata=metadata or None
            )
        except Exception:  # pragma: no cover - logging must not break supervision
            logger.exception("Unable to record %s event for camera %s", event, self.name)


S = TypeVar("S", bound=ProcessSupervisor)


class SupervisorRegistry(ABC, Generic[S]):
    """Name keyed directory of supervisors for one role."""

    role = "process"

    def __init__(self, *, event_log: EventLog | None = None) -> None:
        self._entries: Dict[str, S] = {}
        self._lock = asyncio.Lock()
        self._event_log = event_log

    @abstractmethod
    def _create(self, camera: Camera) -> S:
        """Build the supervisor for ``camera``."""

    def _on_added(self, camera: Camera) -> None:
        """Run while the directory lock is held, after ``camera`` was added."""

    def _on_removed(self, name: str) -> None:
        """Run while the directory lock is held, after ``name`` was removed."""

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def add_camera(self, camera: Camera) -> S:
        """Register ``camera`` and start it when enabled."""

        async with self._lock:
            safe_name = camera.safe_name
            if any(safe_camera_name(name) == safe_name for name in self._entries):
                raise AlreadyExists(f"Camera {camera.name} already exists")
            supervisor = self._create(camera)
            self._entries[camera.name] = supervisor
            self._on_added(camera)
        logger.debug("Registered camera %s for %s", camera.name, self.role)
        if camera.enabled:
            await supervisor.start()
        return supervisor

    def get(self, name: str) -> S:
        try:
            return self._entries[name]
        except KeyError:
            raise NotFound(f"Camera {name} not found") from None

    async def start(self, name: str) -> None:
        await self.get(name).start()

    async def stop(self, name: str) -> None:
        await self.get(name).stop()

    async def remove_camera(self, name: str) -> None:
        """Stop the camera's supervisor and drop it from the directory."""

        supervisor = self.get(name)
        await supervisor.stop()
        async with self._lock:
            if self._entries.get(name) is supervisor:
                del self._entries[name]
                self._on_removed(name)
        logger.debug("Removed camera %s from %s", name, self.role)

    async def stop_all(self) -> None:
        """Stop every registered supervisor concurrently."""

        snapshot = list(self._entries.values())
        if not snapshot:
            return
        results = await asyncio.gather(
            *(supervisor.stop() for supervisor in snapshot), return_exceptions=True
        )
        for supervisor, result in zip(snapshot, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to stop %s for camera %s: %s", self.role, supervisor.name, result
                )

    def list_all(self) -> dict[str, S]:
        return dict(self._entries)

    def names(self) -> list[str]:
        return list(self._entries)

    def status(self) -> dict[str, dict[str, object]]:
        return {name: supervisor.status() for name, supervisor in list(self._entries.items())}


__all__ = ["ProcessSupervisor", "SupervisorRegistry"]
