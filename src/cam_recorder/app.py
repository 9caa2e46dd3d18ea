"""FastAPI application wiring together the cam-recorder services."""
from __future__ import annotations

import logging
import mimetypes
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel

from .camera import (
    AlreadyExists,
    AlreadyRunning,
    Camera,
    CameraError,
    NotFound,
    StorageError,
)
from .config import CameraConfig, ConfigManager
from .events import EVENT_CATEGORIES, EventLog
from .recording import RecorderRegistry, SegmentCommandBuilder
from .storage import RetentionSweeper
from .streaming import (
    StreamCommandBuilder,
    StreamerRegistry,
    multipart_media_type,
)
from .version import APP_VERSION

DEFAULT_CONFIG_PATH = Path(os.environ.get("CAM_RECORDER_CONFIG", "data/config.json"))

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


class CameraPayload(BaseModel):
    name: str
    source: str
    enabled: bool = True


def _http_error(exc: CameraError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (AlreadyExists, AlreadyRunning)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    event_log: EventLog | None = None,
    recorder_command: SegmentCommandBuilder | None = None,
    stream_command: StreamCommandBuilder | None = None,
) -> FastAPI:
    app = FastAPI(title="cam-recorder", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    config = config_manager.get_config()
    logging.getLogger("cam_recorder").setLevel(config.logging.level.upper())

    if event_log is None:
        event_log = EventLog(config.logging.event_log)

    recorders = RecorderRegistry(
        config.recording, command_builder=recorder_command, event_log=event_log
    )
    catalog = recorders.catalog
    streamers = StreamerRegistry(
        config.stream,
        recording=config.recording,
        command_builder=stream_command,
        event_log=event_log,
    )
    sweeper = RetentionSweeper(catalog, config.recording, event_log=event_log)

    app.state.config_manager = config_manager
    app.state.event_log = event_log
    app.state.recorders = recorders
    app.state.streamers = streamers
    app.state.catalog = catalog
    app.state.sweeper = sweeper

    async def _register_camera(entry: CameraConfig) -> None:
        camera = Camera(entry.name, entry.source, entry.enabled)
        try:
            await recorders.add_camera(camera)
        except StorageError as exc:
            logger.error("Failed to start recording for camera %s: %s", camera.name, exc)
        preview = Camera(
            entry.name, entry.source, entry.enabled and config.stream.enabled
        )
        await streamers.add_camera(preview)

    def _camera_payload(name: str) -> dict[str, object]:
        recorder = recorders.get(name)
        payload = recorder.camera.to_dict()
        payload["recording"] = recorder.status()
        payload["streaming"] = streamers.get(name).status() if name in streamers else None
        return payload

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        event_log.record("system", "startup", "cam-recorder starting up.")
        sweeper.start()
        for entry in config_manager.get_cameras():
            try:
                await _register_camera(entry)
            except CameraError as exc:
                logger.error("Failed to register camera %s: %s", entry.name, exc)
        event_log.record(
            "system",
            "startup_complete",
            "cam-recorder startup sequence completed.",
            metadata={"cameras": len(recorders)},
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        event_log.record("system", "shutdown", "cam-recorder shutting down.")
        await recorders.stop_all()
        await streamers.stop_all()
        await sweeper.aclose()
        event_log.record("system", "shutdown_complete", "cam-recorder shutdown completed.")

    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        return {"cameras": [_camera_payload(name) for name in recorders.names()]}

    @app.post("/api/cameras", status_code=201)
    async def add_camera(payload: CameraPayload) -> dict[str, object]:
        try:
            entry = CameraConfig(payload.name, payload.source, payload.enabled)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if entry.name in recorders:
            raise HTTPException(status_code=409, detail=f"Camera {entry.name} already exists")
        try:
            await _register_camera(entry)
        except CameraError as exc:
            raise _http_error(exc) from exc
        try:
            await run_in_threadpool(config_manager.add_camera, entry)
        except ValueError as exc:
            logger.warning("Camera %s was not persisted: %s", entry.name, exc)
        return _camera_payload(entry.name)

    @app.delete("/api/cameras/{name}")
    async def remove_camera(name: str) -> dict[str, object]:
        try:
            await recorders.remove_camera(name)
        except CameraError as exc:
            raise _http_error(exc) from exc
        if name in streamers:
            await streamers.remove_camera(name)
        await run_in_threadpool(config_manager.remove_camera, name)
        return {"removed": name}

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return {"recording": recorders.status(), "streaming": streamers.status()}

    @app.get("/api/status/{name}")
    async def get_camera_status(name: str) -> dict[str, object]:
        try:
            return _camera_payload(name)
        except CameraError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/camera/{name}/start")
    async def start_camera(name: str) -> dict[str, object]:
        try:
            await recorders.start(name)
        except CameraError as exc:
            raise _http_error(exc) from exc
        return recorders.get(name).status()

    @app.post("/api/camera/{name}/stop")
    async def stop_camera(name: str) -> dict[str, object]:
        try:
            await recorders.stop(name)
        except CameraError as exc:
            raise _http_error(exc) from exc
        return recorders.get(name).status()

    @app.get("/recordings")
    async def list_recordings(
        camera: str | None = None,
        filter: str | None = None,
        limit: int = 100,
    ) -> dict[str, object]:
        try:
            files = await run_in_threadpool(catalog.list_files, camera, filter, limit)
        except CameraError as exc:
            raise _http_error(exc) from exc
        return {"recordings": [item.to_dict() for item in files], "count": len(files)}

    @app.delete("/recordings/{camera}/{filename}")
    async def delete_recording(camera: str, filename: str) -> dict[str, object]:
        try:
            await run_in_threadpool(catalog.delete, camera, filename)
        except CameraError as exc:
            raise _http_error(exc) from exc
        event_log.record(
            "storage",
            "deleted",
            f"Deleted recording {filename}",
            camera=camera,
        )
        return {"deleted": filename}

    def _resolve(camera: str, filename: str) -> Path:
        try:
            return catalog.resolve(camera, filename)
        except CameraError as exc:
            raise _http_error(exc) from exc

    @app.get("/dl/{camera}/{filename}")
    async def download_recording(camera: str, filename: str):
        path = _resolve(camera, filename)
        return FileResponse(path, media_type="application/octet-stream", filename=path.name)

    @app.get("/play/{camera}/{filename}")
    async def play_recording(camera: str, filename: str):
        path = _resolve(camera, filename)
        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return FileResponse(path, media_type=media_type)

    @app.get("/api/storage")
    async def get_storage() -> dict[str, object]:
        try:
            stats = await run_in_threadpool(catalog.stats)
        except CameraError as exc:
            raise _http_error(exc) from exc
        return stats.to_dict()

    @app.get("/api/logs")
    async def get_logs(limit: int = 100, category: str | None = None) -> dict[str, object]:
        if category is not None and category not in EVENT_CATEGORIES:
            raise HTTPException(status_code=400, detail=f"Unknown category: {category}")
        entries = event_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/live/{name}")
    async def live_stream(name: str):
        try:
            chunks = streamers.multipart(name)
        except CameraError as exc:
            raise _http_error(exc) from exc
        return StreamingResponse(
            chunks, media_type=multipart_media_type(), headers=_NO_CACHE_HEADERS
        )

    @app.get("/snapshot/{name}.jpg")
    async def snapshot(name: str):
        try:
            frame = streamers.latest_frame(name)
        except CameraError as exc:
            raise _http_error(exc) from exc
        if frame is None:
            raise HTTPException(status_code=503, detail="No frame available yet")
        return Response(content=frame, media_type="image/jpeg", headers=_NO_CACHE_HEADERS)

    return app


__all__ = ["create_app"]
