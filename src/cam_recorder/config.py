"""Configuration management for cam-recorder."""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping, Sequence

from .camera import check_camera_name, safe_camera_name

DEFAULT_CAMERA_NAME = "Camera"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


@dataclass(frozen=True, slots=True)
class CameraConfig:
    """A camera entry as declared in the configuration file."""

    name: str
    source: str
    enabled: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.source, str) or not self.source.strip():
            raise ValueError("Camera source must be a non-empty string")
        name = self.name.strip() if isinstance(self.name, str) else ""
        name = check_camera_name(name or DEFAULT_CAMERA_NAME)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "source", self.source.strip())

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "source": self.source, "enabled": bool(self.enabled)}


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Values controlling segment rotation, retention and retries."""

    segment_duration: float = 300.0
    retention_days: float = 7
    output_dir: Path = Path("recordings")
    format: str = "mp4"
    retry_delay: float = 5.0
    stop_timeout: float = 10.0
    sweep_interval: float = 3600.0
    ffmpeg_binary: str = "ffmpeg"

    def __post_init__(self) -> None:
        for name in ("segment_duration", "retry_delay", "stop_timeout", "sweep_interval"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive duration")
            object.__setattr__(self, name, value)
        retention = float(self.retention_days)
        if not math.isfinite(retention) or retention <= 0:
            raise ValueError("retention_days must be positive")
        object.__setattr__(self, "retention_days", retention)
        fmt = str(self.format).strip().lstrip(".").lower()
        if not fmt or not fmt.isalnum():
            raise ValueError("Recording format must be a file extension such as 'mp4'")
        object.__setattr__(self, "format", fmt)
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        if not str(self.ffmpeg_binary).strip():
            raise ValueError("ffmpeg_binary must be a non-empty string")

    @property
    def retention_seconds(self) -> float:
        return self.retention_days * 86400.0

    def to_dict(self) -> dict[str, object]:
        return {
            "segment_duration": self.segment_duration,
            "retention_days": self.retention_days,
            "output_dir": str(self.output_dir),
            "format": self.format,
            "retry_delay": self.retry_delay,
            "stop_timeout": self.stop_timeout,
            "sweep_interval": self.sweep_interval,
            "ffmpeg_binary": self.ffmpeg_binary,
        }


@dataclass(frozen=True, slots=True)
class StreamSettings:
    """Configuration values for the MJPEG live preview encoder."""

    enabled: bool = True
    fps: int = 10
    width: int = 640
    quality: int = 5

    def __post_init__(self) -> None:
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Stream fps must be between 1 and 60")
        if self.width < 16:
            raise ValueError("Stream width must be at least 16 pixels")
        if self.quality < 2 or self.quality > 31:
            raise ValueError("Stream quality must be between 2 and 31")

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": bool(self.enabled),
            "fps": int(self.fps),
            "width": int(self.width),
            "quality": int(self.quality),
        }


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self) -> None:
        if not (0 < int(self.port) < 65536):
            raise ValueError("Server port must be between 1 and 65535")

    def to_dict(self) -> dict[str, object]:
        return {"host": self.host, "port": int(self.port)}


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str = "info"
    event_log: Path | None = Path("data/events.jsonl")

    def __post_init__(self) -> None:
        level = str(self.level).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown logging level: {self.level}")
        object.__setattr__(self, "level", level.lower())
        if self.event_log is not None:
            object.__setattr__(self, "event_log", Path(self.event_log))

    def to_dict(self) -> dict[str, object]:
        return {
            "level": self.level,
            "event_log": str(self.event_log) if self.event_log is not None else None,
        }


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Complete application configuration."""

    cameras: tuple[CameraConfig, ...] = ()
    recording: RecordingSettings = field(default_factory=RecordingSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def to_dict(self) -> dict[str, object]:
        return {
            "cameras": [camera.to_dict() for camera in self.cameras],
            "recording": self.recording.to_dict(),
            "stream": self.stream.to_dict(),
            "server": self.server.to_dict(),
            "logging": self.logging.to_dict(),
        }


def parse_duration(value: Any) -> float:
    """Return ``value`` in seconds.

    Numbers are taken as seconds. Strings may be plain numbers or a sequence
    of ``<number><unit>`` parts using ``h``, ``m``, ``s`` or ``ms``, for
    example ``"5m"`` or ``"1h30m"``.
    """

    if isinstance(value, bool):
        raise ValueError("Durations must be numbers or duration strings")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError("Durations must be numbers or duration strings")
    text = value.strip().lower()
    if not text:
        raise ValueError("Duration strings must not be empty")
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError("Flags must be boolean values")


def _parse_int(value: Any, *, name: str) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_camera(value: Any) -> CameraConfig:
    if isinstance(value, CameraConfig):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Camera entries must be mappings")
    source = value.get("source", value.get("rtsp_url"))
    return CameraConfig(
        name=str(value.get("name") or ""),
        source=source if isinstance(source, str) else "",
        enabled=_parse_bool(value.get("enabled"), default=True),
    )


def _parse_cameras(value: Any) -> tuple[CameraConfig, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValueError("cameras must be a list")
    return tuple(_parse_camera(item) for item in value)


def _parse_recording(value: Any) -> RecordingSettings:
    default = RecordingSettings()
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("recording settings must be provided as a mapping")

    def _duration(key: str, fallback: float) -> float:
        raw = value.get(key)
        return fallback if raw is None else parse_duration(raw)

    retention_raw = value.get("retention_days", default.retention_days)
    try:
        retention = float(retention_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("retention_days must be numeric") from exc
    return RecordingSettings(
        segment_duration=_duration("segment_duration", default.segment_duration),
        retention_days=retention,
        output_dir=Path(value.get("output_dir") or default.output_dir),
        format=str(value.get("format") or default.format),
        retry_delay=_duration("retry_delay", default.retry_delay),
        stop_timeout=_duration("stop_timeout", default.stop_timeout),
        sweep_interval=_duration("sweep_interval", default.sweep_interval),
        ffmpeg_binary=str(value.get("ffmpeg_binary") or default.ffmpeg_binary),
    )


def _parse_stream(value: Any) -> StreamSettings:
    default = StreamSettings()
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("stream settings must be provided as a mapping")
    return StreamSettings(
        enabled=_parse_bool(value.get("enabled"), default=default.enabled),
        fps=_parse_int(value.get("fps", default.fps), name="Stream fps"),
        width=_parse_int(value.get("width", default.width), name="Stream width"),
        quality=_parse_int(value.get("quality", default.quality), name="Stream quality"),
    )


def _parse_server(value: Any) -> ServerSettings:
    default = ServerSettings()
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("server settings must be provided as a mapping")
    return ServerSettings(
        host=str(value.get("host") or default.host),
        port=_parse_int(value.get("port", default.port), name="Server port"),
    )


def _parse_logging(value: Any) -> LoggingSettings:
    default = LoggingSettings()
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("logging settings must be provided as a mapping")
    event_log = value.get("event_log", default.event_log)
    return LoggingSettings(
        level=str(value.get("level") or default.level),
        event_log=Path(event_log) if event_log else None,
    )


def parse_config(payload: Mapping[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from a decoded configuration mapping."""

    return AppConfig(
        cameras=_parse_cameras(payload.get("cameras")),
        recording=_parse_recording(payload.get("recording")),
        stream=_parse_stream(payload.get("stream")),
        server=_parse_server(payload.get("server")),
        logging=_parse_logging(payload.get("logging")),
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._config = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> AppConfig:
        if not self._path.exists():
            return AppConfig()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return parse_config(payload)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._config.to_dict(), indent=2), encoding="utf-8")

    def get_config(self) -> AppConfig:
        with self._lock:
            return self._config

    def get_cameras(self) -> tuple[CameraConfig, ...]:
        with self._lock:
            return self._config.cameras

    def add_camera(self, data: Mapping[str, Any] | CameraConfig) -> CameraConfig:
        camera = _parse_camera(data)
        with self._lock:
            safe_name = safe_camera_name(camera.name)
            if any(
                safe_camera_name(existing.name) == safe_name for existing in self._config.cameras
            ):
                raise ValueError(f"Camera {camera.name} already exists")
            self._replace_cameras(self._config.cameras + (camera,))
        return camera

    def remove_camera(self, name: str) -> bool:
        with self._lock:
            remaining = tuple(camera for camera in self._config.cameras if camera.name != name)
            if len(remaining) == len(self._config.cameras):
                return False
            self._replace_cameras(remaining)
        return True

    def _replace_cameras(self, cameras: tuple[CameraConfig, ...]) -> None:
        current = self._config
        self._config = AppConfig(
            cameras=cameras,
            recording=current.recording,
            stream=current.stream,
            server=current.server,
            logging=current.logging,
        )
        self._save()


__all__ = [
    "AppConfig",
    "CameraConfig",
    "ConfigManager",
    "LoggingSettings",
    "RecordingSettings",
    "ServerSettings",
    "StreamSettings",
    "parse_config",
    "parse_duration",
]
