"""Camera identity, on-disk naming and the shared error hierarchy."""
from __future__ import annotations

from dataclasses import dataclass


class CameraError(RuntimeError):
    """Base class for errors raised by the recording and streaming core."""


class AlreadyRunning(CameraError):
    """Raised when starting a session that is already active."""


class AlreadyExists(CameraError):
    """Raised when registering a camera name that is already in use."""


class NotFound(CameraError):
    """Raised when an operation targets an unknown camera or file."""


class StorageError(CameraError):
    """Raised when a directory or file operation fails."""


class EncoderFailure(CameraError):
    """A child encoder process could not run to completion."""


class LaunchFailure(EncoderFailure):
    """The encoder process could not be started."""


class RuntimeFailure(EncoderFailure):
    """The encoder process exited abnormally."""


@dataclass(frozen=True, slots=True)
class Camera:
    """A named remote video source."""

    name: str
    source: str
    enabled: bool = True

    def __post_init__(self) -> None:
        name = str(self.name).strip() if self.name is not None else ""
        if not name:
            raise ValueError("Camera name must be a non-empty string")
        check_camera_name(name)
        source = str(self.source).strip() if self.source is not None else ""
        if not source:
            raise ValueError("Camera source must be a non-empty string")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "source", source)
        object.__setattr__(self, "enabled", bool(self.enabled))

    @property
    def safe_name(self) -> str:
        return safe_camera_name(self.name)

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "source": self.source, "enabled": self.enabled}


def check_camera_name(name: str) -> str:
    """Return ``name`` or raise ``ValueError`` when it cannot name a directory."""

    if any(char in name for char in ("/", "\\", "\0")):
        raise ValueError("Camera name must not contain path separators")
    if safe_camera_name(name) in {".", ".."}:
        raise ValueError(f"Camera name {name!r} is reserved")
    return name


def safe_camera_name(name: str) -> str:
    """Return the directory and filename form of ``name``."""

    return name.replace(" ", "_")


def camera_name_from_dir(dirname: str) -> str:
    """Recover a display camera name from its directory name."""

    return dirname.replace("_", " ")


__all__ = [
    "AlreadyExists",
    "AlreadyRunning",
    "Camera",
    "CameraError",
    "EncoderFailure",
    "LaunchFailure",
    "NotFound",
    "RuntimeFailure",
    "StorageError",
    "check_camera_name",
    "camera_name_from_dir",
    "safe_camera_name",
]
