from __future__ import annotations

import asyncio
import sys

import pytest

from cam_recorder.camera import (
    Camera,
    CameraError,
    EncoderFailure,
    LaunchFailure,
    NotFound,
    RuntimeFailure,
    camera_name_from_dir,
    safe_camera_name,
)
from cam_recorder.process import describe_exit, interrupt, spawn


def test_camera_normalises_fields() -> None:
    camera = Camera("  Front Door ", " rtsp://10.0.0.2/stream ", enabled=1)

    assert camera.name == "Front Door"
    assert camera.source == "rtsp://10.0.0.2/stream"
    assert camera.enabled is True
    assert camera.safe_name == "Front_Door"
    assert camera.to_dict() == {
        "name": "Front Door",
        "source": "rtsp://10.0.0.2/stream",
        "enabled": True,
    }


@pytest.mark.parametrize(("name", "source"), [("", "rtsp://x"), ("Cam", " "), (None, "rtsp://x")])
def test_camera_requires_name_and_source(name, source) -> None:
    with pytest.raises(ValueError):
        Camera(name, source)


@pytest.mark.parametrize("name", ["../outside", "a/b", "a\\b", "..", ".", " .. "])
def test_camera_rejects_path_like_names(name) -> None:
    with pytest.raises(ValueError):
        Camera(name, "rtsp://x")


def test_directory_name_round_trip() -> None:
    assert safe_camera_name("Back Yard Gate") == "Back_Yard_Gate"
    assert camera_name_from_dir("Back_Yard_Gate") == "Back Yard Gate"


def test_error_hierarchy() -> None:
    assert issubclass(LaunchFailure, EncoderFailure)
    assert issubclass(RuntimeFailure, EncoderFailure)
    assert issubclass(NotFound, CameraError)
    assert issubclass(CameraError, RuntimeError)


def test_describe_exit_keeps_stderr_tail() -> None:
    assert describe_exit(1, None) == "encoder exited with code 1"
    assert describe_exit(1, b"  \n") == "encoder exited with code 1"
    message = describe_exit(8, b"x" * 1000 + b"Connection refused")

    assert message.startswith("encoder exited with code 8: ...")
    assert message.endswith("Connection refused")
    assert len(message) < 450


def test_spawn_reports_missing_binary(tmp_path) -> None:
    with pytest.raises(LaunchFailure):
        asyncio.run(spawn([str(tmp_path / "missing-binary")]))
    with pytest.raises(LaunchFailure):
        asyncio.run(spawn([]))


def test_interrupt_ignores_finished_process() -> None:
    async def _exercise() -> tuple[bool, bool]:
        process = await spawn(
            [sys.executable, "-c", "import time; time.sleep(30)"], stderr=None
        )
        first = interrupt(process)
        await process.wait()
        return first, interrupt(process)

    first, second = asyncio.run(_exercise())

    assert first is True
    assert second is False
    assert interrupt(None) is False
