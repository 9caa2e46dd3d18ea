from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable

import pytest

from cam_recorder.config import RecordingSettings, StreamSettings

# Writes the child's pid into the segment, then idles until the segment
# duration elapses. SIGINT exits with 255 like ffmpeg does.
RECORDER_SCRIPT = """
import os, signal, sys, time
signal.signal(signal.SIGINT, lambda *_: sys.exit(255))
with open(sys.argv[1], "wb") as handle:
    handle.write(str(os.getpid()).encode())
time.sleep(float(sys.argv[2]))
"""

STUBBORN_SCRIPT = """
import os, signal, sys, time
signal.signal(signal.SIGINT, signal.SIG_IGN)
with open(sys.argv[1], "wb") as handle:
    handle.write(str(os.getpid()).encode())
time.sleep(60)
"""

STREAM_SCRIPT = """
import sys, time
out = sys.stdout.buffer
count = int(sys.argv[1])
index = 0
while count <= 0 or index < count:
    out.write(b"\\xff\\xd8" + bytes([index % 200 + 1]) * 64 + b"\\xff\\xd9")
    out.flush()
    index += 1
    time.sleep(0.02)
"""


def _recorder_command(settings: RecordingSettings, source: str, path: Path) -> list[str]:
    return [sys.executable, "-c", RECORDER_SCRIPT, str(path), str(settings.segment_duration)]


def _stubborn_command(settings: RecordingSettings, source: str, path: Path) -> list[str]:
    return [sys.executable, "-c", STUBBORN_SCRIPT, str(path)]


def _failing_command(settings: RecordingSettings, source: str, path: Path) -> list[str]:
    return [
        sys.executable,
        "-c",
        "import sys; sys.stderr.write('connection refused'); sys.exit(1)",
    ]


def _missing_command(settings: RecordingSettings, source: str, path: Path) -> list[str]:
    return [str(path.parent / "no-such-encoder")]


@pytest.fixture
def recorder_command():
    return _recorder_command


@pytest.fixture
def stubborn_command():
    return _stubborn_command


@pytest.fixture
def failing_command():
    return _failing_command


@pytest.fixture
def missing_command():
    return _missing_command


@pytest.fixture
def stream_command() -> Callable[..., Callable[[StreamSettings, str], list[str]]]:
    """Return a factory for stand-in preview encoders emitting ``count`` frames."""

    def _factory(count: int = 0) -> Callable[[StreamSettings, str], list[str]]:
        def _build(settings: StreamSettings, source: str) -> list[str]:
            return [sys.executable, "-c", STREAM_SCRIPT, str(count)]

        return _build

    return _factory


@pytest.fixture
def stream_frame() -> Callable[[int], bytes]:
    def _frame(index: int) -> bytes:
        return b"\xff\xd8" + bytes([index % 200 + 1]) * 64 + b"\xff\xd9"

    return _frame


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.02)

    return _wait


@pytest.fixture
def recording_settings(tmp_path: Path) -> RecordingSettings:
    return RecordingSettings(
        segment_duration=0.3,
        output_dir=tmp_path / "recordings",
        retry_delay=0.05,
        stop_timeout=3.0,
    )
