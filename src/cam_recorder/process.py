"""Helpers for launching and stopping encoder child processes."""
from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
import sys
from typing import Sequence

from .camera import LaunchFailure

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 400


async def spawn(
    command: Sequence[str],
    *,
    stdout: int | None = subprocess.DEVNULL,
    stderr: int | None = subprocess.PIPE,
) -> asyncio.subprocess.Process:
    """Launch ``command`` and return the process handle."""

    if not command:
        raise LaunchFailure("encoder command is empty")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
        )
    except OSError as exc:
        raise LaunchFailure(f"failed to launch {command[0]}: {exc}") from exc
    logger.debug("Launched %s (pid %s)", command[0], process.pid)
    return process


def interrupt(process: asyncio.subprocess.Process | None) -> bool:
    """Ask ``process`` to exit. Returns ``False`` when it already exited."""

    if process is None or process.returncode is not None:
        return False
    try:
        if sys.platform == "win32":  # pragma: no cover - platform specific
            process.terminate()
        else:
            process.send_signal(signal.SIGINT)
    except ProcessLookupError:
        return False
    return True


def kill(process: asyncio.subprocess.Process | None) -> None:
    """Forcefully stop ``process`` when it is still alive."""

    if process is None or process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    logger.warning("Killed unresponsive encoder process %s", process.pid)


def describe_exit(returncode: int | None, stderr: bytes | None) -> str:
    """Return a short human readable description of an encoder exit."""

    message = f"encoder exited with code {returncode}"
    if not stderr:
        return message
    text = stderr.decode("utf-8", errors="replace").strip()
    if not text:
        return message
    if len(text) > _STDERR_TAIL_CHARS:
        text = "..." + text[-_STDERR_TAIL_CHARS:]
    return f"{message}: {text}"


__all__ = ["describe_exit", "interrupt", "kill", "spawn"]
