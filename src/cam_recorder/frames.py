"""Frame extraction from encoder output and latest-frame fan out."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict

from .camera import NotFound

logger = logging.getLogger(__name__)

JPEG_START = b"\xff\xd8"
JPEG_END = b"\xff\xd9"
DEFAULT_MAX_BUFFER = 512 * 1024
DEFAULT_MAX_FRAME = 16 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024


class FrameDemuxer:
    """Split a continuous byte stream into frames delimited by marker bytes.

    The demuxer keeps whatever has not yet formed a complete frame. While no
    start marker is buffered and the pending data grows beyond ``max_buffer``
    bytes, the older half is dropped so a noisy encoder cannot exhaust memory.
    A started frame waits for its end marker unless it exceeds ``max_frame``
    bytes, in which case its start marker is discarded and scanning resumes.
    """

    def __init__(
        self,
        *,
        start_marker: bytes = JPEG_START,
        end_marker: bytes = JPEG_END,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        max_frame: int = DEFAULT_MAX_FRAME,
    ) -> None:
        if not start_marker or not end_marker:
            raise ValueError("Frame markers must not be empty")
        if max_buffer <= 0:
            raise ValueError("max_buffer must be positive")
        if max_frame <= 0:
            raise ValueError("max_frame must be positive")
        self._start = bytes(start_marker)
        self._end = bytes(end_marker)
        self._max_buffer = int(max_buffer)
        self._max_frame = int(max_frame)
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet emitted as a frame."""

        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[bytes]:
        """Consume ``chunk`` and return every frame it completed, in order."""

        self._buffer.extend(chunk)
        frames: list[bytes] = []
        while True:
            start = self._buffer.find(self._start)
            if start < 0:
                self._trim()
                break
            end = self._buffer.find(self._end, start + len(self._start))
            if end < 0:
                if len(self._buffer) - start <= self._max_frame:
                    break
                del self._buffer[: start + len(self._start)]
                logger.debug("Discarded unterminated frame over %d bytes", self._max_frame)
                continue
            end += len(self._end)
            frames.append(bytes(self._buffer[start:end]))
            del self._buffer[:end]
        return frames

    def reset(self) -> None:
        self._buffer.clear()

    def _trim(self) -> None:
        if len(self._buffer) > self._max_buffer:
            dropped = len(self._buffer) // 2
            del self._buffer[:dropped]
            logger.debug("Frame buffer overflow, dropped %d bytes", dropped)

    async def run(
        self,
        reader: asyncio.StreamReader,
        on_frame: Callable[[bytes], None],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Read ``reader`` until EOF and hand each frame to ``on_frame``."""

        while True:
            try:
                chunk = await reader.read(chunk_size)
            except (OSError, ValueError) as exc:
                logger.debug("Frame reader stopped: %s", exc)
                return
            if not chunk:
                return
            for frame in self.feed(chunk):
                on_frame(frame)


class _FrameSlot:
    __slots__ = ("frame", "sequence", "closed", "changed")

    def __init__(self) -> None:
        self.frame: bytes | None = None
        self.sequence = 0
        self.closed = False
        self.changed = asyncio.Event()

    def notify(self) -> None:
        changed, self.changed = self.changed, asyncio.Event()
        changed.set()


class FrameBroadcaster:
    """Hold the most recent frame of each camera and wake every waiter.

    Publishing overwrites the held frame and never blocks. Waiters re-read
    the slot after waking, so a slow consumer skips frames instead of
    queueing them.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, _FrameSlot] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._slots

    def names(self) -> list[str]:
        return list(self._slots)

    def register(self, name: str) -> None:
        previous = self._slots.get(name)
        if previous is not None:
            self._close(previous)
        self._slots[name] = _FrameSlot()

    def unregister(self, name: str) -> None:
        slot = self._slots.pop(name, None)
        if slot is not None:
            self._close(slot)

    def publish(self, name: str, frame: bytes) -> None:
        slot = self._slots.get(name)
        if slot is None or slot.closed:
            return
        slot.frame = bytes(frame)
        slot.sequence += 1
        slot.notify()

    def latest(self, name: str) -> bytes | None:
        slot = self._slots.get(name)
        return slot.frame if slot is not None else None

    def sequence(self, name: str) -> int:
        return self._get(name).sequence

    def clear(self, name: str) -> None:
        slot = self._slots.get(name)
        if slot is not None:
            slot.frame = None

    async def wait(self, name: str, after: int = 0) -> tuple[int, bytes]:
        """Wait for a frame newer than sequence ``after``."""

        return await self._wait_slot(name, self._get(name), after)

    def subscribe(self, name: str) -> AsyncIterator[bytes]:
        """Iterate over ``name``'s frames until the camera is unregistered."""

        return self._iterate(name, self._get(name))

    def _get(self, name: str) -> _FrameSlot:
        try:
            return self._slots[name]
        except KeyError:
            raise NotFound(f"Camera {name} is not streaming") from None

    @staticmethod
    def _close(slot: _FrameSlot) -> None:
        slot.closed = True
        slot.frame = None
        slot.notify()

    async def _wait_slot(self, name: str, slot: _FrameSlot, after: int) -> tuple[int, bytes]:
        while True:
            if slot.closed:
                raise NotFound(f"Camera {name} is no longer streaming")
            frame = slot.frame
            if frame is not None and slot.sequence > after:
                return slot.sequence, frame
            await slot.changed.wait()

    async def _iterate(self, name: str, slot: _FrameSlot) -> AsyncIterator[bytes]:
        sequence = 0
        while True:
            try:
                sequence, frame = await self._wait_slot(name, slot, sequence)
            except NotFound:
                return
            yield frame


__all__ = ["FrameBroadcaster", "FrameDemuxer", "JPEG_END", "JPEG_START"]
