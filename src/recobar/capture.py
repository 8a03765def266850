"""Capture sink abstractions."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]


class CaptureError(RuntimeError):
    """Raised when a capture sink fails."""


@dataclass(frozen=True, slots=True)
class TrackSettings:
    """Track introspection reported by a capture sink."""

    width: int | None = None
    height: int | None = None
    has_audio: bool = False


class CaptureSink(Protocol):
    """Streams encoded media chunks for the active recording.

    A sink is restartable: ``start`` may be called again once ``stop`` has
    completed.  ``stop`` must deliver the final chunk through ``on_chunk``
    before it returns.
    """

    media_type: str

    def start(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:  # pragma: no cover - protocol
        ...

    def request_data(self) -> None:  # pragma: no cover - protocol
        ...

    def pause(self) -> None:  # pragma: no cover - protocol
        ...

    def resume(self) -> None:  # pragma: no cover - protocol
        ...

    async def stop(self) -> None:  # pragma: no cover - protocol
        ...

    def track_settings(self) -> TrackSettings:  # pragma: no cover - protocol
        ...


class SyntheticCaptureSink:
    """Generates raw test-pattern frames for development and testing."""

    media_type = "video/x-raw"

    def __init__(
        self,
        width: int = 320,
        height: int = 240,
        *,
        has_audio: bool = False,
        frames_per_chunk: int = 1,
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("Synthetic capture dimensions must be positive")
        if frames_per_chunk < 1:
            raise ValueError("frames_per_chunk must be at least 1")
        self._width = int(width)
        self._height = int(height)
        self._has_audio = bool(has_audio)
        self._frames_per_chunk = int(frames_per_chunk)
        self._on_chunk: ChunkCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._running = False
        self._paused = False
        self._start = time.perf_counter()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self, on_chunk: ChunkCallback, on_error: ErrorCallback) -> None:
        if self._running:
            raise CaptureError("Synthetic capture is already running")
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._running = True
        self._paused = False
        self._start = time.perf_counter()

    def request_data(self) -> None:
        if not self._running or self._paused or self._on_chunk is None:
            return
        self._on_chunk(self._render_chunk())

    def pause(self) -> None:
        if self._running:
            self._paused = True

    def resume(self) -> None:
        if self._running:
            self._paused = False

    async def stop(self) -> None:
        if not self._running:
            return
        on_chunk = self._on_chunk
        final_chunk = self._render_chunk()
        self._running = False
        self._paused = False
        self._on_chunk = None
        self._on_error = None
        await asyncio.sleep(0)
        if on_chunk is not None:
            on_chunk(final_chunk)

    def fail(self, error: BaseException | None = None) -> None:
        """Simulate a hardware failure mid-recording."""

        if not self._running:
            return
        on_error = self._on_error
        self._running = False
        self._paused = False
        self._on_chunk = None
        self._on_error = None
        if on_error is not None:
            on_error(error or CaptureError("Synthetic capture failure"))

    def track_settings(self) -> TrackSettings:
        return TrackSettings(width=self._width, height=self._height, has_audio=self._has_audio)

    def _render_chunk(self) -> bytes:
        return b"".join(self._render_frame().tobytes() for _ in range(self._frames_per_chunk))

    def _render_frame(self) -> np.ndarray:
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2)
        return frame.astype(np.uint8)


__all__ = [
    "CaptureError",
    "CaptureSink",
    "SyntheticCaptureSink",
    "TrackSettings",
]
