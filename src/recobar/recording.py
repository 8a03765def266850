"""Capture session management for barcode keyed recordings."""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Callable

from .capture import CaptureSink, TrackSettings
from .performance import PerformanceMonitor

logger = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "default-tenant"
DEFAULT_DEVICE_ID = "default-device"
DEFAULT_CHUNK_INTERVAL_S = 2.0
DEFAULT_MAX_BUFFER_BYTES = 50 * 1024 * 1024
DEFAULT_MEDIA_TYPE = "video/webm"

_ID_SEQUENCE = itertools.count(1)


class RecordingStateError(RuntimeError):
    """Raised when a recording operation is invalid for the current state."""

    code = "invalid_state"
    default_message = "Invalid recording state"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class AlreadyActiveError(RecordingStateError):
    code = "already_active"
    default_message = "Recording is already active"


class NotActiveError(RecordingStateError):
    code = "not_active"
    default_message = "No active recording"


class AlreadyPausedError(RecordingStateError):
    code = "already_paused"
    default_message = "Recording is already paused"


class NotPausedError(RecordingStateError):
    code = "not_paused"
    default_message = "Recording is not paused"


class RecordingStartError(RuntimeError):
    """Raised when the capture sink refuses to start."""


class RecordingProcessingError(RuntimeError):
    """Raised when a stopped recording could not be assembled."""


class RecordingStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass(frozen=True, slots=True)
class Resolution:
    """Pixel dimensions of a recorded video track."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")

    def key(self) -> str:
        return f"{self.width}x{self.height}"

    def to_dict(self) -> dict[str, int]:
        return {"width": int(self.width), "height": int(self.height)}


DEFAULT_RESOLUTION = Resolution(1280, 720)


@dataclass(frozen=True, slots=True)
class RecordingMetadata:
    """Descriptive data attached to a finished recording."""

    id: str
    tenant_id: str
    barcode: str
    start_time: datetime
    end_time: datetime
    duration_ms: int
    device_id: str
    resolution: Resolution
    has_audio: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "barcode": self.barcode,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "device_id": self.device_id,
            "resolution": self.resolution.to_dict(),
            "has_audio": self.has_audio,
        }


@dataclass(frozen=True, slots=True)
class RecordingArtifact:
    """Payload and metadata produced when a capture session stops."""

    payload: bytes
    metadata: RecordingMetadata
    media_type: str = DEFAULT_MEDIA_TYPE

    @property
    def size(self) -> int:
        return len(self.payload)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_recording_id(now: datetime | None = None) -> str:
    """Return a process-unique recording identifier."""

    moment = now or _utcnow()
    millis = int(moment.timestamp() * 1000)
    return f"rec_{millis}_{next(_ID_SEQUENCE):x}{secrets.token_hex(3)}"


IdentityProvider = Callable[[], "tuple[str | None, str | None]"]


class CaptureSession:
    """Own one recording's chunk buffer and metadata assembly.

    The session moves between ``idle``, ``active`` and ``paused``.  Chunks from
    the capture sink are buffered in memory under ``max_buffer_bytes``; once the
    ceiling is exceeded the oldest chunks are evicted.  :meth:`stop` always
    returns the session to ``idle``, whether or not assembly succeeds.
    """

    def __init__(
        self,
        *,
        tenant_id: str = DEFAULT_TENANT_ID,
        device_id: str = DEFAULT_DEVICE_ID,
        identity: IdentityProvider | None = None,
        chunk_interval: float = DEFAULT_CHUNK_INTERVAL_S,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        fallback_resolution: Resolution = DEFAULT_RESOLUTION,
        clock: Callable[[], datetime] = _utcnow,
        performance_monitor: PerformanceMonitor | None = None,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        if chunk_interval <= 0:
            raise ValueError("chunk_interval must be positive")
        if max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be positive")
        self.tenant_id = tenant_id
        self.device_id = device_id
        self._identity = identity
        self.chunk_interval = float(chunk_interval)
        self.max_buffer_bytes = int(max_buffer_bytes)
        self.fallback_resolution = fallback_resolution
        self._clock = clock
        self._performance = performance_monitor
        self._on_error = on_error
        self._status = RecordingStatus.IDLE
        self._generation = 0
        self._barcode: str | None = None
        self._started_at: datetime | None = None
        self._session_tenant = tenant_id
        self._session_device = device_id
        self._chunks: list[bytes] = []
        self._buffered_bytes = 0
        self._evicted_chunks = 0
        self._sink: CaptureSink | None = None
        self._request_task: asyncio.Task[None] | None = None
        self._stopping = False

    def set_error_handler(self, handler: Callable[[BaseException], None] | None) -> None:
        """Replace the callback notified when the capture sink fails."""

        self._on_error = handler

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def status(self) -> RecordingStatus:
        return self._status

    @property
    def is_recording(self) -> bool:
        return self._status is not RecordingStatus.IDLE

    @property
    def is_paused(self) -> bool:
        return self._status is RecordingStatus.PAUSED

    @property
    def barcode(self) -> str | None:
        return self._barcode

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def snapshot(self) -> dict[str, object]:
        return {
            "status": self._status.value,
            "barcode": self._barcode,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "buffered_bytes": self._buffered_bytes,
            "chunk_count": len(self._chunks),
            "evicted_chunks": self._evicted_chunks,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def start(self, sink: CaptureSink, barcode: str) -> None:
        if self._status is not RecordingStatus.IDLE:
            raise AlreadyActiveError()
        if not isinstance(barcode, str) or not barcode:
            raise ValueError("barcode must be a non-empty string")
        tenant_id, device_id = self._resolve_identity()

        self._generation += 1
        generation = self._generation
        self._chunks = []
        self._buffered_bytes = 0
        self._evicted_chunks = 0
        self._barcode = barcode
        self._session_tenant = tenant_id
        self._session_device = device_id
        self._started_at = self._clock()
        self._sink = sink
        self._stopping = False
        self._status = RecordingStatus.ACTIVE
        try:
            sink.start(
                partial(self._handle_chunk, generation),
                partial(self._handle_sink_error, generation),
            )
        except Exception as exc:
            self._reset()
            raise RecordingStartError(f"Failed to start recording: {exc}") from exc

        self._request_task = asyncio.create_task(
            self._request_chunks(generation), name=f"recobar-chunks-{generation}"
        )
        if self._performance is not None:
            self._performance.start_recording()
        logger.info("Recording started for barcode %s", barcode)

    def pause(self) -> None:
        if self._status is RecordingStatus.IDLE or self._stopping:
            raise NotActiveError("No active recording to pause")
        if self._status is RecordingStatus.PAUSED:
            raise AlreadyPausedError()
        self._require_sink("pause").pause()
        self._status = RecordingStatus.PAUSED
        logger.info("Recording paused")

    def resume(self) -> None:
        if self._status is RecordingStatus.IDLE or self._stopping:
            raise NotActiveError("No active recording to resume")
        if self._status is not RecordingStatus.PAUSED:
            raise NotPausedError()
        self._require_sink("resume").resume()
        self._status = RecordingStatus.ACTIVE
        logger.info("Recording resumed")

    async def stop(self) -> RecordingArtifact:
        """Finalise the sink, wait for its last chunk and build the artifact."""

        if self._status is RecordingStatus.IDLE or self._stopping:
            raise NotActiveError("No active recording to stop")
        sink = self._require_sink("stop")
        self._stopping = True
        await self._cancel_request_task()
        try:
            try:
                await sink.stop()
            except Exception as exc:
                raise RecordingProcessingError(f"Failed to finalise capture: {exc}") from exc
            if self._status is RecordingStatus.IDLE:
                raise RecordingProcessingError("Capture failed while finalising the recording")
            return self._assemble(sink)
        finally:
            if self._performance is not None and self._performance.monitoring:
                self._performance.cancel()
            self._reset()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_sink(self, action: str) -> CaptureSink:
        if self._sink is None:
            raise RecordingStateError(f"No capture sink attached; cannot {action} recording")
        return self._sink

    def _resolve_identity(self) -> tuple[str, str]:
        tenant_id: str | None = self.tenant_id
        device_id: str | None = self.device_id
        if self._identity is not None:
            try:
                tenant_id, device_id = self._identity()
            except Exception:
                logger.warning("Failed to load recording identity, using defaults", exc_info=True)
                tenant_id, device_id = None, None
        return (tenant_id or DEFAULT_TENANT_ID, device_id or DEFAULT_DEVICE_ID)

    def _assemble(self, sink: CaptureSink) -> RecordingArtifact:
        processing_started = time.perf_counter()
        started_at = self._started_at
        if started_at is None:
            raise RecordingProcessingError("Recording start time is unknown")
        end_time = self._clock()
        duration_ms = max(0, int(round((end_time - started_at).total_seconds() * 1000)))
        payload = b"".join(self._chunks)
        track = self._read_track_settings(sink)
        resolution = Resolution(
            track.width or self.fallback_resolution.width,
            track.height or self.fallback_resolution.height,
        )
        metadata = RecordingMetadata(
            id=generate_recording_id(end_time),
            tenant_id=self._session_tenant,
            barcode=self._barcode or "",
            start_time=started_at,
            end_time=end_time,
            duration_ms=duration_ms,
            device_id=self._session_device,
            resolution=resolution,
            has_audio=track.has_audio,
        )
        media_type = getattr(sink, "media_type", None) or DEFAULT_MEDIA_TYPE
        artifact = RecordingArtifact(payload=payload, metadata=metadata, media_type=media_type)
        if self._performance is not None and self._performance.monitoring:
            processing_ms = (time.perf_counter() - processing_started) * 1000.0
            self._performance.stop_recording(len(payload), processing_ms)
        logger.info(
            "Recording stopped for barcode %s. Duration: %dms, Size: %d bytes",
            metadata.barcode,
            duration_ms,
            len(payload),
        )
        return artifact

    @staticmethod
    def _read_track_settings(sink: CaptureSink) -> TrackSettings:
        try:
            settings = sink.track_settings()
        except Exception:
            logger.debug("Capture sink track introspection failed", exc_info=True)
            return TrackSettings()
        return settings if isinstance(settings, TrackSettings) else TrackSettings()

    def _handle_chunk(self, generation: int, chunk: bytes) -> None:
        if generation != self._generation or self._status is RecordingStatus.IDLE:
            return
        if not chunk:
            return
        self._chunks.append(bytes(chunk))
        self._buffered_bytes += len(chunk)
        self._enforce_memory_limit()

    def _enforce_memory_limit(self) -> None:
        if self._buffered_bytes <= self.max_buffer_bytes:
            return
        newest = len(self._chunks) - 1
        total = 0
        for index in range(newest, -1, -1):
            total += len(self._chunks[index])
            if total > self.max_buffer_bytes:
                cut = index if index == newest else index + 1
                if cut == 0:
                    return
                dropped = self._chunks[:cut]
                del self._chunks[:cut]
                self._buffered_bytes -= sum(len(item) for item in dropped)
                self._evicted_chunks += len(dropped)
                logger.warning("Memory management: removed %d old chunks to free memory", len(dropped))
                return

    def _handle_sink_error(self, generation: int, error: BaseException) -> None:
        if generation != self._generation or self._status is RecordingStatus.IDLE:
            return
        logger.error("Capture sink error for barcode %s: %s", self._barcode, error)
        task = self._request_task
        self._request_task = None
        if task is not None and not task.done():
            task.cancel()
        if self._performance is not None and self._performance.monitoring:
            self._performance.cancel()
        self._reset()
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Error in capture error callback")

    async def _request_chunks(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.chunk_interval)
            if generation != self._generation or self._status is RecordingStatus.IDLE:
                return
            if self._status is RecordingStatus.PAUSED or self._sink is None:
                continue
            try:
                self._sink.request_data()
            except Exception:
                logger.warning("Capture sink rejected chunk request", exc_info=True)

    async def _cancel_request_task(self) -> None:
        task = self._request_task
        self._request_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _reset(self) -> None:
        self._status = RecordingStatus.IDLE
        self._stopping = False
        self._chunks = []
        self._buffered_bytes = 0
        self._barcode = None
        self._started_at = None
        self._sink = None


__all__ = [
    "AlreadyActiveError",
    "AlreadyPausedError",
    "CaptureSession",
    "DEFAULT_DEVICE_ID",
    "DEFAULT_MAX_BUFFER_BYTES",
    "DEFAULT_RESOLUTION",
    "DEFAULT_TENANT_ID",
    "NotActiveError",
    "NotPausedError",
    "RecordingArtifact",
    "RecordingMetadata",
    "RecordingProcessingError",
    "RecordingStartError",
    "RecordingStateError",
    "RecordingStatus",
    "Resolution",
    "generate_recording_id",
]
