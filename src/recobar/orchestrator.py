"""Bind accepted barcodes to capture session transitions."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from .capture import CaptureSink
from .detection import BarcodeDebouncer
from .object_store import RemoteStoreConfig
from .recording import CaptureSession, RecordingArtifact, RecordingStateError
from .storage import StorageOutcome, StorageWriter
from .system_log import SystemLog

logger = logging.getLogger(__name__)

StorageTargets = tuple["str | os.PathLike[str] | None", "RemoteStoreConfig | None"]


class OrchestratorStateError(RecordingStateError):
    """Raised when the orchestrator is driven from the wrong state."""

    code = "orchestrator_state"


class OrchestratorActiveError(OrchestratorStateError):
    code = "orchestrator_active"
    default_message = "Recording orchestrator is already active"


class OrchestratorInactiveError(OrchestratorStateError):
    code = "orchestrator_inactive"
    default_message = "Recording orchestrator is not active"


@dataclass(slots=True)
class OrchestratorCallbacks:
    """Optional observers notified as recordings progress."""

    on_recording_started: Callable[[str], None] | None = None
    on_recording_stopped: Callable[[RecordingArtifact], None] | None = None
    on_recording_error: Callable[[BaseException], None] | None = None
    on_barcode_detected: Callable[[str], None] | None = None
    on_storage_complete: Callable[[RecordingArtifact, StorageOutcome], None] | None = None


@dataclass(frozen=True, slots=True)
class RecordingStateSnapshot:
    is_active: bool
    is_recording: bool
    is_paused: bool
    last_detected_barcode: str | None
    detection_active: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "is_active": self.is_active,
            "is_recording": self.is_recording,
            "is_paused": self.is_paused,
            "last_detected_barcode": self.last_detected_barcode,
            "detection_active": self.detection_active,
        }


class RecordingOrchestrator:
    """Start a new recording for every newly accepted barcode.

    Each accepted barcode that differs from the previous one stops the current
    :class:`CaptureSession`, hands its artifact to the :class:`StorageWriter`
    in the background and immediately starts a session for the new barcode.
    Transitions are serialised with an :class:`asyncio.Lock`, so at most one
    session is ever active.
    """

    def __init__(
        self,
        debouncer: BarcodeDebouncer,
        session: CaptureSession,
        *,
        storage_writer: StorageWriter | None = None,
        storage_targets: Callable[[], StorageTargets] | None = None,
        callbacks: OrchestratorCallbacks | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self._debouncer = debouncer
        self._session = session
        self._storage_writer = storage_writer
        self._storage_targets = storage_targets
        self._callbacks = callbacks or OrchestratorCallbacks()
        self._system_log = system_log
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active = False
        self._capture_sink: CaptureSink | None = None
        self._last_barcode: str | None = None
        self._pending: set[asyncio.Future[Any]] = set()
        self._storage_tasks: set[asyncio.Task[StorageOutcome | None]] = set()
        session.set_error_handler(self._handle_capture_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(
        self,
        target: object,
        capture_sink: CaptureSink,
        callbacks: OrchestratorCallbacks | None = None,
    ) -> None:
        if self._active:
            raise OrchestratorActiveError()
        self._loop = asyncio.get_running_loop()
        if callbacks is not None:
            self._callbacks = callbacks
        self._capture_sink = capture_sink
        self._last_barcode = None
        self._active = True
        self._debouncer.on_detected(self._handle_barcode)
        self._debouncer.start(target)
        if not self._debouncer.is_active():
            logger.warning("Barcode detection unavailable; recordings can still be started manually")
        self._journal("system", "orchestrator_started", "Recording orchestrator started")
        logger.info("Recording orchestrator started")

    async def stop(self) -> RecordingArtifact | None:
        """Stop detection and drain the active session.

        Calling this on an inactive orchestrator is a no-op.
        """

        if not self._active:
            return None
        self._active = False
        self._debouncer.stop()
        self._debouncer.remove_callback(self._handle_barcode)
        artifact: RecordingArtifact | None = None
        async with self._lock:
            if self._session.is_recording:
                artifact = await self._finish_current()
            self._capture_sink = None
            self._last_barcode = None
        self._journal("system", "orchestrator_stopped", "Recording orchestrator stopped")
        logger.info("Recording orchestrator stopped")
        return artifact

    def is_orchestrator_active(self) -> bool:
        return self._active

    def get_recording_state(self) -> RecordingStateSnapshot:
        is_recording = self._session.is_recording
        return RecordingStateSnapshot(
            is_active=self._active,
            is_recording=is_recording,
            is_paused=is_recording and self._session.is_paused,
            last_detected_barcode=self._last_barcode,
            detection_active=self._debouncer.is_active(),
        )

    @property
    def last_detected_barcode(self) -> str | None:
        return self._last_barcode

    def update_callbacks(self, **changes: Callable[..., None] | None) -> None:
        for name, value in changes.items():
            if not hasattr(self._callbacks, name):
                raise ValueError(f"Unknown orchestrator callback: {name}")
            setattr(self._callbacks, name, value)

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------
    def pause_recording(self) -> None:
        self._require_active()
        try:
            self._session.pause()
        except RecordingStateError as exc:
            self._emit_error(exc)
            raise
        self._journal("recording", "paused", "Recording paused")

    def resume_recording(self) -> None:
        self._require_active()
        try:
            self._session.resume()
        except RecordingStateError as exc:
            self._emit_error(exc)
            raise
        self._journal("recording", "resumed", "Recording resumed")

    async def stop_recording(self) -> RecordingArtifact | None:
        """Stop the current recording without leaving automatic mode.

        The stopped barcode stays tracked, so it does not restart while it is
        still in view.  Returns ``None`` when nothing is being recorded.
        """

        self._require_active()
        async with self._lock:
            if not self._session.is_recording:
                return None
            return await self._session_stop()

    async def force_start_recording(self, barcode: str) -> None:
        """Start recording ``barcode`` immediately, bypassing detection."""

        self._require_active()
        if not isinstance(barcode, str) or not barcode.strip():
            raise ValueError("barcode must be a non-empty string")
        async with self._lock:
            if self._session.is_recording:
                await self._session_stop()
            await self._start_session(barcode)
        logger.info("Force started recording for barcode: %s", barcode)

    async def wait_for_transitions(self) -> None:
        """Wait until every scheduled barcode has been processed."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def wait_for_storage(self) -> list[StorageOutcome | None]:
        """Wait for every in-flight storage hand-off to finish."""

        await self.wait_for_transitions()
        if not self._storage_tasks:
            return []
        results = await asyncio.gather(*list(self._storage_tasks), return_exceptions=True)
        return [item if isinstance(item, StorageOutcome) else None for item in results]

    # ------------------------------------------------------------------
    # Barcode handling
    # ------------------------------------------------------------------
    def _handle_barcode(self, barcode: str) -> None:
        if not self._active:
            return
        self._invoke("on_barcode_detected", barcode)
        self._schedule(self._process_barcode(barcode))

    async def _process_barcode(self, barcode: str) -> None:
        async with self._lock:
            if not self._active or self._capture_sink is None:
                return
            if barcode == self._last_barcode:
                logger.debug("Barcode %s already recording; ignoring", barcode)
                return
            logger.info("New barcode detected: %s (previous: %s)", barcode, self._last_barcode)
            if self._session.is_recording:
                await self._finish_current()
            try:
                await self._start_session(barcode)
            except Exception:
                logger.debug("Awaiting next barcode after failed start")

    async def _start_session(self, barcode: str) -> None:
        sink = self._capture_sink
        if sink is None:
            raise OrchestratorInactiveError("No capture sink available")
        self._last_barcode = barcode
        try:
            await self._session.start(sink, barcode)
        except Exception as exc:
            self._last_barcode = None
            logger.error("Failed to start recording for %s: %s", barcode, exc)
            self._emit_error(exc)
            raise
        self._invoke("on_recording_started", barcode)
        self._journal("recording", "started", f"Recording started for {barcode}", metadata={"barcode": barcode})

    async def _session_stop(self) -> RecordingArtifact:
        try:
            artifact = await self._session.stop()
        except Exception as exc:
            self._emit_error(exc)
            raise
        self._after_stop(artifact)
        return artifact

    async def _finish_current(self) -> RecordingArtifact | None:
        try:
            return await self._session_stop()
        except Exception:
            logger.warning("Previous recording could not be finalised", exc_info=True)
            return None

    def _after_stop(self, artifact: RecordingArtifact) -> None:
        self._invoke("on_recording_stopped", artifact)
        self._journal(
            "recording",
            "stopped",
            f"Recording stopped for {artifact.metadata.barcode}",
            metadata={
                "recording_id": artifact.metadata.id,
                "duration_ms": artifact.metadata.duration_ms,
                "size": artifact.size,
            },
        )
        self._hand_off(artifact)

    # ------------------------------------------------------------------
    # Storage hand-off
    # ------------------------------------------------------------------
    def _hand_off(self, artifact: RecordingArtifact) -> None:
        if self._storage_writer is None:
            return
        task = asyncio.create_task(self._store(artifact), name=f"recobar-store-{artifact.metadata.id}")
        self._storage_tasks.add(task)
        task.add_done_callback(self._storage_tasks.discard)

    async def _store(self, artifact: RecordingArtifact) -> StorageOutcome | None:
        writer = self._storage_writer
        if writer is None:
            return None
        local_dir: str | os.PathLike[str] | None = None
        remote: RemoteStoreConfig | None = None
        if self._storage_targets is not None:
            try:
                local_dir, remote = self._storage_targets()
            except Exception as exc:
                logger.exception("Unable to resolve storage targets")
                self._emit_error(exc)
                return None
        outcome = await writer.save_recording(artifact, local_dir, remote)
        if outcome.success:
            logger.info("Recording %s stored", artifact.metadata.id)
        else:
            logger.warning(
                "Recording %s storage incomplete: %s",
                artifact.metadata.id,
                "; ".join(str(error) for error in outcome.errors),
            )
        self._invoke("on_storage_complete", artifact, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is not None and running is not loop:
            loop.call_soon_threadsafe(self._track, coro)
        else:
            self._track(coro)

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _handle_capture_error(self, error: BaseException) -> None:
        logger.error("Recording aborted by capture error: %s", error)
        self._last_barcode = None
        self._emit_error(error)

    def _emit_error(self, error: BaseException) -> None:
        if self._system_log is not None:
            self._system_log.record_error("recording", error)
        self._invoke("on_recording_error", error)

    def _invoke(self, name: str, *args: object) -> None:
        callback = getattr(self._callbacks, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in orchestrator %s callback", name)

    def _journal(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._system_log is not None:
            self._system_log.record(category, event, message, metadata=metadata)

    def _require_active(self) -> None:
        if not self._active:
            raise OrchestratorInactiveError()


__all__ = [
    "OrchestratorActiveError",
    "OrchestratorCallbacks",
    "OrchestratorInactiveError",
    "OrchestratorStateError",
    "RecordingOrchestrator",
    "RecordingStateSnapshot",
]
