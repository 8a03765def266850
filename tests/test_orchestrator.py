from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from recobar.capture import SyntheticCaptureSink
from recobar.detection import BarcodeDebouncer, ManualBarcodeDetector
from recobar.orchestrator import (
    OrchestratorActiveError,
    OrchestratorCallbacks,
    OrchestratorInactiveError,
    RecordingOrchestrator,
)
from recobar.recording import CaptureSession, NotPausedError, RecordingArtifact
from recobar.storage import StorageOutcome, StorageWriter
from recobar.system_log import SystemLog


class _Clock:
    """Drives both the debounce window (seconds) and session timestamps."""

    def __init__(self) -> None:
        self.moment = datetime(2024, 1, 15, 10, 30, 45, 123000, tzinfo=timezone.utc)

    def seconds(self) -> float:
        return self.moment.timestamp()

    def now(self) -> datetime:
        return self.moment

    def advance(self, milliseconds: int) -> None:
        self.moment += timedelta(milliseconds=milliseconds)


class _Recorder:
    def __init__(self) -> None:
        self.started: list[str] = []
        self.stopped: list[RecordingArtifact] = []
        self.errors: list[BaseException] = []
        self.detected: list[str] = []
        self.stored: list[tuple[RecordingArtifact, StorageOutcome]] = []

    def callbacks(self) -> OrchestratorCallbacks:
        return OrchestratorCallbacks(
            on_recording_started=self.started.append,
            on_recording_stopped=self.stopped.append,
            on_recording_error=self.errors.append,
            on_barcode_detected=self.detected.append,
            on_storage_complete=lambda artifact, outcome: self.stored.append((artifact, outcome)),
        )


def _build(clock: _Clock, **kwargs):
    detector = ManualBarcodeDetector()
    debouncer = BarcodeDebouncer(detector, clock=clock.seconds)
    session = CaptureSession(tenant_id="tenant-a", device_id="cam-1", clock=clock.now)
    orchestrator = RecordingOrchestrator(debouncer, session, **kwargs)
    return orchestrator, detector, session


def test_new_barcode_stops_previous_and_starts_next() -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        orchestrator, detector, session = _build(clock)
        await orchestrator.start("video", SyntheticCaptureSink(16, 8), recorder.callbacks())

        detector.push("BARCODE-A")
        await orchestrator.wait_for_transitions()
        assert session.barcode == "BARCODE-A"

        clock.advance(3000)
        detector.push("BARCODE-B")
        await orchestrator.wait_for_transitions()

        assert recorder.detected == ["BARCODE-A", "BARCODE-B"]
        assert recorder.started == ["BARCODE-A", "BARCODE-B"]
        assert len(recorder.stopped) == 1
        first = recorder.stopped[0]
        assert first.metadata.barcode == "BARCODE-A"
        assert first.metadata.duration_ms == 3000
        assert first.metadata.tenant_id == "tenant-a"

        state = orchestrator.get_recording_state()
        assert state.is_active and state.is_recording and not state.is_paused
        assert state.last_detected_barcode == "BARCODE-B"
        assert state.detection_active

        final = await orchestrator.stop()
        assert final is not None and final.metadata.barcode == "BARCODE-B"
        assert recorder.errors == []

    asyncio.run(runner())


def test_same_barcode_does_not_restart_recording() -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        orchestrator, detector, session = _build(clock)
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())

        detector.push("SAME01")
        await orchestrator.wait_for_transitions()
        clock.advance(5000)
        detector.push("SAME01")
        await orchestrator.wait_for_transitions()

        assert recorder.detected == ["SAME01", "SAME01"]
        assert recorder.started == ["SAME01"]
        assert recorder.stopped == []
        assert session.is_recording
        await orchestrator.stop()

    asyncio.run(runner())


def test_manual_stop_keeps_same_barcode_from_restarting() -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        orchestrator, detector, session = _build(clock)
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())

        detector.push("ITEM01")
        await orchestrator.wait_for_transitions()
        assert await orchestrator.stop_recording() is not None

        clock.advance(1500)
        detector.push("ITEM01")
        await orchestrator.wait_for_transitions()

        assert not session.is_recording
        assert recorder.started == ["ITEM01"]
        assert orchestrator.last_detected_barcode == "ITEM01"
        await orchestrator.stop()

    asyncio.run(runner())


def test_start_twice_and_idempotent_stop() -> None:
    async def runner() -> None:
        orchestrator, _, _ = _build(_Clock())
        assert await orchestrator.stop() is None

        await orchestrator.start("video", SyntheticCaptureSink(8, 8))
        with pytest.raises(OrchestratorActiveError):
            await orchestrator.start("video", SyntheticCaptureSink(8, 8))

        assert await orchestrator.stop() is None
        assert await orchestrator.stop() is None
        state = orchestrator.get_recording_state()
        assert not state.is_active
        assert not state.detection_active
        assert state.last_detected_barcode is None

    asyncio.run(runner())


def test_manual_controls_require_active_orchestrator() -> None:
    async def runner() -> None:
        orchestrator, _, _ = _build(_Clock())
        with pytest.raises(OrchestratorInactiveError):
            orchestrator.pause_recording()
        with pytest.raises(OrchestratorInactiveError):
            await orchestrator.force_start_recording("ABC123")
        with pytest.raises(OrchestratorInactiveError):
            await orchestrator.stop_recording()

    asyncio.run(runner())


def test_force_start_and_stop_recording() -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        orchestrator, _, session = _build(clock)
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())

        with pytest.raises(ValueError):
            await orchestrator.force_start_recording("  ")

        await orchestrator.force_start_recording("MANUAL1")
        assert session.barcode == "MANUAL1"
        clock.advance(1000)
        await orchestrator.force_start_recording("MANUAL2")
        assert [artifact.metadata.barcode for artifact in recorder.stopped] == ["MANUAL1"]

        artifact = await orchestrator.stop_recording()
        assert artifact is not None and artifact.metadata.barcode == "MANUAL2"
        assert orchestrator.is_orchestrator_active()
        assert orchestrator.last_detected_barcode == "MANUAL2"
        assert await orchestrator.stop_recording() is None
        await orchestrator.stop()

    asyncio.run(runner())


def test_pause_resume_errors_propagate_and_are_reported() -> None:
    async def runner() -> None:
        recorder = _Recorder()
        orchestrator, _, _ = _build(_Clock())
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())
        await orchestrator.force_start_recording("PAUSE1")

        orchestrator.pause_recording()
        assert orchestrator.get_recording_state().is_paused
        orchestrator.resume_recording()
        with pytest.raises(NotPausedError):
            orchestrator.resume_recording()
        assert len(recorder.errors) == 1
        assert isinstance(recorder.errors[0], NotPausedError)
        await orchestrator.stop()

    asyncio.run(runner())


def test_failed_session_start_keeps_orchestrator_active() -> None:
    class _BrokenSink(SyntheticCaptureSink):
        def start(self, on_chunk, on_error) -> None:
            raise RuntimeError("camera disconnected")

    async def runner() -> None:
        recorder = _Recorder()
        orchestrator, detector, session = _build(_Clock())
        await orchestrator.start("video", _BrokenSink(8, 8), recorder.callbacks())

        detector.push("BROKEN1")
        await orchestrator.wait_for_transitions()

        assert orchestrator.is_orchestrator_active()
        assert not session.is_recording
        assert recorder.started == []
        assert len(recorder.errors) == 1
        assert orchestrator.last_detected_barcode is None
        await orchestrator.stop()

    asyncio.run(runner())


def test_capture_failure_is_reported_through_callbacks() -> None:
    async def runner() -> None:
        recorder = _Recorder()
        sink = SyntheticCaptureSink(8, 8)
        orchestrator, _, session = _build(_Clock())
        await orchestrator.start("video", sink, recorder.callbacks())
        await orchestrator.force_start_recording("FAIL01")

        sink.fail()
        assert not session.is_recording
        assert len(recorder.errors) == 1
        assert await orchestrator.stop() is None

    asyncio.run(runner())


def test_capture_failure_allows_same_barcode_to_restart() -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        sink = SyntheticCaptureSink(8, 8)
        orchestrator, detector, session = _build(clock)
        await orchestrator.start("video", sink, recorder.callbacks())

        detector.push("RETRY01")
        await orchestrator.wait_for_transitions()
        sink.fail()
        assert orchestrator.last_detected_barcode is None

        clock.advance(1500)
        detector.push("RETRY01")
        await orchestrator.wait_for_transitions()

        assert session.is_recording
        assert recorder.started == ["RETRY01", "RETRY01"]
        await orchestrator.stop()

    asyncio.run(runner())


def test_failing_callback_is_isolated() -> None:
    async def runner() -> None:
        def _boom(_: str) -> None:
            raise RuntimeError("observer failure")

        orchestrator, detector, session = _build(_Clock())
        await orchestrator.start(
            "video", SyntheticCaptureSink(8, 8), OrchestratorCallbacks(on_recording_started=_boom)
        )
        detector.push("ISOLATE")
        await orchestrator.wait_for_transitions()
        assert session.barcode == "ISOLATE"

        orchestrator.update_callbacks(on_recording_started=None)
        with pytest.raises(ValueError):
            orchestrator.update_callbacks(on_unknown=None)
        await orchestrator.stop()

    asyncio.run(runner())


def test_stopped_recordings_are_handed_to_storage(tmp_path: Path) -> None:
    async def runner() -> None:
        clock = _Clock()
        recorder = _Recorder()
        system_log = SystemLog(tmp_path / "system_log.jsonl")
        writer = StorageWriter(extension="raw", system_log=system_log)
        recordings = tmp_path / "recordings"
        orchestrator, detector, _ = _build(
            clock,
            storage_writer=writer,
            storage_targets=lambda: (recordings, None),
            system_log=system_log,
        )
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())

        detector.push("STORE-A")
        await orchestrator.wait_for_transitions()
        clock.advance(2000)
        detector.push("STORE-B")
        await orchestrator.wait_for_transitions()
        await orchestrator.stop()
        outcomes = await orchestrator.wait_for_storage()

        assert len(recorder.stored) == 2
        assert all(outcome.success for _, outcome in recorder.stored)
        saved = sorted(path.name for path in recordings.iterdir())
        assert len(saved) == 2
        assert saved[0].startswith("tenant_a_STORE_A_")
        assert saved[1].startswith("tenant_a_STORE_B_")
        assert all(outcome is None or outcome.success for outcome in outcomes)

        events = [entry.event for entry in system_log.tail(category="recording")]
        assert events.count("started") == 2
        assert events.count("stopped") == 2
        assert [entry.event for entry in system_log.tail(category="storage")] == ["saved", "saved"]

    asyncio.run(runner())


def test_storage_failure_is_reported_in_outcome(tmp_path: Path) -> None:
    async def runner() -> None:
        recorder = _Recorder()
        blocker = tmp_path / "not-a-folder"
        blocker.write_text("occupied")
        orchestrator, _, _ = _build(
            _Clock(),
            storage_writer=StorageWriter(),
            storage_targets=lambda: (blocker, None),
        )
        await orchestrator.start("video", SyntheticCaptureSink(8, 8), recorder.callbacks())
        await orchestrator.force_start_recording("NOSAVE")
        await orchestrator.stop()
        await orchestrator.wait_for_storage()

        assert len(recorder.stored) == 1
        _, outcome = recorder.stored[0]
        assert not outcome.success
        assert outcome.errors[0].reason.value == "not_a_directory"

    asyncio.run(runner())
