from __future__ import annotations

import pytest

from recobar.detection import (
    BarcodeDebouncer,
    BarcodeEvent,
    DetectorInitError,
    ManualBarcodeDetector,
)


class _Clock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, milliseconds: float) -> None:
        self.now += milliseconds / 1000.0


class _FakeDetector:
    def __init__(self, *, init_error: BaseException | None = None, raise_on_init: bool = False) -> None:
        self.init_error = init_error
        self.raise_on_init = raise_on_init
        self.handlers: list = []
        self.started = False
        self.stop_calls = 0
        self.config = None

    def init(self, config, callback) -> None:
        self.config = config
        if self.raise_on_init:
            raise RuntimeError("camera busy")
        callback(self.init_error)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False
        self.stop_calls += 1

    def on_detected(self, handler) -> None:
        self.handlers.append(handler)

    def off_detected(self, handler) -> None:
        self.handlers.remove(handler)

    def emit(self, code, confidence=None) -> None:
        for handler in list(self.handlers):
            handler({"codeResult": {"code": code, "confidence": confidence, "format": "code_128"}})


def _debouncer(clock: _Clock | None = None, **kwargs) -> tuple[BarcodeDebouncer, _FakeDetector, list[str]]:
    detector = _FakeDetector()
    debouncer = BarcodeDebouncer(detector, clock=clock or _Clock(), **kwargs)
    received: list[str] = []
    debouncer.on_detected(received.append)
    debouncer.start("video-element")
    return debouncer, detector, received


def test_start_subscribes_and_passes_target() -> None:
    debouncer, detector, _ = _debouncer()
    assert debouncer.is_active()
    assert detector.started
    assert len(detector.handlers) == 1
    assert detector.config["target"] == "video-element"
    assert "code_128" in detector.config["readers"]


def test_repeat_within_window_is_suppressed_and_accepted_after() -> None:
    clock = _Clock()
    debouncer, detector, received = _debouncer(clock)

    detector.emit("ABC123", 90)
    clock.advance(500)
    detector.emit("ABC123", 90)
    assert received == ["ABC123"]

    clock.advance(1000)
    detector.emit("ABC123", 90)
    assert received == ["ABC123", "ABC123"]


def test_different_codes_are_not_debounced_against_each_other() -> None:
    clock = _Clock()
    _, detector, received = _debouncer(clock)
    detector.emit("AAA111", 90)
    clock.advance(10)
    detector.emit("BBB222", 90)
    assert received == ["AAA111", "BBB222"]


def test_confidence_threshold_is_strictly_greater_than() -> None:
    _, detector, received = _debouncer()
    detector.emit("LOWCONF", 75)
    assert received == []
    detector.emit("LOWCONF", 76)
    assert received == ["LOWCONF"]


def test_missing_confidence_passes_filter() -> None:
    _, detector, received = _debouncer()
    detector.emit("NOCONF", None)
    assert received == ["NOCONF"]


def test_configurable_threshold() -> None:
    _, detector, received = _debouncer(confidence_threshold=50)
    detector.emit("DEBUG1", 51)
    assert received == ["DEBUG1"]


@pytest.mark.parametrize("code", ["", "   ", "AB", None])
def test_short_or_empty_codes_are_rejected(code) -> None:
    _, detector, received = _debouncer()
    detector.emit(code, 99)
    assert received == []


def test_failing_callback_does_not_block_others() -> None:
    debouncer, detector, received = _debouncer()

    def _boom(code: str) -> None:
        raise RuntimeError("subscriber failure")

    later: list[str] = []
    debouncer.on_detected(_boom)
    debouncer.on_detected(later.append)
    detector.emit("XYZ789", 99)
    assert received == ["XYZ789"]
    assert later == ["XYZ789"]


def test_remove_and_clear_callbacks() -> None:
    debouncer, detector, received = _debouncer(debounce_ms=0)
    debouncer.remove_callback(received.append)
    detector.emit("CODE01", 99)
    assert received == []

    extra: list[str] = []
    debouncer.on_detected(extra.append)
    debouncer.clear_callbacks()
    detector.emit("CODE02", 99)
    assert extra == []


def test_init_failure_leaves_debouncer_inactive() -> None:
    errors: list[DetectorInitError] = []
    detector = _FakeDetector(init_error=RuntimeError("no camera"))
    debouncer = BarcodeDebouncer(detector, on_error=errors.append)
    debouncer.start("video-element")
    assert debouncer.is_active() is False
    assert isinstance(debouncer.last_error, DetectorInitError)
    assert errors and "no camera" in str(errors[0])
    assert detector.handlers == []


def test_init_exception_is_absorbed() -> None:
    detector = _FakeDetector(raise_on_init=True)
    debouncer = BarcodeDebouncer(detector)
    debouncer.start("video-element")
    assert debouncer.is_active() is False


def test_missing_target_reports_init_failure() -> None:
    errors: list[DetectorInitError] = []
    debouncer = BarcodeDebouncer(_FakeDetector(), on_error=errors.append)
    debouncer.start(None)
    assert not debouncer.is_active()
    assert len(errors) == 1


def test_stop_is_idempotent_and_unsubscribes() -> None:
    debouncer, detector, received = _debouncer()
    debouncer.stop()
    debouncer.stop()
    assert not debouncer.is_active()
    assert detector.handlers == []
    assert detector.stop_calls == 1

    idle = BarcodeDebouncer(_FakeDetector())
    idle.stop()
    assert not idle.is_active()


def test_start_twice_restarts_cleanly() -> None:
    debouncer, detector, _ = _debouncer()
    debouncer.start("other-element")
    assert debouncer.is_active()
    assert len(detector.handlers) == 1
    assert detector.config["target"] == "other-element"


def test_barcode_event_from_result_variants() -> None:
    nested = BarcodeEvent.from_result({"codeResult": {"code": 12345, "confidence": "80"}})
    assert nested == BarcodeEvent(code="12345", confidence=80.0, format=None)
    flat = BarcodeEvent.from_result({"code": "FLAT01", "format": "ean"})
    assert flat is not None and flat.format == "ean"
    assert BarcodeEvent.from_result("garbage") is None


def test_manual_detector_drives_debouncer() -> None:
    detector = ManualBarcodeDetector()
    debouncer = BarcodeDebouncer(detector)
    received: list[str] = []
    debouncer.on_detected(received.append)

    with pytest.raises(RuntimeError):
        detector.push("EARLY1")

    debouncer.start("manual")
    detector.push("SCAN001", confidence=90)
    assert received == ["SCAN001"]
    debouncer.stop()
    assert not detector.running
