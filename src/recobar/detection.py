"""Barcode detection filtering used to trigger recordings.

The optical decoding itself is delegated to an opaque detector object.  The
:class:`BarcodeDebouncer` subscribes to that detector and turns its noisy,
high-frequency stream of candidates into a clean sequence of accepted barcode
strings: short codes, low-confidence reads and repeated reads of a barcode that
stays in frame are dropped before any subscriber sees them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 75.0
DEFAULT_MIN_CODE_LENGTH = 3
DEFAULT_DEBOUNCE_MS = 1000

# Reader selection and sampling used when the host does not supply a detector
# configuration of its own.
DEFAULT_DETECTOR_CONFIG: Mapping[str, Any] = {
    "locator": {"patch_size": "medium", "half_sample": True},
    "workers": 2,
    "frequency": 10,
    "readers": (
        "code_128",
        "ean",
        "ean_8",
        "code_39",
        "code_39_vin",
        "codabar",
        "upc",
        "upc_e",
        "i2of5",
    ),
    "locate": True,
}

BarcodeCallback = Callable[[str], None]
DetectorErrorCallback = Callable[["DetectorInitError"], None]


class DetectorInitError(RuntimeError):
    """Raised when the barcode detector cannot be initialised."""


@dataclass(frozen=True, slots=True)
class BarcodeEvent:
    """A single candidate produced by the detector."""

    code: str | None
    confidence: float | None = None
    format: str | None = None

    @classmethod
    def from_result(cls, result: object) -> "BarcodeEvent | None":
        """Normalise a raw detector result.

        Detectors report ``{"codeResult": {"code", "confidence", "format"}}``
        mappings; flat mappings and :class:`BarcodeEvent` instances are accepted
        as well.  ``None`` is returned for payloads without a code result.
        """

        if isinstance(result, BarcodeEvent):
            return result
        if not isinstance(result, Mapping):
            return None
        payload = result.get("codeResult", result)
        if not isinstance(payload, Mapping):
            return None
        code = payload.get("code")
        if code is not None and not isinstance(code, str):
            code = str(code)
        confidence = payload.get("confidence")
        if confidence is not None:
            try:
                confidence = float(confidence)
            except (TypeError, ValueError):
                confidence = None
        fmt = payload.get("format")
        return cls(code=code, confidence=confidence, format=fmt if isinstance(fmt, str) else None)


class BarcodeDetector(Protocol):
    """Interface of the opaque optical barcode detector."""

    def init(
        self, config: Mapping[str, Any], callback: Callable[[BaseException | None], None]
    ) -> None:  # pragma: no cover - protocol
        ...

    def start(self) -> None:  # pragma: no cover - protocol
        ...

    def stop(self) -> None:  # pragma: no cover - protocol
        ...

    def on_detected(self, handler: Callable[[object], None]) -> None:  # pragma: no cover - protocol
        ...

    def off_detected(self, handler: Callable[[object], None]) -> None:  # pragma: no cover - protocol
        ...


class BarcodeDebouncer:
    """Filter detector output and fan accepted barcodes out to subscribers."""

    def __init__(
        self,
        detector: BarcodeDetector,
        *,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        min_code_length: int = DEFAULT_MIN_CODE_LENGTH,
        debounce_ms: int | float = DEFAULT_DEBOUNCE_MS,
        detector_config: Mapping[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_error: DetectorErrorCallback | None = None,
    ) -> None:
        if min_code_length < 1:
            raise ValueError("min_code_length must be at least 1")
        if debounce_ms < 0:
            raise ValueError("debounce_ms must not be negative")
        self._detector = detector
        self.confidence_threshold = float(confidence_threshold)
        self.min_code_length = int(min_code_length)
        self.debounce_ms = float(debounce_ms)
        self._detector_config = dict(detector_config or DEFAULT_DETECTOR_CONFIG)
        self._clock = clock
        self._on_error = on_error
        self._callbacks: list[BarcodeCallback] = []
        self._last_accepted: dict[str, float] = {}
        self._active = False
        self._subscribed = False
        self._target: object | None = None
        self._last_error: DetectorInitError | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, target: object) -> None:
        """Subscribe to the detector bound to ``target``.

        Initialisation failures never propagate; they leave the debouncer
        inactive and are reported through the ``on_error`` callback.
        """

        if self._active:
            logger.info("Barcode detection already active; restarting")
            self.stop()
        if target is None:
            self._report_init_failure(DetectorInitError("No video source provided to barcode detection"))
            return
        self._target = target
        self._active = True
        self._last_error = None
        self._last_accepted.clear()
        config = {**self._detector_config, "target": target}
        try:
            self._detector.init(config, self._handle_init)
        except Exception as exc:
            self._handle_init(exc)

    def stop(self) -> None:
        if not self._active:
            return
        logger.info("Stopping barcode detection")
        self._active = False
        self._target = None
        try:
            if self._subscribed:
                self._detector.off_detected(self._handle_result)
            self._detector.stop()
        except Exception:
            logger.warning("Error during barcode detector cleanup", exc_info=True)
        finally:
            self._subscribed = False

    def is_active(self) -> bool:
        return self._active

    @property
    def last_error(self) -> DetectorInitError | None:
        return self._last_error

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def on_detected(self, callback: BarcodeCallback) -> None:
        self._callbacks.append(callback)
        logger.debug("Barcode callback registered (total %d)", len(self._callbacks))

    def remove_callback(self, callback: BarcodeCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def clear_callbacks(self) -> None:
        self._callbacks.clear()

    # ------------------------------------------------------------------
    # Acceptance policy
    # ------------------------------------------------------------------
    def handle_event(self, event: BarcodeEvent) -> bool:
        """Apply the acceptance policy to ``event`` and notify subscribers.

        Returns ``True`` when the event was accepted.
        """

        code = event.code
        if not code or not code.strip() or len(code) < self.min_code_length:
            logger.debug("Rejected barcode %r: code too short", code)
            return False
        if event.confidence is not None and not event.confidence > self.confidence_threshold:
            logger.debug(
                "Rejected barcode %r: confidence %.1f not above %.1f",
                code,
                event.confidence,
                self.confidence_threshold,
            )
            return False
        now = self._clock()
        window = self.debounce_ms / 1000.0
        last = self._last_accepted.get(code)
        if last is not None and now - last < window:
            logger.debug("Rejected barcode %r: repeated within debounce window", code)
            return False
        self._prune(now, window)
        self._last_accepted[code] = now
        logger.info("Barcode accepted: %s (format %s)", code, event.format or "unknown")
        self._notify(code)
        return True

    def _prune(self, now: float, window: float) -> None:
        expired = [code for code, seen in self._last_accepted.items() if now - seen >= window]
        for code in expired:
            del self._last_accepted[code]

    def _notify(self, code: str) -> None:
        for callback in list(self._callbacks):
            try:
                callback(code)
            except Exception:
                logger.exception("Error in barcode detection callback")

    # ------------------------------------------------------------------
    # Detector plumbing
    # ------------------------------------------------------------------
    def _handle_init(self, error: BaseException | None) -> None:
        if not self._active:
            return
        if error is not None:
            self._report_init_failure(error)
            return
        try:
            self._detector.start()
            self._detector.on_detected(self._handle_result)
        except Exception as exc:
            self._report_init_failure(exc)
            return
        self._subscribed = True
        logger.info("Barcode detection started")

    def _handle_result(self, result: object) -> None:
        if not self._active:
            return
        event = BarcodeEvent.from_result(result)
        if event is None:
            logger.debug("Ignoring detector result without a code: %r", result)
            return
        self.handle_event(event)

    def _report_init_failure(self, error: BaseException) -> None:
        if isinstance(error, DetectorInitError):
            failure = error
        else:
            failure = DetectorInitError(f"Failed to initialise barcode detector: {error}")
            failure.__cause__ = error
        logger.warning("%s", failure)
        self._active = False
        self._subscribed = False
        self._target = None
        self._last_error = failure
        if self._on_error is not None:
            try:
                self._on_error(failure)
            except Exception:
                logger.exception("Error in detector failure callback")


class ManualBarcodeDetector:
    """In-process detector fed explicitly through :meth:`push`.

    Useful for hand-held scanners that type into the host application, for
    API-triggered scans and for tests.
    """

    def __init__(self, *, init_error: BaseException | None = None) -> None:
        self._handlers: list[Callable[[object], None]] = []
        self._running = False
        self._init_error = init_error
        self.config: Mapping[str, Any] | None = None

    def init(
        self, config: Mapping[str, Any], callback: Callable[[BaseException | None], None]
    ) -> None:
        self.config = config
        callback(self._init_error)

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def on_detected(self, handler: Callable[[object], None]) -> None:
        self._handlers.append(handler)

    def off_detected(self, handler: Callable[[object], None]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def push(self, code: str, confidence: float | None = 100.0, format: str = "manual") -> None:
        if not self._running:
            raise RuntimeError("Barcode detector is not running")
        result = {"codeResult": {"code": code, "confidence": confidence, "format": format}}
        for handler in list(self._handlers):
            handler(result)


__all__ = [
    "BarcodeDebouncer",
    "BarcodeDetector",
    "BarcodeEvent",
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "DEFAULT_DEBOUNCE_MS",
    "DEFAULT_DETECTOR_CONFIG",
    "DEFAULT_MIN_CODE_LENGTH",
    "DetectorInitError",
    "ManualBarcodeDetector",
]
