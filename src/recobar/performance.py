"""Lightweight performance tracking for completed recordings."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordingMetrics:
    """Measurements captured for one finished recording."""

    started_at: float
    duration_ms: float
    payload_size: int
    processing_ms: float
    bitrate_bps: float

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


class PerformanceMonitor:
    """Collect recording metrics in a bounded history."""

    def __init__(self, *, max_entries: int = 100) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._metrics: Deque[RecordingMetrics] = deque(maxlen=max_entries)
        self._started_at: float | None = None
        self._started_perf: float | None = None

    @property
    def monitoring(self) -> bool:
        return self._started_perf is not None

    def start_recording(self) -> None:
        self._started_at = time.time()
        self._started_perf = time.perf_counter()

    def stop_recording(self, payload_size: int, processing_ms: float) -> RecordingMetrics:
        if self._started_perf is None or self._started_at is None:
            raise RuntimeError("Performance monitoring not started")
        duration_ms = (time.perf_counter() - self._started_perf) * 1000.0
        metrics = RecordingMetrics(
            started_at=self._started_at,
            duration_ms=duration_ms,
            payload_size=int(payload_size),
            processing_ms=float(processing_ms),
            bitrate_bps=self._bitrate(payload_size, duration_ms),
        )
        self._metrics.append(metrics)
        self._started_at = None
        self._started_perf = None
        logger.debug("Recording metrics: %s", metrics)
        return metrics

    def cancel(self) -> None:
        self._started_at = None
        self._started_perf = None

    def average_metrics(self) -> dict[str, float]:
        if not self._metrics:
            return {}
        count = len(self._metrics)
        return {
            "duration_ms": sum(item.duration_ms for item in self._metrics) / count,
            "payload_size": sum(item.payload_size for item in self._metrics) / count,
            "processing_ms": sum(item.processing_ms for item in self._metrics) / count,
            "bitrate_bps": sum(item.bitrate_bps for item in self._metrics) / count,
        }

    def recent_metrics(self, count: int = 5) -> list[RecordingMetrics]:
        if count <= 0:
            return []
        return list(self._metrics)[-count:]

    def clear(self) -> None:
        self._metrics.clear()

    @staticmethod
    def _bitrate(payload_size: int, duration_ms: float) -> float:
        if duration_ms <= 0:
            return 0.0
        return (payload_size * 8) / (duration_ms / 1000.0)


__all__ = ["PerformanceMonitor", "RecordingMetrics"]
