from __future__ import annotations

import types

import pytest

import recobar.performance as performance_module
from recobar.performance import PerformanceMonitor


def test_stop_without_start_raises() -> None:
    monitor = PerformanceMonitor()
    with pytest.raises(RuntimeError, match="not started"):
        monitor.stop_recording(10, 1.0)


def test_metrics_are_recorded_and_averaged(monkeypatch: pytest.MonkeyPatch) -> None:
    ticks = iter([10.0, 12.0, 20.0, 21.0])
    fake_time = types.SimpleNamespace(perf_counter=lambda: next(ticks), time=lambda: 1_700_000_000.0)
    monkeypatch.setattr(performance_module, "time", fake_time)
    monitor = PerformanceMonitor()

    monitor.start_recording()
    assert monitor.monitoring
    first = monitor.stop_recording(1000, 5.0)
    assert not monitor.monitoring
    assert first.duration_ms == pytest.approx(2000.0)
    assert first.bitrate_bps == pytest.approx(4000.0)

    monitor.start_recording()
    monitor.stop_recording(3000, 15.0)

    averages = monitor.average_metrics()
    assert averages["duration_ms"] == pytest.approx(1500.0)
    assert averages["payload_size"] == pytest.approx(2000.0)
    assert averages["processing_ms"] == pytest.approx(10.0)
    assert [item.payload_size for item in monitor.recent_metrics(1)] == [3000]
    assert first.to_dict()["payload_size"] == 1000


def test_history_is_bounded_and_clearable() -> None:
    monitor = PerformanceMonitor(max_entries=2)
    for size in (1, 2, 3):
        monitor.start_recording()
        monitor.stop_recording(size, 0.0)
    assert [item.payload_size for item in monitor.recent_metrics()] == [2, 3]
    assert monitor.recent_metrics(0) == []

    monitor.start_recording()
    monitor.cancel()
    assert not monitor.monitoring

    monitor.clear()
    assert monitor.average_metrics() == {}
