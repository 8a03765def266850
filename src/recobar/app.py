"""FastAPI application wiring together the Recobar services."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .capture import CaptureSink, SyntheticCaptureSink
from .config import ConfigManager, default_data_dir
from .detection import BarcodeDebouncer, BarcodeDetector, ManualBarcodeDetector
from .diagnostics import collect_diagnostics
from .guidance import describe_error
from .orchestrator import OrchestratorStateError, RecordingOrchestrator
from .performance import PerformanceMonitor
from .recording import CaptureSession, RecordingArtifact, RecordingStateError
from .storage import StorageOperationStatus, StorageWriter
from .system_log import SystemLog
from .version import APP_VERSION


class IdentityPayload(BaseModel):
    tenant_id: str | None = Field(default=None, max_length=128)
    device_id: str | None = Field(default=None, max_length=128)


class LocalStoragePayload(BaseModel):
    enabled: bool | None = None
    path: str | None = Field(default=None, max_length=4096)


class RemoteStoragePayload(BaseModel):
    enabled: bool | None = None
    bucket: str | None = Field(default=None, max_length=63)
    region: str | None = Field(default=None, max_length=64)
    access_key_id: str | None = Field(default=None, max_length=256)
    secret_access_key: str | None = Field(default=None, max_length=256)
    endpoint_url: str | None = Field(default=None, max_length=2048)


class StorageSettingsPayload(BaseModel):
    local: LocalStoragePayload | None = None
    remote: RemoteStoragePayload | None = None


class DetectionSettingsPayload(BaseModel):
    confidence_threshold: float | None = None
    min_code_length: int | None = None
    debounce_ms: int | None = None


class OrchestratorStartPayload(BaseModel):
    target: str = Field(default="default", min_length=1, max_length=256)


class ForceRecordingPayload(BaseModel):
    barcode: str = Field(min_length=1, max_length=256)


class BarcodePayload(BaseModel):
    code: str = Field(max_length=256)
    confidence: float | None = 100.0
    format: str = Field(default="manual", max_length=64)


def _error_detail(exc: BaseException) -> dict[str, Any]:
    detail: dict[str, Any] = {"message": str(exc), "guidance": describe_error(exc).to_dict()}
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        detail["code"] = code
    return detail


def _artifact_summary(artifact: RecordingArtifact | None) -> dict[str, object] | None:
    if artifact is None:
        return None
    return {
        "metadata": artifact.metadata.to_dict(),
        "size": artifact.size,
        "media_type": artifact.media_type,
    }


def create_app(
    config_path: Path | str | None = None,
    *,
    detector: BarcodeDetector | None = None,
    capture_sink: CaptureSink | None = None,
    storage_writer: StorageWriter | None = None,
) -> FastAPI:
    app = FastAPI(title="Recobar", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path) if config_path is not None else default_data_dir() / "config.json"
    config_manager = ConfigManager(config_path)
    system_log = SystemLog(config_path.parent / "system_log.jsonl")
    performance = PerformanceMonitor()

    barcode_detector: BarcodeDetector = detector if detector is not None else ManualBarcodeDetector()
    sink: CaptureSink = capture_sink if capture_sink is not None else SyntheticCaptureSink()

    detection_settings = config_manager.get_detection_settings()
    debouncer = BarcodeDebouncer(
        barcode_detector,
        confidence_threshold=detection_settings.confidence_threshold,
        min_code_length=detection_settings.min_code_length,
        debounce_ms=detection_settings.debounce_ms,
        on_error=lambda exc: system_log.record_error("detection", exc),
    )
    capture_settings = config_manager.get_capture_settings()
    session = CaptureSession(
        identity=config_manager.get_identity,
        chunk_interval=capture_settings.chunk_interval_s,
        max_buffer_bytes=capture_settings.max_buffer_bytes,
        fallback_resolution=capture_settings.fallback_resolution,
        performance_monitor=performance,
    )
    writer = storage_writer if storage_writer is not None else StorageWriter(system_log=system_log)
    orchestrator = RecordingOrchestrator(
        debouncer,
        session,
        storage_writer=writer,
        storage_targets=config_manager.storage_targets,
        system_log=system_log,
    )

    app.state.config_manager = config_manager
    app.state.system_log = system_log
    app.state.performance = performance
    app.state.debouncer = debouncer
    app.state.session = session
    app.state.storage_writer = writer
    app.state.orchestrator = orchestrator

    def _state_payload() -> dict[str, object]:
        payload = orchestrator.get_recording_state().to_dict()
        payload["session"] = session.snapshot()
        return payload

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        system_log.record(
            "system",
            "startup",
            "Recobar application starting.",
            metadata={"version": APP_VERSION, "first_time_setup": config_manager.is_first_time_setup()},
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await orchestrator.stop()
        outcomes = await orchestrator.wait_for_storage()
        system_log.record(
            "system",
            "shutdown_complete",
            "Recobar shutdown sequence completed.",
            metadata={"pending_storage": len(outcomes)},
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return config_manager.to_dict()

    @app.post("/api/config")
    async def update_config(payload: IdentityPayload) -> dict[str, object]:
        if payload.tenant_id is None and payload.device_id is None:
            raise HTTPException(status_code=400, detail="Specify a tenant ID or device ID to update")
        try:
            if payload.tenant_id is not None:
                config_manager.set_tenant_id(payload.tenant_id)
            if payload.device_id is not None:
                config_manager.set_device_id(payload.device_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        system_log.record("config", "identity_updated", "Recorder identity updated.")
        return config_manager.to_dict()

    @app.get("/api/config/setup")
    async def get_setup_status() -> dict[str, bool]:
        return {"first_time_setup": config_manager.is_first_time_setup()}

    @app.post("/api/config/reset")
    async def reset_config() -> dict[str, object]:
        config_manager.reset()
        writer.clear_client()
        system_log.record("config", "reset", "Configuration reset to defaults.")
        return config_manager.to_dict()

    @app.get("/api/detection/settings")
    async def get_detection_settings() -> dict[str, float | int]:
        return config_manager.get_detection_settings().to_dict()

    @app.post("/api/detection/settings")
    async def update_detection_settings(payload: DetectionSettingsPayload) -> dict[str, float | int]:
        try:
            settings = config_manager.set_detection_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        debouncer.confidence_threshold = settings.confidence_threshold
        debouncer.min_code_length = settings.min_code_length
        debouncer.debounce_ms = float(settings.debounce_ms)
        return settings.to_dict()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    @app.get("/api/storage/settings")
    async def get_storage_settings() -> dict[str, Any]:
        return config_manager.get_storage_settings().to_dict()

    @app.post("/api/storage/settings")
    async def update_storage_settings(payload: StorageSettingsPayload) -> dict[str, Any]:
        data = payload.model_dump(exclude_none=True)
        try:
            settings = config_manager.set_storage_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if "remote" in data:
            writer.clear_client()
        system_log.record(
            "config",
            "storage_updated",
            "Storage settings updated.",
            metadata={"local": settings.local_enabled, "remote": settings.remote_enabled},
        )
        return settings.to_dict()

    @app.get("/api/storage/status")
    async def get_storage_status() -> dict[str, object]:
        status = writer.get_storage_status() or StorageOperationStatus()
        return status.to_dict()

    @app.post("/api/storage/client/clear")
    async def clear_storage_client() -> dict[str, bool]:
        writer.clear_client()
        return {"cleared": True}

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------
    @app.post("/api/orchestrator/start")
    async def start_orchestrator(payload: OrchestratorStartPayload | None = None) -> dict[str, object]:
        target = payload.target if payload is not None else "default"
        try:
            await orchestrator.start(target, sink)
        except OrchestratorStateError as exc:
            raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
        return _state_payload()

    @app.post("/api/orchestrator/stop")
    async def stop_orchestrator() -> dict[str, object]:
        artifact = await orchestrator.stop()
        payload = _state_payload()
        payload["recording"] = _artifact_summary(artifact)
        return payload

    @app.get("/api/recording/state")
    async def get_recording_state() -> dict[str, object]:
        return _state_payload()

    @app.post("/api/recording/pause")
    async def pause_recording() -> dict[str, object]:
        try:
            orchestrator.pause_recording()
        except RecordingStateError as exc:
            raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
        return _state_payload()

    @app.post("/api/recording/resume")
    async def resume_recording() -> dict[str, object]:
        try:
            orchestrator.resume_recording()
        except RecordingStateError as exc:
            raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
        return _state_payload()

    @app.post("/api/recording/stop")
    async def stop_recording() -> dict[str, object]:
        try:
            artifact = await orchestrator.stop_recording()
        except RecordingStateError as exc:
            raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
        except Exception as exc:
            logger.exception("Stopping recording failed")
            raise HTTPException(status_code=500, detail=_error_detail(exc)) from exc
        payload = _state_payload()
        payload["recording"] = _artifact_summary(artifact)
        return payload

    @app.post("/api/recording/force")
    async def force_recording(payload: ForceRecordingPayload) -> dict[str, object]:
        try:
            await orchestrator.force_start_recording(payload.barcode)
        except RecordingStateError as exc:
            raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=_error_detail(exc)) from exc
        return _state_payload()

    @app.post("/api/barcode")
    async def submit_barcode(payload: BarcodePayload) -> dict[str, object]:
        push = getattr(barcode_detector, "push", None)
        if push is None:
            raise HTTPException(status_code=400, detail="The configured detector does not accept manual scans")
        try:
            push(payload.code, payload.confidence, payload.format)
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        await orchestrator.wait_for_transitions()
        return _state_payload()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    @app.get("/api/log")
    async def get_log(limit: int = 100, category: str | None = None) -> dict[str, object]:
        entries = system_log.tail(limit, category=category)
        return {
            "entries": [entry.to_dict() for entry in reversed(entries)],
            "errors": system_log.error_stats(),
        }

    @app.get("/api/metrics")
    async def get_metrics() -> dict[str, object]:
        return {
            "average": performance.average_metrics(),
            "recent": [item.to_dict() for item in performance.recent_metrics()],
            "session": session.snapshot(),
        }

    @app.get("/api/diagnostics")
    async def get_diagnostics() -> dict[str, object]:
        try:
            return await run_in_threadpool(collect_diagnostics, config_path)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Diagnostics collection failed")
            raise HTTPException(status_code=500, detail="Unable to collect diagnostics") from exc

    return app


__all__ = ["create_app"]
