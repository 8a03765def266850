"""Configuration management for Recobar."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Mapping

from .detection import DEFAULT_CONFIDENCE_THRESHOLD, DEFAULT_DEBOUNCE_MS, DEFAULT_MIN_CODE_LENGTH
from .object_store import RemoteStoreConfig
from .recording import (
    DEFAULT_CHUNK_INTERVAL_S,
    DEFAULT_MAX_BUFFER_BYTES,
    DEFAULT_RESOLUTION,
    Resolution,
)

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "RECOBAR_DATA_DIR"
MAX_IDENTIFIER_LENGTH = 128
_SECRET_MASK = "********"


def default_data_dir() -> Path:
    """Return the directory holding configuration, journal and recordings."""

    override = os.environ.get(DATA_DIR_ENV, "").strip()
    return Path(override).expanduser() if override else Path("data")


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Which sinks receive finished recordings."""

    local_enabled: bool = True
    local_path: str = ""
    remote_enabled: bool = False
    remote: RemoteStoreConfig | None = None

    def __post_init__(self) -> None:
        if self.local_enabled and not self.local_path.strip():
            raise ValueError("Local storage requires a directory path")
        if self.remote_enabled and self.remote is None:
            raise ValueError("Remote storage requires bucket settings")

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, Any]:
        return {
            "local": {"enabled": self.local_enabled, "path": self.local_path},
            "remote": {
                "enabled": self.remote_enabled,
                **(
                    self.remote.to_dict(include_secrets=include_secrets)
                    if self.remote is not None
                    else {}
                ),
            },
        }


@dataclass(frozen=True, slots=True)
class DetectionSettings:
    """Acceptance policy applied to raw detector output."""

    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    min_code_length: int = DEFAULT_MIN_CODE_LENGTH
    debounce_ms: int = DEFAULT_DEBOUNCE_MS

    def __post_init__(self) -> None:
        try:
            threshold = float(self.confidence_threshold)
        except (TypeError, ValueError) as exc:
            raise ValueError("Confidence threshold must be numeric") from exc
        if not math.isfinite(threshold) or threshold < 0 or threshold > 100:
            raise ValueError("Confidence threshold must be between 0 and 100")
        if int(self.min_code_length) < 1:
            raise ValueError("Minimum code length must be at least 1")
        if int(self.debounce_ms) < 0 or int(self.debounce_ms) > 60_000:
            raise ValueError("Debounce window must be between 0 and 60000 ms")
        object.__setattr__(self, "confidence_threshold", threshold)
        object.__setattr__(self, "min_code_length", int(self.min_code_length))
        object.__setattr__(self, "debounce_ms", int(self.debounce_ms))

    def to_dict(self) -> Dict[str, float | int]:
        return {
            "confidence_threshold": self.confidence_threshold,
            "min_code_length": self.min_code_length,
            "debounce_ms": self.debounce_ms,
        }


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Chunking and memory limits for capture sessions."""

    chunk_interval_s: float = DEFAULT_CHUNK_INTERVAL_S
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES
    fallback_width: int = DEFAULT_RESOLUTION.width
    fallback_height: int = DEFAULT_RESOLUTION.height

    def __post_init__(self) -> None:
        try:
            interval = float(self.chunk_interval_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Chunk interval must be numeric") from exc
        if not math.isfinite(interval) or interval <= 0 or interval > 60:
            raise ValueError("Chunk interval must be between 0 and 60 seconds")
        if int(self.max_buffer_bytes) < 1024 * 1024:
            raise ValueError("Buffer limit must be at least 1 MiB")
        object.__setattr__(self, "chunk_interval_s", interval)
        object.__setattr__(self, "max_buffer_bytes", int(self.max_buffer_bytes))
        if int(self.fallback_width) <= 0 or int(self.fallback_height) <= 0:
            raise ValueError("Fallback resolution dimensions must be positive integers")

    @property
    def fallback_resolution(self) -> Resolution:
        return Resolution(int(self.fallback_width), int(self.fallback_height))

    def to_dict(self) -> Dict[str, float | int]:
        return {
            "chunk_interval_s": self.chunk_interval_s,
            "max_buffer_bytes": self.max_buffer_bytes,
            "fallback_width": int(self.fallback_width),
            "fallback_height": int(self.fallback_height),
        }


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if math.isnan(float(value)):
            raise ValueError("Flags must be boolean values")
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError("Flags must be boolean values")


def _parse_identifier(value: Any, *, label: str, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string")
    text = value.strip()
    if len(text) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(f"{label} must be at most {MAX_IDENTIFIER_LENGTH} characters")
    if any(not char.isprintable() for char in text):
        raise ValueError(f"{label} contains unsupported characters")
    return text


def _parse_storage_settings(
    value: Any,
    *,
    default: StorageSettings,
    current: StorageSettings | None = None,
) -> StorageSettings:
    if value is None:
        return default
    if isinstance(value, StorageSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Storage settings must be a mapping")
    base = current or default
    local_raw = value.get("local")
    local = local_raw if isinstance(local_raw, Mapping) else {}
    remote_raw = value.get("remote")
    remote_payload = remote_raw if isinstance(remote_raw, Mapping) else {}

    local_enabled = _parse_flag(local.get("enabled"), default=base.local_enabled)
    local_path_raw = local.get("path", base.local_path)
    if local_path_raw is not None and not isinstance(local_path_raw, str):
        raise ValueError("Local storage path must be a string")
    local_path = (local_path_raw or "").strip()

    remote_enabled = _parse_flag(remote_payload.get("enabled"), default=base.remote_enabled)
    remote = base.remote
    fields = {key: val for key, val in remote_payload.items() if key != "enabled"}
    if fields:
        merged = dict(base.remote.to_dict(include_secrets=True)) if base.remote else {}
        merged.update(fields)
        if merged.get("secret_access_key") == _SECRET_MASK and base.remote is not None:
            merged["secret_access_key"] = base.remote.secret_access_key
        remote = RemoteStoreConfig.from_dict(merged)
    return StorageSettings(
        local_enabled=local_enabled,
        local_path=local_path,
        remote_enabled=remote_enabled,
        remote=remote,
    )


def _parse_detection_settings(value: Any, *, default: DetectionSettings) -> DetectionSettings:
    if value is None:
        return default
    if isinstance(value, DetectionSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Detection settings must be a mapping")
    try:
        return DetectionSettings(
            confidence_threshold=float(value.get("confidence_threshold", default.confidence_threshold)),
            min_code_length=int(value.get("min_code_length", default.min_code_length)),
            debounce_ms=int(value.get("debounce_ms", default.debounce_ms)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid detection settings: {exc}") from exc


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    if value is None:
        return default
    if isinstance(value, CaptureSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be a mapping")
    try:
        return CaptureSettings(
            chunk_interval_s=float(value.get("chunk_interval_s", default.chunk_interval_s)),
            max_buffer_bytes=int(value.get("max_buffer_bytes", default.max_buffer_bytes)),
            fallback_width=int(value.get("fallback_width", default.fallback_width)),
            fallback_height=int(value.get("fallback_height", default.fallback_height)),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid capture settings: {exc}") from exc


class ConfigManager:
    """Persist recorder configuration to disk."""

    def __init__(self, config_path: Path, *, recordings_dir: Path | str | None = None) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        recordings = recordings_dir if recordings_dir is not None else self._path.parent / "recordings"
        self._default_storage = StorageSettings(local_enabled=True, local_path=str(recordings))
        (
            self._tenant_id,
            self._device_id,
            self._storage,
            self._detection,
            self._capture,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _defaults(self) -> tuple[str, str, StorageSettings, DetectionSettings, CaptureSettings]:
        return ("", "", self._default_storage, DetectionSettings(), CaptureSettings())

    def _load(self) -> tuple[str, str, StorageSettings, DetectionSettings, CaptureSettings]:
        defaults = self._defaults()
        if not self._path.exists():
            return defaults
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable configuration %s: %s", self._path, exc)
            return defaults

        def _section(parser: Callable[..., Any], key: str, default: Any) -> Any:
            try:
                return parser(payload.get(key), default=default)
            except ValueError as exc:
                logger.warning("Invalid %s configuration, using defaults: %s", key, exc)
                return default

        tenant_id = _section(partial(_parse_identifier, label="Tenant ID"), "tenant_id", "")
        device_id = _section(partial(_parse_identifier, label="Device ID"), "device_id", "")
        return (
            tenant_id,
            device_id,
            _section(_parse_storage_settings, "storage", defaults[2]),
            _section(_parse_detection_settings, "detection", defaults[3]),
            _section(_parse_capture_settings, "capture", defaults[4]),
        )

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "device_id": self._device_id,
            "storage": self._storage.to_dict(include_secrets=True),
            "detection": self._detection.to_dict(),
            "capture": self._capture.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def get_tenant_id(self) -> str:
        with self._lock:
            return self._tenant_id

    def set_tenant_id(self, value: Any) -> str:
        tenant_id = _parse_identifier(value, label="Tenant ID")
        if not tenant_id:
            raise ValueError("Tenant ID is required")
        with self._lock:
            self._tenant_id = tenant_id
            self._save()
        return tenant_id

    def get_device_id(self) -> str:
        with self._lock:
            return self._device_id

    def set_device_id(self, value: Any) -> str:
        device_id = _parse_identifier(value, label="Device ID")
        if not device_id:
            raise ValueError("Device ID is required")
        with self._lock:
            self._device_id = device_id
            self._save()
        return device_id

    def get_identity(self) -> tuple[str | None, str | None]:
        """Return ``(tenant_id, device_id)`` with unset values as ``None``."""

        with self._lock:
            return (self._tenant_id or None, self._device_id or None)

    def is_first_time_setup(self) -> bool:
        with self._lock:
            return not self._tenant_id or not self._device_id

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def get_storage_settings(self) -> StorageSettings:
        with self._lock:
            return self._storage

    def set_storage_settings(self, data: Mapping[str, Any] | StorageSettings) -> StorageSettings:
        """Merge ``data`` into the stored settings.

        A masked secret key keeps the stored secret, so settings read back from
        :meth:`to_dict` can be submitted unchanged.
        """

        with self._lock:
            current = self._storage
        settings = _parse_storage_settings(data, default=self._default_storage, current=current)
        if settings.remote_enabled and settings.remote is not None:
            problems = settings.remote.problems()
            if problems:
                raise ValueError("; ".join(problems))
        with self._lock:
            self._storage = settings
            self._save()
        return settings

    def storage_targets(self) -> tuple[Path | None, RemoteStoreConfig | None]:
        """Return the enabled ``(local_dir, remote_config)`` pair."""

        with self._lock:
            storage = self._storage
        local_dir = Path(storage.local_path).expanduser() if storage.local_enabled else None
        remote = storage.remote if storage.remote_enabled else None
        return local_dir, remote

    # ------------------------------------------------------------------
    # Detection and capture
    # ------------------------------------------------------------------
    def get_detection_settings(self) -> DetectionSettings:
        with self._lock:
            return self._detection

    def set_detection_settings(self, data: Mapping[str, Any] | DetectionSettings) -> DetectionSettings:
        with self._lock:
            current = self._detection
        settings = _parse_detection_settings(data, default=current)
        with self._lock:
            self._detection = settings
            self._save()
        return settings

    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def set_capture_settings(self, data: Mapping[str, Any] | CaptureSettings) -> CaptureSettings:
        with self._lock:
            current = self._capture
        settings = _parse_capture_settings(data, default=current)
        with self._lock:
            self._capture = settings
            self._save()
        return settings

    # ------------------------------------------------------------------
    # Whole configuration
    # ------------------------------------------------------------------
    def reset(self) -> None:
        with self._lock:
            (
                self._tenant_id,
                self._device_id,
                self._storage,
                self._detection,
                self._capture,
            ) = self._defaults()
            self._save()
        logger.info("Configuration reset to defaults")

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, Any]:
        with self._lock:
            return {
                "tenant_id": self._tenant_id,
                "device_id": self._device_id,
                "first_time_setup": not self._tenant_id or not self._device_id,
                "storage": self._storage.to_dict(include_secrets=include_secrets),
                "detection": self._detection.to_dict(),
                "capture": self._capture.to_dict(),
            }


__all__ = [
    "CaptureSettings",
    "ConfigManager",
    "DATA_DIR_ENV",
    "DetectionSettings",
    "StorageSettings",
    "default_data_dir",
]
