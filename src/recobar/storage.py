"""Persist finished recordings to local disk and a remote object store.

The :class:`StorageWriter` accepts a :class:`~recobar.recording.RecordingArtifact`
and writes it to up to two sinks at once.  Local writes are atomic (temporary
sibling file followed by a rename) and verified by size; remote uploads are
preceded by a single connectivity probe and retried with exponential backoff.
Progress is published to registered observers as immutable
:class:`StorageOperationStatus` snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Mapping
from urllib.parse import quote

from .object_store import Boto3ObjectStore, ObjectStoreClient, RemoteStoreConfig, provider_error_code
from .recording import RecordingArtifact, RecordingMetadata
from .system_log import SystemLog

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "webm"
DEFAULT_KEY_PREFIX = "recordings"
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9]")


class SinkKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    LOCAL = "local"
    REMOTE = "remote"


class LocalErrorReason(str, Enum):
    NOT_A_DIRECTORY = "not_a_directory"
    CANNOT_CREATE = "cannot_create"
    CANNOT_ACCESS = "cannot_access"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_EXISTS = "already_exists"
    SIZE_MISMATCH = "size_mismatch"
    WRITE_FAILED = "write_failed"


class RemoteErrorReason(str, Enum):
    BUCKET_MISSING = "bucket_missing"
    INVALID_ACCESS_KEY = "invalid_access_key"
    SIGNATURE_MISMATCH = "signature_mismatch"
    ACCESS_DENIED = "access_denied"
    CONNECTION_FAILED = "connection_failed"
    UPLOAD_FAILED = "upload_failed"


class StorageError(Exception):
    """Base class for storage failures.

    ``kind`` identifies the error family, ``sink`` the sink that produced it
    (when known) and ``cause`` the wrapped exception.
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        sink: SinkKind | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.sink = sink
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "message": self.message,
            "sink": self.sink.value if self.sink else None,
        }
        reason = getattr(self, "reason", None)
        if reason is not None:
            payload["reason"] = reason.value
        return payload


class ValidationError(StorageError):
    kind = ErrorKind.VALIDATION


class LocalError(StorageError):
    kind = ErrorKind.LOCAL

    def __init__(
        self,
        reason: LocalErrorReason,
        message: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, sink=SinkKind.LOCAL, cause=cause)
        self.reason = reason


class RemoteError(StorageError):
    kind = ErrorKind.REMOTE

    def __init__(
        self,
        reason: RemoteErrorReason,
        message: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, sink=SinkKind.REMOTE, cause=cause)
        self.reason = reason


@dataclass(frozen=True, slots=True)
class SinkStatus:
    enabled: bool = False
    in_progress: bool = False
    completed: bool = False
    error: str | None = None
    path: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "error": self.error,
            "path": self.path,
        }


@dataclass(frozen=True, slots=True)
class StorageOperationStatus:
    """Progress snapshot of a single save operation."""

    local: SinkStatus = field(default_factory=SinkStatus)
    remote: SinkStatus = field(default_factory=SinkStatus)

    def to_dict(self) -> dict[str, dict[str, object]]:
        return {"local": self.local.to_dict(), "remote": self.remote.to_dict()}


@dataclass(frozen=True, slots=True)
class StorageOutcome:
    success: bool
    local_path: str | None = None
    remote_path: str | None = None
    errors: tuple[StorageError, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "errors": [error.to_dict() for error in self.errors],
        }


StatusCallback = Callable[[StorageOperationStatus], None]
ClientFactory = Callable[[RemoteStoreConfig], ObjectStoreClient]


def sanitize_component(value: str) -> str:
    """Replace every character outside ``[A-Za-z0-9]`` with ``_``."""

    return _UNSAFE_CHARACTERS.sub("_", value)


def format_timestamp(moment: datetime) -> str:
    """Return ``moment`` as a UTC ISO-8601 stamp with millisecond precision."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{moment.microsecond // 1000:03d}Z"


def generate_file_name(metadata: RecordingMetadata, extension: str = DEFAULT_EXTENSION) -> str:
    """Return the deterministic file name used by both sinks."""

    stamp = format_timestamp(metadata.start_time).replace(":", "-").replace(".", "-")
    tenant = sanitize_component(metadata.tenant_id)
    barcode = sanitize_component(metadata.barcode)
    return f"{tenant}_{barcode}_{stamp}.{extension.lstrip('.')}"


def build_remote_key(
    metadata: RecordingMetadata,
    filename: str,
    prefix: str = DEFAULT_KEY_PREFIX,
) -> str:
    return f"{prefix}/{metadata.tenant_id}/{filename}"


def build_object_metadata(metadata: RecordingMetadata) -> dict[str, str]:
    return {
        "tenant-id": metadata.tenant_id,
        "barcode": metadata.barcode,
        "start-time": format_timestamp(metadata.start_time),
        "end-time": format_timestamp(metadata.end_time),
        "duration": str(metadata.duration_ms),
        "device-id": metadata.device_id,
        "resolution": metadata.resolution.key(),
        "has-audio": "true" if metadata.has_audio else "false",
    }


def build_tagging(metadata: RecordingMetadata) -> str:
    return f"tenant={quote(metadata.tenant_id, safe='')}&barcode={quote(metadata.barcode, safe='')}"


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:  # pragma: no cover - best-effort cleanup
        logger.warning("Unable to remove temporary file %s", path, exc_info=True)


def _translate_remote_error(exc: BaseException, config: RemoteStoreConfig) -> RemoteError:
    text = provider_error_code(exc) or str(exc)
    if "NoSuchBucket" in text:
        return RemoteError(
            RemoteErrorReason.BUCKET_MISSING,
            f"Remote bucket does not exist: {config.bucket}",
            cause=exc,
        )
    if "InvalidAccessKeyId" in text:
        return RemoteError(RemoteErrorReason.INVALID_ACCESS_KEY, "Invalid access key ID", cause=exc)
    if "SignatureDoesNotMatch" in text:
        return RemoteError(RemoteErrorReason.SIGNATURE_MISMATCH, "Invalid secret access key", cause=exc)
    if "AccessDenied" in text:
        return RemoteError(
            RemoteErrorReason.ACCESS_DENIED,
            "Access denied to remote bucket. Check permissions.",
            cause=exc,
        )
    return RemoteError(
        RemoteErrorReason.CONNECTION_FAILED,
        f"Remote connection test failed: {exc}",
        cause=exc,
    )


class StorageWriter:
    """Write recording artifacts to local disk and/or a remote bucket."""

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        extension: str = DEFAULT_EXTENSION,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        system_log: SystemLog | None = None,
    ) -> None:
        if retry_attempts < 0:
            raise ValueError("retry_attempts must not be negative")
        if retry_base_delay < 0:
            raise ValueError("retry_base_delay must not be negative")
        self._client_factory: ClientFactory = client_factory or Boto3ObjectStore.from_config
        self.retry_attempts = int(retry_attempts)
        self.retry_base_delay = float(retry_base_delay)
        self.extension = extension.lstrip(".")
        self.key_prefix = key_prefix.strip("/")
        self._system_log = system_log
        self._client: ObjectStoreClient | None = None
        self._callbacks: list[StatusCallback] = []
        self._last_status: StorageOperationStatus | None = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def on_status_update(self, callback: StatusCallback) -> None:
        self._callbacks.append(callback)

    def remove_status_callback(self, callback: StatusCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def get_storage_status(self) -> StorageOperationStatus | None:
        """Return the most recently published status snapshot, if any."""

        return self._last_status

    def clear_client(self) -> None:
        """Forget the cached remote client, e.g. after a credential change."""

        if self._client is not None:
            logger.info("Clearing cached object store client")
        self._client = None

    @property
    def has_client(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Local sink
    # ------------------------------------------------------------------
    async def save_local(self, artifact: RecordingArtifact, directory: str | os.PathLike[str]) -> str:
        """Atomically write ``artifact`` below ``directory`` and return its absolute path."""

        self._validate_artifact(artifact)
        target = Path(directory).expanduser()
        try:
            path = await asyncio.to_thread(self._write_local, artifact, target)
        except StorageError:
            raise
        except OSError as exc:
            raise LocalError(
                LocalErrorReason.WRITE_FAILED,
                f"Failed to save recording locally: {exc}",
                cause=exc,
            ) from exc
        logger.info("Recording saved locally: %s", path)
        return path

    def _write_local(self, artifact: RecordingArtifact, directory: Path) -> str:
        target_dir = self._prepare_directory(directory)
        final_path = target_dir / generate_file_name(artifact.metadata, self.extension)
        if final_path.exists():
            raise LocalError(LocalErrorReason.ALREADY_EXISTS, f"File already exists: {final_path}")
        temp_path = final_path.with_name(f"{final_path.name}.{time.time_ns()}.tmp")
        try:
            temp_path.write_bytes(artifact.payload)
            # link() refuses to replace an existing file
            os.link(temp_path, final_path)
        except FileExistsError as exc:
            raise LocalError(
                LocalErrorReason.ALREADY_EXISTS,
                f"File already exists: {final_path}",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise LocalError(
                LocalErrorReason.WRITE_FAILED,
                f"Failed to write recording file: {exc}",
                cause=exc,
            ) from exc
        finally:
            _discard(temp_path)
        written = final_path.stat().st_size
        if written != artifact.size:
            raise LocalError(
                LocalErrorReason.SIZE_MISMATCH,
                f"File size mismatch: expected {artifact.size}, got {written}",
            )
        return str(final_path.resolve())

    @staticmethod
    def _prepare_directory(directory: Path) -> Path:
        if directory.exists() and not directory.is_dir():
            raise LocalError(LocalErrorReason.NOT_A_DIRECTORY, f"Path exists but is not a directory: {directory}")
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise LocalError(
                LocalErrorReason.PERMISSION_DENIED,
                f"Permission denied creating directory: {directory}",
                cause=exc,
            ) from exc
        except (NotADirectoryError, FileExistsError) as exc:
            raise LocalError(
                LocalErrorReason.NOT_A_DIRECTORY,
                f"Path exists but is not a directory: {directory}",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise LocalError(
                LocalErrorReason.CANNOT_CREATE,
                f"Cannot create directory {directory}: {exc}",
                cause=exc,
            ) from exc

        probe = directory / f".write-test-{time.time_ns()}"
        try:
            probe.write_bytes(b"")
        except PermissionError as exc:
            raise LocalError(
                LocalErrorReason.PERMISSION_DENIED,
                f"No write permission for directory: {directory}",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise LocalError(
                LocalErrorReason.CANNOT_ACCESS,
                f"Cannot access directory {directory}: {exc}",
                cause=exc,
            ) from exc
        _discard(probe)
        return directory

    # ------------------------------------------------------------------
    # Remote sink
    # ------------------------------------------------------------------
    async def upload_to_remote(self, artifact: RecordingArtifact, config: RemoteStoreConfig) -> str:
        """Upload ``artifact`` and return its ``s3://bucket/key`` URI."""

        self._validate_artifact(artifact)
        if not isinstance(config, RemoteStoreConfig):
            raise ValidationError("Remote storage configuration is required", sink=SinkKind.REMOTE)
        problems = config.problems()
        if problems:
            raise ValidationError("; ".join(problems), sink=SinkKind.REMOTE)

        client = self._get_client(config)
        try:
            await asyncio.to_thread(client.list_objects, config.bucket, 1)
        except Exception as exc:
            raise _translate_remote_error(exc, config) from exc

        metadata = artifact.metadata
        key = build_remote_key(metadata, generate_file_name(metadata, self.extension), self.key_prefix)
        object_metadata = build_object_metadata(metadata)
        tagging = build_tagging(metadata)

        last_error: Exception | None = None
        for attempt in range(self.retry_attempts + 1):
            try:
                await asyncio.to_thread(
                    client.put_object,
                    config.bucket,
                    key,
                    artifact.payload,
                    content_type=artifact.media_type,
                    metadata=object_metadata,
                    tagging=tagging,
                )
            except Exception as exc:
                last_error = exc
                if attempt >= self.retry_attempts:
                    break
                delay = self.retry_base_delay * (2**attempt)
                logger.warning(
                    "Upload attempt %d for %s failed (%s); retrying in %.1fs",
                    attempt + 1,
                    key,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                uri = f"s3://{config.bucket}/{key}"
                logger.info("Recording uploaded: %s", uri)
                return uri

        raise RemoteError(
            RemoteErrorReason.UPLOAD_FAILED,
            f"Failed to upload recording: {last_error}",
            cause=last_error,
        ) from last_error

    def _get_client(self, config: RemoteStoreConfig) -> ObjectStoreClient:
        if self._client is None:
            try:
                self._client = self._client_factory(config)
            except Exception as exc:
                raise RemoteError(
                    RemoteErrorReason.CONNECTION_FAILED,
                    f"Unable to create object store client: {exc}",
                    cause=exc,
                ) from exc
        return self._client

    # ------------------------------------------------------------------
    # Both sinks
    # ------------------------------------------------------------------
    async def save_recording(
        self,
        artifact: RecordingArtifact,
        local_dir: str | os.PathLike[str] | None = None,
        remote_config: RemoteStoreConfig | None = None,
    ) -> StorageOutcome:
        """Save ``artifact`` to every configured sink concurrently.

        Sink failures are collected in :attr:`StorageOutcome.errors`; this
        coroutine does not raise for them.
        """

        local_enabled = local_dir is not None
        remote_enabled = remote_config is not None
        if not local_enabled and not remote_enabled:
            error = ValidationError("No storage location configured")
            logger.warning("%s", error)
            return StorageOutcome(success=False, errors=(error,))

        statuses = {
            SinkKind.LOCAL: SinkStatus(enabled=local_enabled),
            SinkKind.REMOTE: SinkStatus(enabled=remote_enabled),
        }
        jobs = []
        if local_enabled:
            statuses[SinkKind.LOCAL] = replace(statuses[SinkKind.LOCAL], in_progress=True)
            self._publish(statuses)
            jobs.append(self._run_sink(SinkKind.LOCAL, self.save_local(artifact, local_dir), statuses))
        if remote_enabled:
            statuses[SinkKind.REMOTE] = replace(statuses[SinkKind.REMOTE], in_progress=True)
            self._publish(statuses)
            jobs.append(self._run_sink(SinkKind.REMOTE, self.upload_to_remote(artifact, remote_config), statuses))

        results = await asyncio.gather(*jobs)

        paths: dict[SinkKind, str] = {}
        errors: list[StorageError] = []
        for kind, path, error in results:
            if error is not None:
                errors.append(error)
            elif path is not None:
                paths[kind] = path
        outcome = StorageOutcome(
            success=not errors,
            local_path=paths.get(SinkKind.LOCAL),
            remote_path=paths.get(SinkKind.REMOTE),
            errors=tuple(errors),
        )
        self._journal(artifact, outcome)
        return outcome

    async def _run_sink(
        self,
        kind: SinkKind,
        operation: Awaitable[str],
        statuses: dict[SinkKind, SinkStatus],
    ) -> tuple[SinkKind, str | None, StorageError | None]:
        path: str | None = None
        error: StorageError | None = None
        try:
            path = await operation
        except StorageError as exc:
            if exc.sink is None:
                exc.sink = kind
            error = exc
        except Exception as exc:
            logger.exception("Unexpected %s storage failure", kind.value)
            if kind is SinkKind.LOCAL:
                error = LocalError(LocalErrorReason.WRITE_FAILED, f"Failed to save recording locally: {exc}", cause=exc)
            else:
                error = RemoteError(RemoteErrorReason.UPLOAD_FAILED, f"Failed to upload recording: {exc}", cause=exc)
        if error is not None:
            logger.error("%s storage failed: %s", kind.value.capitalize(), error)
        statuses[kind] = replace(
            statuses[kind],
            in_progress=False,
            completed=error is None,
            error=str(error) if error is not None else None,
            path=path,
        )
        self._publish(statuses)
        return kind, path, error

    def _publish(self, statuses: Mapping[SinkKind, SinkStatus]) -> None:
        snapshot = StorageOperationStatus(local=statuses[SinkKind.LOCAL], remote=statuses[SinkKind.REMOTE])
        self._last_status = snapshot
        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Error in storage status callback")

    def _journal(self, artifact: RecordingArtifact, outcome: StorageOutcome) -> None:
        if self._system_log is None:
            return
        metadata = {
            "recording_id": artifact.metadata.id,
            "barcode": artifact.metadata.barcode,
            **outcome.to_dict(),
        }
        if outcome.success:
            self._system_log.record("storage", "saved", "Recording saved", metadata=metadata)
        else:
            for error in outcome.errors:
                self._system_log.record_error("storage", error, metadata=metadata)

    @staticmethod
    def _validate_artifact(artifact: object) -> None:
        if not isinstance(artifact, RecordingArtifact):
            raise ValidationError("Invalid recording data provided")
        if not isinstance(artifact.payload, (bytes, bytearray, memoryview)):
            raise ValidationError("Recording payload must be binary data")
        if not isinstance(artifact.metadata, RecordingMetadata):
            raise ValidationError("Recording metadata is required")
        if artifact.size == 0:
            raise ValidationError("Recording payload is empty")


__all__ = [
    "ErrorKind",
    "LocalError",
    "LocalErrorReason",
    "RemoteError",
    "RemoteErrorReason",
    "SinkKind",
    "SinkStatus",
    "StorageError",
    "StorageOperationStatus",
    "StorageOutcome",
    "StorageWriter",
    "ValidationError",
    "build_remote_key",
    "format_timestamp",
    "generate_file_name",
    "sanitize_component",
]
