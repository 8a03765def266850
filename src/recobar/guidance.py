"""Map pipeline errors to short, actionable operator messages."""

from __future__ import annotations

from dataclasses import dataclass

from .detection import DetectorInitError
from .orchestrator import OrchestratorStateError
from .recording import (
    AlreadyActiveError,
    AlreadyPausedError,
    NotActiveError,
    NotPausedError,
    RecordingProcessingError,
    RecordingStartError,
    RecordingStateError,
)
from .storage import (
    LocalError,
    LocalErrorReason,
    RemoteError,
    RemoteErrorReason,
    StorageError,
    ValidationError,
)


@dataclass(frozen=True, slots=True)
class ErrorGuidance:
    """Operator-facing description of a failure."""

    category: str
    severity: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"category": self.category, "severity": self.severity, "message": self.message}


_LOCAL_MESSAGES = {
    LocalErrorReason.PERMISSION_DENIED: "Cannot write to the recordings folder. Check folder permissions.",
    LocalErrorReason.NOT_A_DIRECTORY: "The recordings path points at a file. Choose a folder instead.",
    LocalErrorReason.CANNOT_CREATE: "The recordings folder could not be created. Check the path and permissions.",
    LocalErrorReason.CANNOT_ACCESS: "The recordings folder is not accessible. Check that the drive is mounted.",
    LocalErrorReason.ALREADY_EXISTS: "A recording with the same name already exists and was kept.",
    LocalErrorReason.SIZE_MISMATCH: "The saved recording is incomplete. Check free disk space.",
    LocalErrorReason.WRITE_FAILED: "Saving the recording failed. Check free disk space and folder permissions.",
}

_REMOTE_MESSAGES = {
    RemoteErrorReason.BUCKET_MISSING: "The storage bucket does not exist. Check the bucket name.",
    RemoteErrorReason.INVALID_ACCESS_KEY: "The access key ID was rejected. Check credentials.",
    RemoteErrorReason.SIGNATURE_MISMATCH: "The secret access key was rejected. Check credentials.",
    RemoteErrorReason.ACCESS_DENIED: "Access to the bucket was denied. Check the bucket permissions.",
    RemoteErrorReason.CONNECTION_FAILED: "Cloud storage is unreachable. Check the network connection.",
    RemoteErrorReason.UPLOAD_FAILED: "Cloud upload failed after several attempts. Check the network connection.",
}

_STATE_MESSAGES = {
    AlreadyActiveError: "A recording is already in progress.",
    NotActiveError: "No recording is in progress.",
    AlreadyPausedError: "The recording is already paused.",
    NotPausedError: "The recording is not paused.",
}


def describe_error(error: BaseException) -> ErrorGuidance:
    """Return guidance for ``error`` based on its type and reason."""

    if isinstance(error, LocalError):
        return ErrorGuidance("local_storage", "error", _LOCAL_MESSAGES[error.reason])
    if isinstance(error, RemoteError):
        severity = "warning" if error.reason is RemoteErrorReason.UPLOAD_FAILED else "error"
        return ErrorGuidance("remote_storage", severity, _REMOTE_MESSAGES[error.reason])
    if isinstance(error, ValidationError):
        return ErrorGuidance("validation", "warning", f"Storage settings need attention: {error.message}")
    if isinstance(error, StorageError):
        return ErrorGuidance("storage", "error", f"Storage error: {error.message}")
    if isinstance(error, DetectorInitError):
        return ErrorGuidance(
            "detection",
            "warning",
            "Barcode detection is unavailable. Recordings can still be started manually.",
        )
    if isinstance(error, OrchestratorStateError):
        return ErrorGuidance("state", "info", str(error))
    if isinstance(error, RecordingStateError):
        for error_type, message in _STATE_MESSAGES.items():
            if isinstance(error, error_type):
                return ErrorGuidance("state", "info", message)
        return ErrorGuidance("state", "info", str(error))
    if isinstance(error, RecordingStartError):
        return ErrorGuidance("recording", "error", "Recording could not start. Check the camera connection.")
    if isinstance(error, RecordingProcessingError):
        return ErrorGuidance("recording", "error", "The recording could not be finalised and was discarded.")
    return ErrorGuidance("general", "error", f"Unexpected error: {error}")


__all__ = ["ErrorGuidance", "describe_error"]
