"""Persistent event journal shared by the recording pipeline."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Mapping

logger = logging.getLogger(__name__)

CATEGORIES = ("system", "detection", "recording", "storage", "config")
DEFAULT_CATEGORY = "system"
ERROR_EVENT = "error"
RECENT_ERROR_COUNT = 10

JournalData = dict[str, object | None]


def _category(value: object) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_CATEGORY


@dataclass(slots=True)
class SystemLogEntry:
    """One journalled pipeline event."""

    timestamp: float
    category: str
    event: str
    message: str
    status: JournalData | None = None
    metadata: JournalData | None = None

    @property
    def is_error(self) -> bool:
        return self.event == ERROR_EVENT

    def to_dict(self) -> JournalData:
        data: JournalData = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        for key in ("status", "metadata"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SystemLogEntry | None":
        """Rebuild an entry from a journal line, or ``None`` if it is unusable."""

        event, message = data.get("event"), data.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(data.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        status, metadata = data.get("status"), data.get("metadata")
        return cls(
            timestamp=timestamp,
            category=_category(data.get("category")),
            event=event,
            message=message,
            status=status if isinstance(status, dict) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


def _error_details(error: BaseException) -> JournalData:
    kind = getattr(error, "kind", None)
    reason = getattr(error, "reason", None)
    code = getattr(error, "code", None)
    return {
        "error_type": type(error).__name__,
        "kind": getattr(kind, "value", kind),
        "reason": getattr(reason, "value", reason),
        "code": code if isinstance(code, str) else None,
    }


class SystemLog:
    """Append-only JSONL journal with a bounded in-memory tail.

    Pass ``path=None`` for a memory-only journal.  When the file cannot be
    prepared or written the journal keeps working in memory.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/system_log.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._path = self._prepare(Path(path)) if path is not None else None
        if self._path is not None:
            self._replay(self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        status: JournalData | None = None,
        metadata: JournalData | None = None,
    ) -> SystemLogEntry:
        """Append an event and return the stored entry."""

        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=_category(category),
            event=event,
            message=message,
            status=status,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def record_error(
        self,
        category: str,
        error: BaseException,
        *,
        metadata: JournalData | None = None,
    ) -> SystemLogEntry:
        """Journal ``error`` together with its type, kind and reason."""

        details = {**_error_details(error), **(metadata or {})}
        return self.record(category, ERROR_EVENT, str(error) or type(error).__name__, metadata=details)

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[SystemLogEntry]:
        with self._lock:
            entries = list(self._entries)
        wanted = category.strip() if isinstance(category, str) else ""
        if wanted:
            entries = [entry for entry in entries if entry.category == wanted]
        if limit is None:
            return entries
        try:
            count = max(1, int(limit))
        except (TypeError, ValueError):
            count = 1
        return entries[-count:]

    def error_stats(self) -> dict[str, object]:
        """Summarise journalled errors.

        ``recent`` holds the last ten error entries, oldest first.
        """

        with self._lock:
            errors = [entry for entry in self._entries if entry.is_error]
        return {
            "total": len(errors),
            "by_category": dict(Counter(entry.category for entry in errors)),
            "recent": [entry.to_dict() for entry in errors[-RECENT_ERROR_COUNT:]],
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            if self._path is None:
                return
            try:
                self._path.write_text("", encoding="utf-8")
            except OSError as exc:  # pragma: no cover - best effort logging
                logger.warning("Unable to truncate system log %s: %s", self._path, exc)

    @staticmethod
    def _prepare(path: Path) -> Path | None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - depends on filesystem
            logger.warning("System log kept in memory only, cannot prepare %s: %s", path.parent, exc)
            return None
        return path

    def _replay(self, path: Path) -> None:
        try:
            with path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to read system log %s: %s", path, exc)
            return
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError:
                skipped += 1
                continue
            entry = SystemLogEntry.from_dict(data) if isinstance(data, dict) else None
            if entry is None:
                skipped += 1
                continue
            self._entries.append(entry)
        if skipped:
            logger.debug("Skipped %d unreadable system log lines", skipped)

    def _persist(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log entry: %s", exc)


__all__ = ["CATEGORIES", "SystemLog", "SystemLogEntry"]
