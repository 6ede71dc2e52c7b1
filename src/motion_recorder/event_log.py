"""Bounded journal of recorder events shared by all sessions."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Mapping

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventLogEntry:
    """One recorder event, usually tagged with the camera name."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class EventLog:
    """In-memory event journal with an optional JSON-lines mirror.

    Entries are kept only for the lifetime of the process. When ``path`` is
    given every new entry is also appended to that file, but the file is never
    read back.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        clock=time.time,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._clock = clock
        self._path: Path | None = Path(path) if path is not None else None
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None

    @property
    def path(self) -> Path | None:
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> EventLogEntry:
        """Append an event and return the stored entry."""

        cleaned = category.strip() if isinstance(category, str) else ""
        entry = EventLogEntry(
            timestamp=float(self._clock()),
            category=cleaned or "general",
            event=event,
            message=message,
            metadata=_clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._mirror(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[EventLogEntry]:
        """Return the newest entries, oldest first, optionally for one category."""

        with self._lock:
            entries = list(self._entries)
        if category is not None and category.strip():
            wanted = category.strip()
            entries = [entry for entry in entries if entry.category == wanted]
        if limit is not None:
            try:
                count = max(1, int(limit))
            except (TypeError, ValueError):
                count = 1
            entries = entries[-count:]
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _mirror(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort mirror
            logger.warning("Unable to write event log: %s", exc)


def _clean_metadata(metadata: Mapping[str, object] | None) -> dict[str, object] | None:
    if not metadata:
        return None
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


__all__ = ["EventLog", "EventLogEntry"]
