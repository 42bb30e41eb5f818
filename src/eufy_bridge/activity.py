"""In-memory record of notable bridge activity."""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Deque


@dataclass(slots=True)
class ActivityEntry:
    """A single noteworthy event, kept for the ``/api/logs`` endpoint."""

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


class ActivityLog:
    """Bounded ring buffer of :class:`ActivityEntry` items.

    Entries live for the process lifetime only.
    """

    def __init__(self, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[ActivityEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> ActivityEntry:
        cleaned = {k: v for k, v in (metadata or {}).items() if v is not None}
        entry = ActivityEntry(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        self._entries.append(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[ActivityEntry]:
        """Return the most recent entries, oldest first."""

        entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries


__all__ = ["ActivityEntry", "ActivityLog"]
