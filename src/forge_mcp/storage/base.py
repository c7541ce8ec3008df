"""Record store interface and the in-memory implementation."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

from .models import RecordEvent, SessionPhase, SessionRecord


class RecordStore(Protocol):
    """Durable approval record owned by the surrounding application."""

    def get(self, record_id: str) -> SessionRecord | None:
        ...

    def save(self, record: SessionRecord) -> SessionRecord:
        ...

    def list(self, *, states: Iterable[SessionPhase] | None = None) -> list[SessionRecord]:
        ...

    def append_event(self, record_id: str, event_type: str, body: dict[str, Any] | None = None) -> RecordEvent:
        ...

    def events(self, record_id: str) -> list[RecordEvent]:
        ...


class InMemoryRecordStore:
    """Process-local record store; copies on every read and write."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._records: dict[str, SessionRecord] = {}
        self._events: dict[str, list[RecordEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def get(self, record_id: str) -> SessionRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def save(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            self._records[record.record_id] = record.model_copy(deep=True)
        return record

    def list(self, *, states: Iterable[SessionPhase] | None = None) -> list[SessionRecord]:
        wanted = set(states) if states is not None else None
        with self._lock:
            records = [record.model_copy(deep=True) for record in self._records.values()]
        if wanted is not None:
            records = [record for record in records if record.state in wanted]
        return sorted(records, key=lambda record: record.created_at)

    def append_event(self, record_id: str, event_type: str, body: dict[str, Any] | None = None) -> RecordEvent:
        event = RecordEvent(record_id=record_id, event_type=event_type, body=body or {}, timestamp=self._clock())
        with self._lock:
            self._events[record_id].append(event)
        return event

    def events(self, record_id: str) -> list[RecordEvent]:
        with self._lock:
            return list(self._events.get(record_id, []))


__all__ = ["InMemoryRecordStore", "RecordStore"]
