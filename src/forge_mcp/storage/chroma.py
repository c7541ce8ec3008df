"""Chroma-backed record store and session audit trail."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

from .models import RecordEvent, SessionPhase, SessionRecord

SNAPSHOT_EVENT = "record_snapshot"
AUDIT_PREFIX = "audit::"

Scalar = str | int | float | bool


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class EventCollection(Protocol):
    """The two collection calls Forge relies on; anything else is unused."""

    def add(self, *, documents: list[str], metadatas: list[dict[str, Scalar]], ids: list[str]) -> None:
        ...

    def get(
        self,
        *,
        ids: list[str] | None = None,
        where: dict[str, Scalar] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class EventClient(Protocol):
    def get_or_create_collection(self, name: str) -> EventCollection:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One row of the collection, decoded."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def sequence(self) -> int:
        return int(self.metadata.get("sequence", 0))

    def matches(self, needle: str) -> bool:
        if needle in self.document.lower():
            return True
        return any(needle in str(value).lower() for value in self.metadata.values())

    def as_record_event(self, record_id: str) -> RecordEvent:
        return RecordEvent(
            record_id=record_id,
            event_type=self.event_type,
            body=json.loads(self.document),
            timestamp=self.timestamp,
        )


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Scalar]:
    # Chroma rejects None and nested values in metadata.
    return {
        key: value if isinstance(value, (str, int, float, bool)) else str(value)
        for key, value in metadata.items()
        if value is not None
    }


class ChromaRecordStore:
    """Persist session record snapshots and audit events in a Chroma collection.

    Records are append-only: every ``save`` adds a snapshot and reads return
    the most recent one per record id.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "forge_sessions",
        client_factory: Callable[[], EventClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: EventCollection | None = None
        self._sequences: dict[str, int] = defaultdict(int)

    def _persistent_client(self) -> EventClient:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install forge-mcp with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    @property
    def collection(self) -> EventCollection:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        return self.collection is not None

    def _rows(self, result: dict[str, list[Any]]) -> Iterator[ChromaEvent]:
        for event_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            stamp = metadata.get("timestamp")
            yield ChromaEvent(
                id=event_id,
                session_id=metadata.get("session_id", ""),
                event_type=metadata.get("event_type", ""),
                document=document,
                metadata=metadata,
                timestamp=datetime.fromisoformat(stamp) if isinstance(stamp, str) else self._clock(),
            )

    def _query(self, where: dict[str, Scalar] | None = None, limit: int | None = None) -> list[ChromaEvent]:
        events = list(self._rows(self.collection.get(where=where, limit=limit)))
        return sorted(events, key=lambda event: (event.timestamp, event.sequence))

    # Event log

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        self._sequences[session_id] += 1
        timestamp = self._clock()
        document = body if isinstance(body, str) else json.dumps(body, default=str)
        row_metadata = _scalar_metadata(
            {
                "session_id": session_id,
                "event_type": event_type,
                "timestamp": timestamp.isoformat(),
                "sequence": self._sequences[session_id],
                **(metadata or {}),
            }
        )
        event = ChromaEvent(
            id=f"{session_id}:{uuid.uuid4().hex}",
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=row_metadata,
            timestamp=timestamp,
        )
        self.collection.add(documents=[document], metadatas=[row_metadata], ids=[event.id])
        return event

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self._query({"session_id": session_id}, limit)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        events = self._query(filters, limit)
        if query:
            needle = query.lower()
            events = [event for event in events if event.matches(needle)]
        return events[:limit] if limit else events

    # RecordStore interface

    def _latest_snapshots(self, where: dict[str, Scalar]) -> dict[str, ChromaEvent]:
        latest: dict[str, ChromaEvent] = {}
        for event in self._query(where):
            record_id = event.metadata.get("record_id")
            if event.event_type == SNAPSHOT_EVENT and record_id:
                latest[record_id] = event
        return latest

    def get(self, record_id: str) -> SessionRecord | None:
        snapshot = self._latest_snapshots({"record_id": record_id}).get(record_id)
        return SessionRecord.model_validate_json(snapshot.document) if snapshot else None

    def save(self, record: SessionRecord) -> SessionRecord:
        self.record_event(
            session_id=record.session_id,
            event_type=SNAPSHOT_EVENT,
            body=record.model_dump_json(),
            metadata={
                "record_id": record.record_id,
                "status": record.status.value,
                "state": record.state.value,
                "branch": record.branch_name,
            },
        )
        return record

    def list(self, *, states: Iterable[SessionPhase] | None = None) -> list[SessionRecord]:
        wanted = set(states) if states is not None else None
        records = [
            SessionRecord.model_validate_json(event.document)
            for event in self._latest_snapshots({"event_type": SNAPSHOT_EVENT}).values()
        ]
        if wanted is not None:
            records = [record for record in records if record.state in wanted]
        return sorted(records, key=lambda record: record.created_at)

    def append_event(self, record_id: str, event_type: str, body: dict[str, Any] | None = None) -> RecordEvent:
        event = self.record_event(
            session_id=f"{AUDIT_PREFIX}{record_id}",
            event_type=event_type,
            body=body or {},
            metadata={"record_id": record_id},
        )
        return event.as_record_event(record_id)

    def events(self, record_id: str) -> list[RecordEvent]:
        return [
            event.as_record_event(record_id)
            for event in self.fetch_session_events(f"{AUDIT_PREFIX}{record_id}")
        ]


__all__ = ["ChromaEvent", "ChromaRecordStore", "ChromaUnavailableError", "SNAPSHOT_EVENT"]
