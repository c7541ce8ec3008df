"""Storage abstractions for Forge MCP."""

from .base import InMemoryRecordStore, RecordStore
from .chroma import ChromaEvent, ChromaRecordStore, ChromaUnavailableError
from .models import CodeResult, RecordEvent, RecordStatus, SessionPhase, SessionRecord

__all__ = [
    "ChromaEvent",
    "ChromaRecordStore",
    "ChromaUnavailableError",
    "CodeResult",
    "InMemoryRecordStore",
    "RecordEvent",
    "RecordStatus",
    "RecordStore",
    "SessionPhase",
    "SessionRecord",
]
