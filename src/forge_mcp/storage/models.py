"""Durable session record models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..worktree.models import DiffStats


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStatus(str, Enum):
    """Approval status owned by the surrounding application."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ERROR = "error"
    DISMISSED = "dismissed"


class SessionPhase(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting_for_input"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"
    MERGED = "merged"
    REJECTED = "rejected"
    PLANNING = "planning"
    PLAN_READY = "plan_ready"
    EXECUTING = "executing"
    PUSHING = "pushing"
    REVIEWING = "reviewing"
    FIXING = "fixing"


class CodeResult(BaseModel):
    """Work summary gathered from the worktree when a session finalizes."""

    stats: DiffStats = Field(default_factory=DiffStats)
    changed_files: list[str] = Field(default_factory=list)
    commit_log: str = ""
    warning: str | None = None


class SessionRecord(BaseModel):
    record_id: str
    status: RecordStatus = RecordStatus.PENDING
    session_id: str
    task: str
    context: str | None = None
    branch_name: str
    worktree_path: str | None = None
    mode: str = "bidirectional"
    state: SessionPhase = SessionPhase.PENDING
    last_message: str | None = None
    total_turns: int = Field(0, ge=0)
    total_cost_usd: float = Field(0.0, ge=0)
    result: CodeResult | None = None
    error: str | None = None

    autonomous: bool = False
    plan: str | None = None
    plan_approved_at: datetime | None = None
    auto_approve_at: datetime | None = None
    pr_url: str | None = None
    review_round: int = 0
    review_issues: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        """False once the record was dismissed or failed elsewhere; late writes must be dropped."""

        return self.status is RecordStatus.CONFIRMED

    def touch(self, **changes: Any) -> "SessionRecord":
        """Return an updated copy with ``updated_at`` refreshed."""

        changes.setdefault("updated_at", _utcnow())
        return self.model_copy(update=changes)


class RecordEvent(BaseModel):
    """One audit-trail entry for a session record."""

    record_id: str
    event_type: str
    body: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


__all__ = ["CodeResult", "RecordEvent", "RecordStatus", "SessionPhase", "SessionRecord"]
