"""Zombie session reconciliation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..notify.formatting import format_session_status, session_actions
from ..notify.notifier import SessionNotifier
from ..storage.base import RecordStore
from ..storage.models import CodeResult, RecordStatus, SessionPhase
from ..worktree.manager import WorktreeError, WorktreeManager
from .models import ACTIVE_PHASES, SessionNotFoundError
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

UNRECOVERABLE_MESSAGE = (
    "Session process is gone and its worktree no longer exists; no work could be recovered"
)
RECOVERED_MESSAGE = "Session process ended while the orchestrator was not watching; partial work recovered"


class ReconcileOutcome(str, Enum):
    ACTIVE = "active"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class ReconcileReport:
    record_id: str
    session_id: str
    outcome: ReconcileOutcome


class SessionReconciler:
    """Settle records that claim a live process the registry does not know about."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: RecordStore,
        worktrees: WorktreeManager,
        notifier: SessionNotifier | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._worktrees = worktrees
        self._notifier = notifier

    async def reconcile(self, record_id: str) -> ReconcileOutcome:
        record = self._store.get(record_id)
        if record is None:
            raise SessionNotFoundError(f"No session record with id {record_id}")
        if record.state not in ACTIVE_PHASES:
            return ReconcileOutcome.SKIPPED
        if self._registry.is_active(record.session_id):
            return ReconcileOutcome.ACTIVE

        if not self._worktrees.exists(record.session_id):
            record = record.touch(status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=UNRECOVERABLE_MESSAGE)
            outcome = ReconcileOutcome.ERROR
        else:
            path = Path(record.worktree_path or self._worktrees.path_for(record.session_id))
            try:
                result = CodeResult(
                    stats=await self._worktrees.diff_stats(path),
                    changed_files=await self._worktrees.changed_files(path),
                    commit_log=await self._worktrees.log(path),
                )
            except WorktreeError as exc:
                record = record.touch(
                    status=RecordStatus.ERROR,
                    state=SessionPhase.ERROR,
                    error=f"Worktree exists but could not be inspected: {exc}",
                )
                outcome = ReconcileOutcome.ERROR
            else:
                record = record.touch(
                    state=SessionPhase.COMPLETED,
                    result=result,
                    last_message=record.last_message or RECOVERED_MESSAGE,
                )
                outcome = ReconcileOutcome.COMPLETED

        self._store.save(record)
        logger.info(
            "Reconciled zombie session",
            extra={"record_id": record_id, "session_id": record.session_id, "outcome": outcome.value},
        )
        if self._notifier is not None:
            self._notifier.post_nowait(record.session_id, format_session_status(record), session_actions(record))
        return outcome

    async def reconcile_all(self) -> list[ReconcileReport]:
        reports: list[ReconcileReport] = []
        for record in self._store.list(states=ACTIVE_PHASES):
            outcome = await self.reconcile(record.record_id)
            reports.append(ReconcileReport(record.record_id, record.session_id, outcome))
        return reports


__all__ = ["ReconcileOutcome", "ReconcileReport", "SessionReconciler"]
