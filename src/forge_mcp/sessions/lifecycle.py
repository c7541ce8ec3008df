"""Interactive session lifecycle: start, converse, finalize, merge or discard."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable

from ..agent.protocol import (
    ExitEvent,
    FailureEvent,
    ProgressEvent,
    SessionResult,
    TurnResultEvent,
)
from ..agent.runner import (
    AgentMode,
    AgentRunner,
    AgentRunnerError,
    AgentSession,
    LaunchSpec,
    SessionInputError,
)
from ..agent.session_log import SessionLog
from ..config import ForgeSettings
from ..notify.formatting import format_session_status, session_actions
from ..notify.notifier import SessionNotifier
from ..prompts.builder import PromptBuilder, new_session_id, slugify_task
from ..storage.base import RecordStore
from ..storage.models import CodeResult, RecordStatus, SessionPhase, SessionRecord
from ..worktree.manager import WorktreeError, WorktreeManager
from .models import (
    InvalidTransitionError,
    RESUMABLE_PHASES,
    SessionError,
    SessionNotFoundError,
    SessionStartError,
    ensure_transition,
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

ProgressListener = Callable[[str, ProgressEvent], None]

_INTERACTIVE_LIVE = frozenset({SessionPhase.RUNNING, SessionPhase.WAITING})


class SessionOrchestrator:
    """Drive interactive agent sessions from start to merge.

    Each started session gets one background task consuming its event stream.
    Result and error writes go through the stale-write guard: once the durable
    record is no longer confirmed, or has moved out of a live phase, late
    events are dropped.
    """

    def __init__(
        self,
        settings: ForgeSettings,
        runner: AgentRunner,
        worktrees: WorktreeManager,
        registry: SessionRegistry,
        store: RecordStore,
        notifier: SessionNotifier | None = None,
        prompts: PromptBuilder | None = None,
        *,
        listener: ProgressListener | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.worktrees = worktrees
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self.prompts = prompts or PromptBuilder(
            mainline=settings.mainline_branch,
            commit_strategy=settings.commit_strategy,
            max_retries=settings.max_retries,
        )
        self.listener = listener
        self._consumers: dict[str, asyncio.Task] = {}

    # Record helpers

    def require(self, record_id: str) -> SessionRecord:
        record = self.store.get(record_id)
        if record is None:
            raise SessionNotFoundError(f"No session record with id {record_id}")
        return record

    def save(self, record: SessionRecord, **changes: Any) -> SessionRecord:
        updated = record.touch(**changes)
        self.store.save(updated)
        return updated

    def audit(self, record_id: str, event_type: str, **body: Any) -> None:
        """Append to the record's audit trail; failures are logged only."""

        try:
            self.store.append_event(record_id, event_type, body)
        except Exception as exc:  # noqa: BLE001 - audit trail is best effort
            logger.warning(
                "Audit event not recorded",
                extra={"record_id": record_id, "event_type": event_type, "error": str(exc)},
            )

    def notify(self, record: SessionRecord) -> None:
        """Fire-and-forget status update for the record's chat message."""

        if self.notifier is None:
            return
        settings = self.settings
        if record.state is SessionPhase.ERROR and not settings.notify_on_error:
            return
        if record.state is SessionPhase.COMPLETED and not settings.notify_on_complete:
            return
        if record.state in {SessionPhase.RUNNING, SessionPhase.WAITING} and not settings.notify_on_progress:
            return
        self.notifier.post_nowait(record.session_id, format_session_status(record), session_actions(record))

    def forward_progress(self, record_id: str, event: ProgressEvent) -> None:
        logger.debug("Session progress", extra={"record_id": record_id, "kind": event.kind})
        if self.listener is None:
            return
        try:
            self.listener(record_id, event)
        except Exception as exc:  # noqa: BLE001 - listeners must not break the stream
            logger.warning("Progress listener failed", extra={"record_id": record_id, "error": str(exc)})

    def session_log(self, session_id: str) -> SessionLog:
        return SessionLog(self.settings.log_dir, session_id)

    async def collect_result(self, record: SessionRecord, warning: str | None = None) -> CodeResult:
        """Gather diff stats, changed files and the commit log from the worktree."""

        path = Path(record.worktree_path or self.worktrees.path_for(record.session_id))
        try:
            stats, files, commit_log = await asyncio.gather(
                self.worktrees.diff_stats(path),
                self.worktrees.changed_files(path),
                self.worktrees.log(path),
            )
        except WorktreeError as exc:
            logger.warning(
                "Could not collect worktree stats",
                extra={"session_id": record.session_id, "error": str(exc)},
            )
            note = f"Could not collect worktree stats: {exc}"
            return CodeResult(warning=f"{warning}; {note}" if warning else note)
        return CodeResult(stats=stats, changed_files=files, commit_log=commit_log, warning=warning)

    # Caller operations

    def create_session(
        self,
        task: str,
        context: str | None = None,
        branch_name: str | None = None,
        *,
        autonomous: bool = False,
    ) -> SessionRecord:
        """Create a pending record; nothing is spawned until the session is started."""

        if not task or not task.strip():
            raise ValueError("task must not be empty")
        session_id = new_session_id()
        branch = branch_name or f"{self.settings.branch_prefix}{slugify_task(task)}-{session_id[:6]}"
        record = SessionRecord(
            record_id=uuid.uuid4().hex,
            session_id=session_id,
            task=task.strip(),
            context=context,
            branch_name=branch,
            worktree_path=str(self.worktrees.path_for(session_id)),
            mode=AgentMode.AUTONOMOUS.value if autonomous else AgentMode.BIDIRECTIONAL.value,
            autonomous=autonomous,
        )
        self.store.save(record)
        self.audit(record.record_id, "created", session_id=session_id, branch=branch)
        logger.info("Created session record", extra={"record_id": record.record_id, "session_id": session_id})
        return record

    def _launch_spec(self, record: SessionRecord, mode: AgentMode, path: Path, *, resume: bool = False) -> LaunchSpec:
        settings = self.settings
        if resume:
            prompt = self.prompts.resume(record.task, record.context, branch_name=record.branch_name)
        else:
            prompt = self.prompts.code(record.task, record.context, branch_name=record.branch_name)
        spec = LaunchSpec(
            session_id=record.session_id,
            task=prompt.task,
            worktree_path=path,
            mode=mode,
            system_prompt=prompt.system,
        )
        if mode is AgentMode.ONE_SHOT:
            spec.max_turns = settings.one_shot_max_turns
            spec.timeout_seconds = settings.one_shot_timeout_seconds
        elif mode is AgentMode.AUTONOMOUS:
            spec.max_cost_usd = settings.max_cost_usd
            spec.max_duration_seconds = settings.max_duration_minutes * 60
        return spec

    async def start_session(self, record_id: str, mode: AgentMode = AgentMode.BIDIRECTIONAL) -> SessionRecord:
        """Create the worktree, spawn the agent and begin consuming its events."""

        record = self.require(record_id)
        ensure_transition(record.state, SessionPhase.RUNNING)
        if record.state is not SessionPhase.PENDING:
            raise InvalidTransitionError(f"Session {record.session_id} was already started; resume it instead")

        self.registry.reserve(record.session_id)
        try:
            info = await self.worktrees.create(record.branch_name, record.session_id)
        except WorktreeError as exc:
            self.registry.release(record.session_id)
            record = self.save(record, status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=str(exc))
            self.notify(record)
            raise SessionStartError(f"Failed to create worktree: {exc}") from exc

        spec = self._launch_spec(record, mode, info.path)
        try:
            handle = await self.runner.start(spec)
        except AgentRunnerError as exc:
            self.registry.release(record.session_id)
            await self.worktrees.cleanup(info.path, info.branch_name)
            record = self.save(record, status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=str(exc))
            self.audit(record_id, "spawn_failed", error=str(exc))
            self.notify(record)
            raise SessionStartError(str(exc)) from exc

        self.registry.attach(record.session_id, handle)
        record = self.save(
            record,
            status=RecordStatus.CONFIRMED,
            state=SessionPhase.RUNNING,
            mode=mode.value,
            worktree_path=str(info.path),
            error=None,
        )
        self.audit(record_id, "started", mode=mode.value, worktree=str(info.path))
        logger.info(
            "Started session",
            extra={"record_id": record_id, "session_id": record.session_id, "mode": mode.value},
        )
        self.notify(record)
        self._consumers[record_id] = asyncio.create_task(
            self._consume(record_id, handle, preserve_worktree=False)
        )
        return record

    async def resume_session(self, record_id: str) -> SessionRecord:
        """Start a fresh bidirectional agent on an existing worktree.

        Prior turn and cost totals carry over; the worktree survives errors so
        the session can be resumed again.
        """

        record = self.require(record_id)
        if record.state not in RESUMABLE_PHASES:
            raise InvalidTransitionError(f"Session in state {record.state.value} cannot be resumed")
        if not self.worktrees.exists(record.session_id):
            raise SessionStartError(f"Worktree for session {record.session_id} no longer exists; cannot resume")

        path = self.worktrees.path_for(record.session_id)
        self.registry.reserve(record.session_id)
        spec = self._launch_spec(record, AgentMode.BIDIRECTIONAL, path, resume=True)
        try:
            handle = await self.runner.start(spec)
        except AgentRunnerError as exc:
            self.registry.release(record.session_id)
            raise SessionStartError(str(exc)) from exc

        self.registry.attach(record.session_id, handle)
        base_turns, base_cost = record.total_turns, record.total_cost_usd
        record = self.save(
            record,
            status=RecordStatus.CONFIRMED,
            state=SessionPhase.RUNNING,
            mode=AgentMode.BIDIRECTIONAL.value,
            error=None,
            result=None,
        )
        self.audit(record_id, "resumed", turns=base_turns, cost_usd=base_cost)
        self.notify(record)
        self._consumers[record_id] = asyncio.create_task(
            self._consume(
                record_id,
                handle,
                preserve_worktree=True,
                base_turns=base_turns,
                base_cost=base_cost,
            )
        )
        return record

    def _live_handle(self, record: SessionRecord) -> AgentSession:
        handle = self.registry.get(record.session_id)
        if handle is None:
            raise SessionError(f"Session {record.session_id} has no running process")
        return handle  # type: ignore[return-value]

    async def send_input(self, record_id: str, message: str) -> SessionRecord:
        if not message or not message.strip():
            raise ValueError("message must not be empty")
        record = self.require(record_id)
        if record.state is not SessionPhase.WAITING:
            raise InvalidTransitionError(
                f"Session is {record.state.value}; input is only accepted while waiting"
            )
        handle = self._live_handle(record)
        # saved first so the reply's waiting state is not overwritten
        record = self.save(record, state=SessionPhase.RUNNING)
        try:
            await handle.send(message)
        except SessionInputError:
            self.save(record, state=SessionPhase.WAITING)
            raise
        self.audit(record_id, "input", length=len(message))
        self.notify(record)
        return record

    def finish_session(self, record_id: str) -> SessionRecord:
        """Close the agent's input; it exits after the current turn and the session finalizes."""

        record = self.require(record_id)
        if record.state not in _INTERACTIVE_LIVE:
            raise InvalidTransitionError(f"Session is {record.state.value}; nothing to finish")
        self._live_handle(record).close_input()
        self.audit(record_id, "finish_requested")
        return record

    async def stop_session(self, record_id: str) -> SessionRecord:
        """Kill the agent and discard its worktree."""

        record = self.require(record_id)
        ensure_transition(record.state, SessionPhase.STOPPED)
        record = self.save(record, state=SessionPhase.STOPPED)
        self.registry.cancel_timer(record.session_id)
        handle = self.registry.release(record.session_id)
        if handle is not None:
            await handle.kill()
        await self.worktrees.cleanup(Path(record.worktree_path or ""), record.branch_name)
        self.audit(record_id, "stopped")
        logger.info("Stopped session", extra={"record_id": record_id, "session_id": record.session_id})
        self.notify(record)
        return record

    async def approve_session(self, record_id: str) -> SessionRecord:
        """Fast-forward the mainline onto the session branch.

        A :class:`MergeConflictError` leaves the record completed so the
        branch can be rebased and approved again.
        """

        record = self.require(record_id)
        ensure_transition(record.state, SessionPhase.MERGED)
        if self.registry.is_active(record.session_id):
            raise SessionError(f"Session {record.session_id} is still running")
        await self.worktrees.merge(Path(record.worktree_path or ""), record.branch_name)
        record = self.save(record, state=SessionPhase.MERGED)
        self.audit(record_id, "merged", branch=record.branch_name)
        self.notify(record)
        return record

    async def reject_session(self, record_id: str) -> SessionRecord:
        record = self.require(record_id)
        ensure_transition(record.state, SessionPhase.REJECTED)
        self.registry.cancel_timer(record.session_id)
        handle = self.registry.release(record.session_id)
        if handle is not None:
            await handle.kill()
        await self.worktrees.cleanup(Path(record.worktree_path or ""), record.branch_name)
        record = self.save(record, state=SessionPhase.REJECTED)
        self.audit(record_id, "rejected")
        self.notify(record)
        return record

    def session_status(self, record_id: str) -> dict[str, Any]:
        record = self.require(record_id)
        payload = record.model_dump(mode="json")
        payload["active"] = self.registry.is_active(record.session_id)
        payload["log_path"] = str(self.session_log(record.session_id).path)
        return payload

    def session_progress(self, record_id: str, after: int = 0) -> dict[str, Any]:
        """Return session log lines after offset ``after`` for incremental polling."""

        record = self.require(record_id)
        lines, total = self.session_log(record.session_id).read_lines(after)
        return {
            "record_id": record_id,
            "session_id": record.session_id,
            "state": record.state.value,
            "active": self.registry.is_active(record.session_id),
            "lines": lines,
            "total": total,
        }

    def list_sessions(self, states: Iterable[SessionPhase] | None = None) -> list[SessionRecord]:
        return self.store.list(states=states)

    async def join(self, record_id: str) -> None:
        """Wait until the session's event consumer has finished."""

        task = self._consumers.get(record_id)
        if task is not None:
            await asyncio.shield(task)

    # Event consumption

    async def _consume(
        self,
        record_id: str,
        handle: AgentSession,
        *,
        preserve_worktree: bool,
        base_turns: int = 0,
        base_cost: float = 0.0,
    ) -> None:
        failure: FailureEvent | None = None
        try:
            async for event in handle.events():
                if isinstance(event, TurnResultEvent):
                    self._on_turn_result(record_id, handle, event.result, base_turns, base_cost)
                elif isinstance(event, FailureEvent):
                    # the process may still be inside its kill grace window
                    failure = event
                    self.audit(record_id, "failure", reason=event.reason.value, message=event.message)
                elif isinstance(event, ExitEvent):
                    if failure is not None:
                        await self._on_failure(record_id, failure, preserve_worktree=preserve_worktree)
                    else:
                        await self.finalize_session(record_id)
                else:
                    self.forward_progress(record_id, event)
        finally:
            if self._consumers.get(record_id) is asyncio.current_task():
                del self._consumers[record_id]

    def _on_turn_result(
        self,
        record_id: str,
        handle: AgentSession,
        result: SessionResult,
        base_turns: int,
        base_cost: float,
    ) -> None:
        record = self.store.get(record_id)
        if record is None or not record.is_active or record.state not in _INTERACTIVE_LIVE:
            logger.info("Dropping result for inactive session", extra={"record_id": record_id})
            return

        total_cost = record.total_cost_usd if result.cost_usd is None else base_cost + result.cost_usd
        state = SessionPhase.WAITING if handle.mode is AgentMode.BIDIRECTIONAL else record.state
        record = self.save(
            record,
            state=state,
            last_message=result.text or record.last_message,
            total_turns=base_turns + result.turns,
            total_cost_usd=total_cost,
        )
        self.audit(record_id, "turn_result", turns=result.turns, cost_usd=result.cost_usd)
        self.notify(record)

    async def _on_failure(self, record_id: str, event: FailureEvent, *, preserve_worktree: bool) -> None:
        """Settle a failed session once its process has exited."""

        record = self.store.get(record_id)
        if record is None:
            return
        self.registry.release(record.session_id)
        logger.warning(
            "Session failed",
            extra={"record_id": record_id, "reason": event.reason.value, "error": event.message},
        )

        if not record.is_active or record.state not in _INTERACTIVE_LIVE:
            return
        if preserve_worktree:
            record = self.save(record, state=SessionPhase.ERROR, error=event.message)
        else:
            await self.worktrees.cleanup(Path(record.worktree_path or ""), record.branch_name)
            record = self.save(
                record, status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=event.message
            )
        self.notify(record)

    async def finalize_session(self, record_id: str) -> SessionRecord | None:
        """Record the worktree's final state once the agent has exited."""

        record = self.store.get(record_id)
        if record is None:
            return None
        self.registry.release(record.session_id)
        if not record.is_active or record.state not in _INTERACTIVE_LIVE:
            logger.info(
                "Skipping finalization of inactive session",
                extra={"record_id": record_id, "state": record.state.value},
            )
            return record

        result = await self.collect_result(record)
        record = self.require(record_id)
        if not record.is_active or record.state not in _INTERACTIVE_LIVE:
            return record
        record = self.save(record, state=SessionPhase.COMPLETED, result=result)
        self.audit(
            record_id,
            "finalized",
            files_changed=result.stats.files_changed,
            insertions=result.stats.insertions,
            deletions=result.stats.deletions,
        )
        logger.info(
            "Session completed",
            extra={"record_id": record_id, "files_changed": result.stats.files_changed},
        )
        self.notify(record)
        return record


__all__ = ["ProgressListener", "SessionOrchestrator"]
