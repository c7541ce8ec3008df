"""Hands-off flow: plan, execute, push, self-review and fix."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

from ..agent.protocol import FailureEvent, SessionResult, TurnResultEvent
from ..agent.runner import AgentMode, AgentRunnerError, LaunchSpec
from ..notify.formatting import (
    format_plan_ready,
    format_pr_ready,
    format_progress_milestone,
    format_review_result,
    format_review_started,
    merge_actions,
    plan_actions,
)
from ..prompts.builder import RenderedPrompt
from ..storage.models import RecordStatus, SessionPhase, SessionRecord
from ..worktree.manager import WorktreeError
from .lifecycle import SessionOrchestrator
from .models import ACTIVE_PHASES, InvalidTransitionError, SessionError, SessionStartError, ensure_transition

logger = logging.getLogger(__name__)

PR_URL_RE = re.compile(r"https://github\.com/[^\s)]+/pull/\d+")
ISSUES_RE = re.compile(r"ISSUES FOUND:([\s\S]*)")

_FINALIZABLE = frozenset({SessionPhase.PUSHING, SessionPhase.REVIEWING, SessionPhase.FIXING})


def extract_pr_url(text: str | None) -> str | None:
    match = PR_URL_RE.search(text or "")
    return match.group(0) if match else None


def parse_review(text: str) -> tuple[bool, str | None]:
    """Return ``(approved, issues)`` from a review session's final message."""

    approved = "APPROVED" in text and "ISSUES FOUND" not in text
    match = ISSUES_RE.search(text)
    issues = match.group(1).strip() if match else None
    return approved, issues or None


@dataclass(slots=True)
class PhaseOutcome:
    text: str = ""
    turns: int = 0
    cost_usd: float | None = None
    error: str | None = None


class AutonomousFlow:
    """Compose autonomous agent runs into the planning-to-review pipeline.

    Every phase runs in the same worktree. The registry keeps the session id
    reserved from phase to phase, except while a plan waits for approval.
    """

    def __init__(self, orchestrator: SessionOrchestrator) -> None:
        self._orch = orchestrator
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def settings(self):
        return self._orch.settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _launch(self, record_id: str, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(self._guard(record_id, coro))
        self._tasks[record_id] = task
        return task

    async def _guard(self, record_id: str, coro: Awaitable[None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a crashed phase must still settle the record
            logger.exception("Autonomous flow crashed", extra={"record_id": record_id})
            record = self._orch.store.get(record_id)
            if record is not None and record.is_active and record.state in ACTIVE_PHASES:
                await self._fail(record, f"Autonomous flow crashed: {exc}")

    async def join(self, record_id: str) -> None:
        """Wait for the flow's current background task."""

        task = self._tasks.get(record_id)
        if task is not None:
            await asyncio.shield(task)

    def _current(self, record_id: str, expected: SessionPhase) -> SessionRecord | None:
        """Return the record if the flow still owns it in ``expected``; None once stopped or dismissed."""

        record = self._orch.store.get(record_id)
        if record is None or not record.is_active or record.state is not expected:
            logger.info(
                "Autonomous phase abandoned",
                extra={
                    "record_id": record_id,
                    "expected": expected.value,
                    "state": record.state.value if record else None,
                },
            )
            return None
        return record

    def _totals(self, record: SessionRecord, outcome: PhaseOutcome) -> dict[str, float | int]:
        return {
            "total_turns": record.total_turns + outcome.turns,
            "total_cost_usd": record.total_cost_usd + (outcome.cost_usd or 0.0),
        }

    async def _run_phase(
        self,
        record: SessionRecord,
        *,
        suffix: str,
        prompt: RenderedPrompt,
        max_cost_usd: float,
        max_minutes: float,
        on_turn: Callable[[SessionResult], None] | None = None,
    ) -> PhaseOutcome:
        orch = self._orch
        session_id = f"{record.session_id}-{suffix}" if suffix else record.session_id
        spec = LaunchSpec(
            session_id=session_id,
            task=prompt.task,
            worktree_path=Path(record.worktree_path or orch.worktrees.path_for(record.session_id)),
            mode=AgentMode.AUTONOMOUS,
            system_prompt=prompt.system,
            max_cost_usd=max_cost_usd,
            max_duration_seconds=max_minutes * 60,
        )
        try:
            handle = await orch.runner.start(spec)
        except AgentRunnerError as exc:
            return PhaseOutcome(error=str(exc))

        if orch.registry.is_active(record.session_id):
            orch.registry.attach(record.session_id, handle)
        else:
            # stopped while spawning
            await handle.kill()

        outcome = PhaseOutcome()
        async for event in handle.events():
            if isinstance(event, TurnResultEvent):
                result = event.result
                outcome.text = result.text or outcome.text
                outcome.turns = result.turns
                if result.cost_usd is not None:
                    outcome.cost_usd = result.cost_usd
                if on_turn is not None:
                    on_turn(result)
            elif isinstance(event, FailureEvent):
                outcome.error = event.message
            elif event.kind != "exit":
                orch.forward_progress(record.record_id, event)
        orch.registry.detach(record.session_id)
        orch.audit(
            record.record_id,
            f"phase:{suffix or 'execute'}",
            turns=outcome.turns,
            cost_usd=outcome.cost_usd,
            error=outcome.error,
        )
        return outcome

    async def _fail(self, record: SessionRecord, message: str) -> None:
        orch = self._orch
        orch.registry.cancel_timer(record.session_id)
        orch.registry.release(record.session_id)
        await orch.worktrees.cleanup(Path(record.worktree_path or ""), record.branch_name)
        record = orch.save(record, status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=message)
        logger.warning("Autonomous session failed", extra={"record_id": record.record_id, "error": message})
        orch.notify(record)

    def _post(self, text: str, actions=()) -> None:
        if self._orch.notifier is not None:
            self._orch.notifier.post_nowait(None, text, actions)

    # Phases

    async def start(self, task: str, context: str | None = None, branch_name: str | None = None) -> SessionRecord:
        """Create the record and worktree, then plan in the background."""

        orch = self._orch
        record = orch.create_session(task, context, branch_name, autonomous=True)
        ensure_transition(record.state, SessionPhase.PLANNING)
        orch.registry.reserve(record.session_id, hold=True)
        try:
            info = await orch.worktrees.create(record.branch_name, record.session_id)
        except WorktreeError as exc:
            orch.registry.release(record.session_id)
            record = orch.save(record, status=RecordStatus.ERROR, state=SessionPhase.ERROR, error=str(exc))
            orch.notify(record)
            raise SessionStartError(f"Failed to create worktree: {exc}") from exc

        record = orch.save(
            record,
            status=RecordStatus.CONFIRMED,
            state=SessionPhase.PLANNING,
            worktree_path=str(info.path),
        )
        orch.audit(record.record_id, "autonomous_started", worktree=str(info.path))
        orch.notify(record)
        self._launch(record.record_id, self.plan(record.record_id))
        return record

    async def plan(self, record_id: str) -> None:
        record = self._current(record_id, SessionPhase.PLANNING)
        if record is None:
            return
        settings = self.settings
        outcome = await self._run_phase(
            record,
            suffix="plan",
            prompt=self._orch.prompts.planning(record.task, record.context),
            max_cost_usd=settings.max_planning_cost_usd,
            max_minutes=settings.planning_max_minutes,
        )
        record = self._current(record_id, SessionPhase.PLANNING)
        if record is None:
            return
        if outcome.error or not outcome.text.strip():
            await self._fail(record, f"Planning failed: {outcome.error or 'no plan was produced'}")
            return

        auto_approve_at = self._now() + timedelta(minutes=settings.auto_approve_minutes)
        record = self._orch.save(
            record,
            state=SessionPhase.PLAN_READY,
            plan=outcome.text.strip(),
            auto_approve_at=auto_approve_at,
            last_message=outcome.text.strip(),
            **self._totals(record, outcome),
        )
        self._orch.registry.release(record.session_id)
        self._orch.registry.schedule(
            record.session_id,
            settings.auto_approve_minutes * 60,
            lambda: self._auto_approve(record_id),
        )
        logger.info("Plan ready", extra={"record_id": record_id, "auto_approve_at": auto_approve_at.isoformat()})
        self._orch.notify(record)
        if settings.notify_on_plan_ready:
            self._post(format_plan_ready(record, settings.auto_approve_minutes), plan_actions(record))

    async def _auto_approve(self, record_id: str) -> None:
        record = self._orch.store.get(record_id)
        if record is None or not record.is_active or record.state is not SessionPhase.PLAN_READY:
            return
        logger.info("Auto-approving plan", extra={"record_id": record_id})
        try:
            await self.approve_plan(record_id)
        except SessionError as exc:
            logger.warning("Auto-approval failed", extra={"record_id": record_id, "error": str(exc)})

    async def approve_plan(self, record_id: str) -> SessionRecord:
        """Approve the plan now, cancelling the auto-approval timer, and start execution."""

        orch = self._orch
        record = orch.require(record_id)
        if record.state is not SessionPhase.PLAN_READY or not record.is_active:
            raise InvalidTransitionError(f"Session is {record.state.value}; there is no plan awaiting approval")
        orch.registry.cancel_timer(record.session_id)
        orch.registry.reserve(record.session_id, hold=True)
        record = orch.save(record, state=SessionPhase.EXECUTING, plan_approved_at=self._now())
        orch.audit(record_id, "plan_approved")
        orch.notify(record)
        self._launch(record_id, self.execute_plan(record_id))
        return record

    async def execute_plan(self, record_id: str) -> None:
        record = self._current(record_id, SessionPhase.EXECUTING)
        if record is None:
            return
        settings = self.settings
        base_cost = record.total_cost_usd
        next_milestone = [math.floor(base_cost) + 1]

        def _milestones(result: SessionResult) -> None:
            if result.cost_usd is None or not settings.notify_on_progress:
                return
            spent = base_cost + result.cost_usd
            if spent >= next_milestone[0]:
                next_milestone[0] = math.floor(spent) + 1
                self._post(format_progress_milestone(record, spent, result.turns))

        outcome = await self._run_phase(
            record,
            suffix="",
            prompt=self._orch.prompts.execution(record.task, record.plan or "", branch_name=record.branch_name),
            max_cost_usd=settings.max_cost_usd,
            max_minutes=settings.max_duration_minutes,
            on_turn=_milestones,
        )
        record = self._current(record_id, SessionPhase.EXECUTING)
        if record is None:
            return
        if outcome.error:
            await self._fail(record, outcome.error)
            return
        record = self._orch.save(
            record,
            state=SessionPhase.PUSHING,
            last_message=outcome.text or record.last_message,
            **self._totals(record, outcome),
        )
        await self.push(record_id)

    async def push(self, record_id: str) -> None:
        record = self._current(record_id, SessionPhase.PUSHING)
        if record is None:
            return
        await self._orch.worktrees.push(Path(record.worktree_path or ""), record.branch_name)
        record = self._orch.save(
            record,
            state=SessionPhase.REVIEWING,
            pr_url=extract_pr_url(record.last_message) or record.pr_url,
            review_round=record.review_round + 1,
        )
        await self.review(record_id)

    async def review(self, record_id: str) -> None:
        record = self._current(record_id, SessionPhase.REVIEWING)
        if record is None:
            return
        settings = self.settings
        round_number = record.review_round
        if settings.notify_on_progress:
            self._post(format_review_started(record, round_number, settings.review_max_rounds))

        diff = await self._orch.worktrees.diff(Path(record.worktree_path or ""))
        outcome = await self._run_phase(
            record,
            suffix=f"review-{round_number}",
            prompt=self._orch.prompts.review(record.task, record.plan or "", diff),
            max_cost_usd=settings.max_planning_cost_usd,
            max_minutes=settings.review_max_minutes,
        )
        record = self._current(record_id, SessionPhase.REVIEWING)
        if record is None:
            return
        record = self._orch.save(record, **self._totals(record, outcome))
        if outcome.error:
            await self.finalize(record_id, warning=f"Review session failed: {outcome.error}")
            return

        approved, issues = parse_review(outcome.text)
        if settings.notify_on_progress and (approved or issues):
            self._post(format_review_result(record, approved, issues))
        if approved:
            await self.finalize(record_id)
        elif issues and round_number < settings.review_max_rounds:
            self._orch.save(record, state=SessionPhase.FIXING, review_issues=issues)
            await self.fix(record_id)
        else:
            warning = None
            if round_number >= settings.review_max_rounds:
                warning = f"Review had unresolved issues after {settings.review_max_rounds} rounds"
            await self.finalize(record_id, warning=warning)

    async def fix(self, record_id: str) -> None:
        record = self._current(record_id, SessionPhase.FIXING)
        if record is None:
            return
        settings = self.settings
        outcome = await self._run_phase(
            record,
            suffix=f"fix-{record.review_round}",
            prompt=self._orch.prompts.fix(record.task, record.review_issues or "", branch_name=record.branch_name),
            max_cost_usd=settings.max_cost_usd,
            max_minutes=settings.max_duration_minutes,
        )
        record = self._current(record_id, SessionPhase.FIXING)
        if record is None:
            return
        if outcome.error:
            self._orch.save(record, **self._totals(record, outcome))
            await self.finalize(record_id, warning="Fix session failed")
            return
        self._orch.save(record, state=SessionPhase.PUSHING, **self._totals(record, outcome))
        await self.push(record_id)

    async def finalize(self, record_id: str, warning: str | None = None) -> SessionRecord | None:
        orch = self._orch
        record = orch.store.get(record_id)
        if record is None:
            return None
        orch.registry.release(record.session_id)
        if not record.is_active or record.state not in _FINALIZABLE:
            return record

        result = await orch.collect_result(record, warning=warning)
        record = orch.save(record, state=SessionPhase.COMPLETED, result=result)
        orch.audit(record_id, "finalized", files_changed=result.stats.files_changed, warning=warning)
        logger.info(
            "Autonomous session completed",
            extra={"record_id": record_id, "pr_url": record.pr_url, "warning": warning},
        )
        orch.notify(record)
        if self.settings.notify_on_complete:
            self._post(format_pr_ready(record), merge_actions(record))
        return record


__all__ = ["AutonomousFlow", "PhaseOutcome", "extract_pr_url", "parse_review"]
