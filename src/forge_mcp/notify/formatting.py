"""Render session records into chat notification text and action buttons."""

from __future__ import annotations

from dataclasses import dataclass

from ..agent.protocol import truncate
from ..storage.models import SessionPhase, SessionRecord

TASK_PREVIEW_LIMIT = 50
MESSAGE_PREVIEW_LIMIT = 1000
PLAN_PREVIEW_LIMIT = 3000

STATE_LABELS: dict[SessionPhase, tuple[str, str]] = {
    SessionPhase.PENDING: ("⏳", "Pending"),
    SessionPhase.RUNNING: ("🔄", "Running"),
    SessionPhase.WAITING: ("💬", "Needs Response"),
    SessionPhase.COMPLETED: ("✅", "Completed"),
    SessionPhase.ERROR: ("❌", "Failed"),
    SessionPhase.STOPPED: ("⏹", "Stopped"),
    SessionPhase.MERGED: ("🔀", "Merged"),
    SessionPhase.REJECTED: ("🗑", "Rejected"),
    SessionPhase.PLANNING: ("🧠", "Planning"),
    SessionPhase.PLAN_READY: ("📋", "Plan Ready"),
    SessionPhase.EXECUTING: ("🔨", "Executing"),
    SessionPhase.PUSHING: ("⬆️", "Pushing"),
    SessionPhase.REVIEWING: ("🔍", "Reviewing"),
    SessionPhase.FIXING: ("🔧", "Fixing"),
}


@dataclass(frozen=True, slots=True)
class NotificationButton:
    label: str
    action: str
    record_id: str

    @property
    def callback_data(self) -> str:
        return f"code:{self.action}:{self.record_id}"


def format_session_status(record: SessionRecord) -> str:
    emoji, label = STATE_LABELS.get(record.state, ("•", record.state.value))
    lines = [
        f"{emoji} Code Session: {label}",
        f"Task: {truncate(record.task, TASK_PREVIEW_LIMIT)}",
        f"Branch: {record.branch_name}",
    ]
    if record.total_turns or record.total_cost_usd:
        lines.append(f"Turns: {record.total_turns} · Cost: ${record.total_cost_usd:.2f}")

    if record.state is SessionPhase.WAITING and record.last_message:
        lines.extend(["", truncate(record.last_message, MESSAGE_PREVIEW_LIMIT)])
    if record.state is SessionPhase.ERROR and record.error:
        lines.extend(["", f"Error: {record.error}"])

    if record.result is not None:
        lines.append(f"Files changed: {record.result.stats.files_changed}")
        if record.result.warning:
            lines.append(f"Warning: {record.result.warning}")
    if record.pr_url:
        lines.append(f"PR: {record.pr_url}")
    return "\n".join(lines)


def session_actions(record: SessionRecord) -> list[NotificationButton]:
    rid = record.record_id
    if record.state in {
        SessionPhase.RUNNING,
        SessionPhase.WAITING,
        SessionPhase.PLANNING,
        SessionPhase.EXECUTING,
        SessionPhase.REVIEWING,
        SessionPhase.FIXING,
    }:
        return [NotificationButton("Stop", "stop", rid)]
    if record.state is SessionPhase.PLAN_READY:
        return plan_actions(record)
    if record.state is SessionPhase.COMPLETED:
        return [NotificationButton("Resume", "resume", rid), *merge_actions(record)]
    # stopped sessions have no worktree left to resume or merge
    return []


def plan_actions(record: SessionRecord) -> list[NotificationButton]:
    return [
        NotificationButton("Approve Plan", "approve_plan", record.record_id),
        NotificationButton("Stop", "stop", record.record_id),
    ]


def merge_actions(record: SessionRecord) -> list[NotificationButton]:
    return [
        NotificationButton("Approve & Merge", "approve", record.record_id),
        NotificationButton("Reject", "reject", record.record_id),
    ]


def format_plan_ready(record: SessionRecord, auto_approve_minutes: float) -> str:
    plan = truncate(record.plan or "(empty plan)", PLAN_PREVIEW_LIMIT)
    return (
        "📋 Plan ready for review\n"
        f"Task: {truncate(record.task, TASK_PREVIEW_LIMIT)}\n\n"
        f"{plan}\n\n"
        f"Auto-approving in {auto_approve_minutes:g} minutes unless stopped."
    )


def format_progress_milestone(record: SessionRecord, cost_usd: float, turns: int) -> str:
    return (
        f"💰 {truncate(record.task, TASK_PREVIEW_LIMIT)}: "
        f"${cost_usd:.2f} spent after {turns} turns"
    )


def format_review_started(record: SessionRecord, round_number: int, max_rounds: int) -> str:
    return (
        f"🔍 Reviewing changes for {truncate(record.task, TASK_PREVIEW_LIMIT)} "
        f"(round {round_number} of {max_rounds})"
    )


def format_review_result(record: SessionRecord, approved: bool, issues: str | None = None) -> str:
    if approved:
        return f"✅ Review approved: {truncate(record.task, TASK_PREVIEW_LIMIT)}"
    detail = truncate(issues or "(no details)", MESSAGE_PREVIEW_LIMIT)
    return f"🔧 Review found issues in {truncate(record.task, TASK_PREVIEW_LIMIT)}:\n{detail}"


def format_pr_ready(record: SessionRecord) -> str:
    lines = [
        "🚀 Autonomous session complete",
        f"Task: {truncate(record.task, TASK_PREVIEW_LIMIT)}",
        f"Branch: {record.branch_name}",
        f"Turns: {record.total_turns} · Cost: ${record.total_cost_usd:.2f}",
    ]
    if record.pr_url:
        lines.append(f"PR: {record.pr_url}")
    if record.result is not None:
        lines.append(f"Files changed: {record.result.stats.files_changed}")
        if record.result.warning:
            lines.append(f"⚠️ {record.result.warning}")
    return "\n".join(lines)


__all__ = [
    "NotificationButton",
    "STATE_LABELS",
    "format_plan_ready",
    "format_pr_ready",
    "format_progress_milestone",
    "format_review_result",
    "format_review_started",
    "format_session_status",
    "merge_actions",
    "plan_actions",
    "session_actions",
]
