"""Tool registration for Forge MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..agent.runner import AgentMode
from ..config import ForgeSettings
from ..sessions import AutonomousFlow, SessionOrchestrator, SessionReconciler
from ..storage.models import SessionPhase, SessionRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    start_session: Any
    respond: Any
    finish_session: Any
    stop_session: Any
    resume_session: Any
    approve_session: Any
    reject_session: Any
    session_status: Any
    session_progress: Any
    list_sessions: Any
    start_autonomous: Any
    approve_plan: Any
    reconcile_sessions: Any


def _summary(record: SessionRecord) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "record_id": record.record_id,
        "session_id": record.session_id,
        "task": record.task,
        "branch": record.branch_name,
        "mode": record.mode,
        "state": record.state.value,
        "status": record.status.value,
        "total_turns": record.total_turns,
        "total_cost_usd": round(record.total_cost_usd, 4),
    }
    if record.error:
        summary["error"] = record.error
    if record.pr_url:
        summary["pr_url"] = record.pr_url
    if record.result is not None:
        summary["files_changed"] = record.result.stats.files_changed
    return summary


def register_tools(
    server: FastMCP,
    *,
    settings: ForgeSettings,
    orchestrator: SessionOrchestrator | None,
    autonomous: AutonomousFlow | None,
    reconciler: SessionReconciler,
) -> ToolHandles:
    """Register Forge's MCP tools on the server."""

    def _require_orchestrator() -> SessionOrchestrator:
        if orchestrator is None:
            raise RuntimeError("Agent runner is unavailable; install the agent CLI or set FORGE_AGENT_PATH")
        return orchestrator

    def _require_autonomous() -> AutonomousFlow:
        if autonomous is None:
            raise RuntimeError("Agent runner is unavailable; install the agent CLI or set FORGE_AGENT_PATH")
        return autonomous

    def _create_session(
        task: str,
        context_notes: str | None = None,
        branch_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a pending coding session record."""

        record = _require_orchestrator().create_session(task, context_notes, branch_name)
        _emit_log(
            context,
            "info",
            "Created code session",
            extra={"record_id": record.record_id, "branch": record.branch_name},
        )
        return _summary(record)

    async def _start_session(
        record_id: str,
        mode: Literal["bidirectional", "one_shot", "autonomous"] = "bidirectional",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create the worktree and spawn the agent for a pending session."""

        record = await _require_orchestrator().start_session(record_id, AgentMode(mode))
        _emit_log(
            context,
            "info",
            "Started code session",
            extra={"record_id": record_id, "session_id": record.session_id, "mode": mode},
        )
        return _summary(record)

    async def _respond(record_id: str, message: str, context: Context | None = None) -> dict[str, Any]:
        """Send a follow-up message to a session waiting for input."""

        record = await _require_orchestrator().send_input(record_id, message)
        _emit_log(context, "debug", "Sent session input", extra={"record_id": record_id})
        return _summary(record)

    def _finish_session(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Close the agent's input so it exits after its current turn."""

        record = _require_orchestrator().finish_session(record_id)
        _emit_log(context, "info", "Finishing code session", extra={"record_id": record_id})
        return _summary(record)

    async def _stop_session(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Kill the agent and discard the session's worktree."""

        record = await _require_orchestrator().stop_session(record_id)
        _emit_log(context, "info", "Stopped code session", extra={"record_id": record_id})
        return _summary(record)

    async def _resume_session(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Restart an agent on the session's surviving worktree."""

        record = await _require_orchestrator().resume_session(record_id)
        _emit_log(context, "info", "Resumed code session", extra={"record_id": record_id})
        return _summary(record)

    async def _approve_session(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Fast-forward the mainline onto the session branch and remove the worktree."""

        record = await _require_orchestrator().approve_session(record_id)
        _emit_log(
            context,
            "info",
            "Merged code session",
            extra={"record_id": record_id, "branch": record.branch_name},
        )
        return _summary(record)

    async def _reject_session(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Discard the session's branch and worktree."""

        record = await _require_orchestrator().reject_session(record_id)
        _emit_log(context, "info", "Rejected code session", extra={"record_id": record_id})
        return _summary(record)

    def _session_status(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the full durable record for a session."""

        status = _require_orchestrator().session_status(record_id)
        _emit_log(context, "debug", "Fetched session status", extra={"record_id": record_id})
        return status

    def _session_progress(record_id: str, after: int = 0, context: Context | None = None) -> dict[str, Any]:
        """Return session log lines after offset ``after``."""

        if after < 0:
            raise ValueError("after must be >= 0")
        progress = _require_orchestrator().session_progress(record_id, after)
        _emit_log(
            context,
            "debug",
            "Fetched session progress",
            extra={"record_id": record_id, "total": progress["total"]},
        )
        return progress

    def _list_sessions(
        states: list[str] | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List session records, optionally filtered by state."""

        wanted = None
        if states:
            try:
                wanted = [SessionPhase(state) for state in states]
            except ValueError as exc:
                raise ValueError(f"Unknown session state: {exc}") from exc
        records = _require_orchestrator().list_sessions(wanted)
        _emit_log(context, "debug", "Listing code sessions", extra={"count": len(records)})
        return [_summary(record) for record in records]

    async def _start_autonomous(
        task: str,
        context_notes: str | None = None,
        branch_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Plan, execute, push and self-review a change without supervision."""

        record = await _require_autonomous().start(task, context_notes, branch_name)
        _emit_log(
            context,
            "info",
            "Started autonomous session",
            extra={
                "record_id": record.record_id,
                "auto_approve_minutes": settings.auto_approve_minutes,
            },
        )
        return _summary(record)

    async def _approve_plan(record_id: str, context: Context | None = None) -> dict[str, Any]:
        """Approve a ready plan now instead of waiting for auto-approval."""

        record = await _require_autonomous().approve_plan(record_id)
        _emit_log(context, "info", "Approved plan", extra={"record_id": record_id})
        return _summary(record)

    async def _reconcile_sessions(context: Context | None = None) -> list[dict[str, Any]]:
        """Settle records that claim a running session the server is not tracking."""

        reports = await reconciler.reconcile_all()
        _emit_log(context, "info", "Reconciled sessions", extra={"count": len(reports)})
        return [
            {"record_id": report.record_id, "session_id": report.session_id, "outcome": report.outcome.value}
            for report in reports
        ]

    tool_create = server.tool(
        name="create_session",
        description="Create a pending coding session for a task. Returns the record id used by every other tool.",
    )(_create_session)

    tool_start = server.tool(
        name="start_session",
        description=(
            "Start a pending session: creates an isolated git worktree on a new branch and "
            "spawns the coding agent in bidirectional, one_shot or autonomous mode."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Autonomous mode runs the agent without a tool allowlist",
            }
        },
    )(_start_session)

    tool_respond = server.tool(
        name="respond",
        description="Send a follow-up message to a session that is waiting for input.",
    )(_respond)

    tool_finish = server.tool(
        name="finish_session",
        description="End a conversation; the agent exits after its current turn and the session completes.",
    )(_finish_session)

    tool_stop = server.tool(
        name="stop_session",
        description="Kill a running session and delete its worktree and branch.",
    )(_stop_session)

    tool_resume = server.tool(
        name="resume_session",
        description="Start a new agent on a completed or failed session's existing worktree.",
    )(_resume_session)

    tool_approve = server.tool(
        name="approve_session",
        description="Fast-forward merge a completed session's branch into the mainline. Fails if a rebase is needed.",
        annotations={"safety": {"level": "caution", "notes": "Updates the mainline branch"}},
    )(_approve_session)

    tool_reject = server.tool(
        name="reject_session",
        description="Discard a session's branch and worktree.",
    )(_reject_session)

    tool_status = server.tool(
        name="session_status",
        description="Fetch the durable record of a session, including diff stats once completed.",
    )(_session_status)

    tool_progress = server.tool(
        name="session_progress",
        description="Read a session's log lines after an offset, for incremental progress polling.",
    )(_session_progress)

    tool_list = server.tool(
        name="list_sessions",
        description="List coding sessions, optionally filtered by state.",
    )(_list_sessions)

    tool_autonomous = server.tool(
        name="start_autonomous",
        description=(
            "Run a hands-off session: plan, auto-approve after a timeout, execute, push, "
            "self-review and fix."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The agent runs with unrestricted local permissions inside its worktree",
            }
        },
    )(_start_autonomous)

    tool_approve_plan = server.tool(
        name="approve_plan",
        description="Approve an autonomous session's plan immediately.",
    )(_approve_plan)

    tool_reconcile = server.tool(
        name="reconcile_sessions",
        description="Recover sessions whose agent process died while the server was not running.",
    )(_reconcile_sessions)

    return ToolHandles(
        create_session=tool_create,
        start_session=tool_start,
        respond=tool_respond,
        finish_session=tool_finish,
        stop_session=tool_stop,
        resume_session=tool_resume,
        approve_session=tool_approve,
        reject_session=tool_reject,
        session_status=tool_status,
        session_progress=tool_progress,
        list_sessions=tool_list,
        start_autonomous=tool_autonomous,
        approve_plan=tool_approve_plan,
        reconcile_sessions=tool_reconcile,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
