from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingChannel, StubWorktrees
from forge_mcp.agent import AgentScript, FakeAgentRunner, SessionResult, TurnResultEvent
from forge_mcp.config import ForgeSettings
from forge_mcp.notify import SessionNotifier
from forge_mcp.sessions import AutonomousFlow, SessionOrchestrator, SessionReconciler, SessionRegistry
from forge_mcp.storage import InMemoryRecordStore, RecordStatus, SessionPhase, SessionRecord
from forge_mcp.tools import register_tools
from forge_mcp.worktree import DiffStats


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class Wiring:
    def __init__(self, settings: ForgeSettings, worktrees: StubWorktrees, *, with_runner: bool = True) -> None:
        self.runner = FakeAgentRunner(settings=settings)
        self.registry = SessionRegistry()
        self.store = InMemoryRecordStore()
        self.worktrees = worktrees
        self.notifier = SessionNotifier(RecordingChannel(), self.registry)
        self.orchestrator = None
        autonomous = None
        if with_runner:
            self.orchestrator = SessionOrchestrator(
                settings, self.runner, worktrees, self.registry, self.store, self.notifier
            )
            autonomous = AutonomousFlow(self.orchestrator)
        self.server = StubServer()
        self.handles = register_tools(
            self.server,  # type: ignore[arg-type]
            settings=settings,
            orchestrator=self.orchestrator,
            autonomous=autonomous,
            reconciler=SessionReconciler(self.registry, self.store, worktrees),
        )


def test_every_tool_is_registered(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees)

    assert set(wiring.server._tools) == {
        "create_session",
        "start_session",
        "respond",
        "finish_session",
        "stop_session",
        "resume_session",
        "approve_session",
        "reject_session",
        "session_status",
        "session_progress",
        "list_sessions",
        "start_autonomous",
        "approve_plan",
        "reconcile_sessions",
    }


def test_one_shot_session_through_tools(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees)
    worktrees.stats = DiffStats(files_changed=2)
    wiring.runner.add(
        AgentScript(turns=[[TurnResultEvent(result=SessionResult(turns=3, cost_usd=0.9, text="Done"))]])
    )
    handles = wiring.handles

    async def _run():
        created = handles.create_session.fn(task="Bump the version", context=None)
        started = await handles.start_session.fn(record_id=created["record_id"], mode="one_shot", context=None)
        await wiring.orchestrator.join(created["record_id"])
        merged = await handles.approve_session.fn(record_id=created["record_id"], context=None)
        return created, started, merged

    created, started, merged = asyncio.run(_run())

    assert created["state"] == "pending"
    assert created["branch"].startswith("forge/bump-the-version-")
    assert started["mode"] == "one_shot"
    assert merged["state"] == "merged"
    assert merged["total_turns"] == 3
    assert merged["total_cost_usd"] == 0.9
    assert merged["files_changed"] == 2
    assert worktrees.merged == [created["branch"]]

    status = handles.session_status.fn(record_id=created["record_id"], context=None)
    assert status["state"] == "merged"
    assert status["active"] is False

    listed = handles.list_sessions.fn(states=["merged"], context=None)
    assert [item["record_id"] for item in listed] == [created["record_id"]]
    assert handles.list_sessions.fn(states=["completed"], context=None) == []


def test_list_sessions_rejects_unknown_state(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees)

    with pytest.raises(ValueError) as excinfo:
        wiring.handles.list_sessions.fn(states=["sleeping"], context=None)

    assert "Unknown session state" in str(excinfo.value)


def test_session_progress_rejects_negative_offset(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees)
    created = wiring.handles.create_session.fn(task="Anything", context=None)

    with pytest.raises(ValueError):
        wiring.handles.session_progress.fn(record_id=created["record_id"], after=-1, context=None)

    progress = wiring.handles.session_progress.fn(record_id=created["record_id"], context=None)
    assert progress["lines"] == []
    assert progress["total"] == 0


def test_tools_require_agent_runner(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees, with_runner=False)

    with pytest.raises(RuntimeError) as excinfo:
        wiring.handles.create_session.fn(task="Anything", context=None)
    assert "FORGE_AGENT_PATH" in str(excinfo.value)

    with pytest.raises(RuntimeError):
        asyncio.run(wiring.handles.start_autonomous.fn(task="Anything", context=None))


def test_reconcile_tool_reports_outcomes(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees, with_runner=False)
    wiring.store.save(
        SessionRecord(
            record_id="r1",
            session_id="sid-r1",
            task="Add retries",
            branch_name="forge/add-retries-sid-r1",
            status=RecordStatus.CONFIRMED,
            state=SessionPhase.RUNNING,
        )
    )

    reports = asyncio.run(wiring.handles.reconcile_sessions.fn(context=None))

    assert reports == [{"record_id": "r1", "session_id": "sid-r1", "outcome": "error"}]
    assert wiring.store.get("r1").state is SessionPhase.ERROR


class RecordingContextLogger:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    def info(self, message, extra=None):
        self.messages.append((message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = RecordingContextLogger()


def test_context_logger_receives_tool_logs(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    wiring = Wiring(settings, worktrees)
    context = StubContext()

    created = wiring.handles.create_session.fn(task="Anything", context=context)

    assert context.logger.messages == [
        ("Created code session", {"record_id": created["record_id"], "branch": created["branch"]})
    ]
