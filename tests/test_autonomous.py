from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingChannel, StubWorktrees, wait_until
from forge_mcp.agent import (
    AgentMode,
    AgentScript,
    FailureEvent,
    FailureReason,
    FakeAgentRunner,
    SessionResult,
    TurnResultEvent,
)
from forge_mcp.config import ForgeSettings
from forge_mcp.notify import SessionNotifier
from forge_mcp.sessions import (
    AutonomousFlow,
    InvalidTransitionError,
    SessionOrchestrator,
    SessionRegistry,
    extract_pr_url,
    parse_review,
)
from forge_mcp.storage import InMemoryRecordStore, RecordStatus, SessionPhase
from forge_mcp.worktree import DiffStats

PLAN_TEXT = "## Plan\n### Steps\n1. app/http.py - wrap requests in a retry loop"
ISSUES_TEXT = "ISSUES FOUND:\n1. app/http.py - retry count is never checked"


def _script(turns: int, cost: float, text: str) -> AgentScript:
    return AgentScript(turns=[[TurnResultEvent(result=SessionResult(turns=turns, cost_usd=cost, text=text))]])


class Harness:
    def __init__(self, settings: ForgeSettings, worktrees: StubWorktrees) -> None:
        self.settings = settings
        self.worktrees = worktrees
        self.runner = FakeAgentRunner(settings=settings)
        self.registry = SessionRegistry()
        self.store = InMemoryRecordStore()
        self.channel = RecordingChannel()
        self.notifier = SessionNotifier(self.channel, self.registry)
        self.orch = SessionOrchestrator(settings, self.runner, worktrees, self.registry, self.store, self.notifier)
        self.flow = AutonomousFlow(self.orch)

    def record(self, record_id: str):
        return self.store.get(record_id)

    def sent_texts(self) -> list[str]:
        return [text for text, _ in self.channel.sent]


@pytest.fixture()
def harness(settings: ForgeSettings, worktrees: StubWorktrees) -> Harness:
    worktrees.stats = DiffStats(files_changed=2, insertions=14, deletions=3)
    return Harness(settings, worktrees)


def test_plan_approve_execute_review_completes(harness: Harness) -> None:
    harness.runner.add(_script(3, 0.8, PLAN_TEXT))
    harness.runner.add(_script(10, 2.5, "Opened https://github.com/acme/app/pull/42 for review"))
    harness.runner.add(_script(2, 0.4, "APPROVED"))

    async def _run():
        record = await harness.flow.start("Add retries to the HTTP client")
        assert record.state is SessionPhase.PLANNING
        assert record.status is RecordStatus.CONFIRMED
        await harness.flow.join(record.record_id)

        ready = harness.record(record.record_id)
        assert ready.state is SessionPhase.PLAN_READY
        assert ready.plan == PLAN_TEXT
        assert ready.auto_approve_at is not None
        assert harness.registry.has_timer(record.session_id)
        assert not harness.registry.is_active(record.session_id)

        executing = await harness.flow.approve_plan(record.record_id)
        assert executing.state is SessionPhase.EXECUTING
        assert not harness.registry.has_timer(record.session_id)
        await harness.flow.join(record.record_id)
        await harness.notifier.drain()
        return record

    record = asyncio.run(_run())

    final = harness.record(record.record_id)
    assert final.state is SessionPhase.COMPLETED
    assert final.pr_url == "https://github.com/acme/app/pull/42"
    assert final.review_round == 1
    assert final.total_turns == 15
    assert final.total_cost_usd == pytest.approx(3.7)
    assert final.plan_approved_at is not None
    assert final.result is not None
    assert final.result.stats.files_changed == 2
    assert final.result.warning is None
    assert harness.worktrees.pushed == [record.branch_name]
    assert not harness.registry.is_active(record.session_id)

    sid = record.session_id
    assert [launch.session_id for launch in harness.runner.launches] == [f"{sid}-plan", sid, f"{sid}-review-1"]
    assert all(launch.mode is AgentMode.AUTONOMOUS for launch in harness.runner.launches)
    assert harness.runner.launches[0].max_cost_usd == harness.settings.max_planning_cost_usd
    assert harness.runner.launches[1].max_cost_usd == harness.settings.max_cost_usd
    assert PLAN_TEXT in harness.runner.launches[1].system_prompt

    texts = harness.sent_texts()
    assert any("Plan ready" in text for text in texts)
    assert any("$3.30 spent after 10 turns" in text for text in texts)
    assert any("Review approved" in text for text in texts)
    assert any("Autonomous session complete" in text for text in texts)
    plan_actions = next(actions for text, actions in harness.channel.sent if "Plan ready" in text)
    assert f"code:approve_plan:{record.record_id}" in plan_actions


def test_review_issues_run_fix_rounds_until_limit(harness: Harness) -> None:
    harness.runner.add(_script(2, 0.5, PLAN_TEXT))
    harness.runner.add(_script(8, 2.0, "implemented"))
    for _ in range(2):
        harness.runner.add(_script(1, 0.2, ISSUES_TEXT))
        harness.runner.add(_script(3, 0.6, "FIXES PUSHED"))
    harness.runner.add(_script(1, 0.2, ISSUES_TEXT))

    async def _run():
        record = await harness.flow.start("Add retries")
        await harness.flow.join(record.record_id)
        await harness.flow.approve_plan(record.record_id)
        await harness.flow.join(record.record_id)
        return record

    record = asyncio.run(_run())

    final = harness.record(record.record_id)
    assert final.state is SessionPhase.COMPLETED
    assert final.review_round == 3
    assert final.result is not None
    assert final.result.warning == "Review had unresolved issues after 3 rounds"
    assert final.review_issues == "1. app/http.py - retry count is never checked"
    assert len(harness.worktrees.pushed) == 3

    sid = record.session_id
    assert [launch.session_id for launch in harness.runner.launches] == [
        f"{sid}-plan",
        sid,
        f"{sid}-review-1",
        f"{sid}-fix-1",
        f"{sid}-review-2",
        f"{sid}-fix-2",
        f"{sid}-review-3",
    ]
    assert "retry count is never checked" in harness.runner.launches[3].system_prompt


def test_planning_failure_marks_session_failed(harness: Harness) -> None:
    harness.runner.add(
        AgentScript(turns=[[FailureEvent(reason=FailureReason.PROTOCOL, message="rate limited")]])
    )

    async def _run():
        record = await harness.flow.start("Add retries")
        await harness.flow.join(record.record_id)
        return record

    record = asyncio.run(_run())

    final = harness.record(record.record_id)
    assert final.state is SessionPhase.ERROR
    assert final.status is RecordStatus.ERROR
    assert final.error == "Planning failed: rate limited"
    assert harness.worktrees.cleaned == [record.branch_name]
    assert not harness.registry.is_active(record.session_id)


def test_execution_cost_ceiling_fails_session(harness: Harness) -> None:
    harness.runner.add(_script(2, 0.5, PLAN_TEXT))
    harness.runner.add(_script(40, 25.0, "still going"))

    async def _run():
        record = await harness.flow.start("Rewrite everything")
        await harness.flow.join(record.record_id)
        await harness.flow.approve_plan(record.record_id)
        await harness.flow.join(record.record_id)
        return record

    record = asyncio.run(_run())

    final = harness.record(record.record_id)
    assert final.state is SessionPhase.ERROR
    assert final.error == "Session killed: cost $25.00 exceeded $20.00 limit"
    assert harness.worktrees.pushed == []


def test_review_failure_completes_with_warning(harness: Harness) -> None:
    harness.runner.add(_script(2, 0.5, PLAN_TEXT))
    harness.runner.add(_script(5, 1.0, "implemented"))
    harness.runner.add(AgentScript(turns=[], returncode=2))

    async def _run():
        record = await harness.flow.start("Add retries")
        await harness.flow.join(record.record_id)
        await harness.flow.approve_plan(record.record_id)
        await harness.flow.join(record.record_id)
        return record

    record = asyncio.run(_run())

    final = harness.record(record.record_id)
    assert final.state is SessionPhase.COMPLETED
    assert final.result.warning == "Review session failed: Agent CLI exited with code 2"


def test_plan_auto_approves_after_timeout(settings: ForgeSettings, worktrees: StubWorktrees) -> None:
    settings.auto_approve_minutes = 0.0005
    harness = Harness(settings, worktrees)
    harness.runner.add(_script(2, 0.5, PLAN_TEXT))
    harness.runner.add(_script(5, 1.0, "implemented"))
    harness.runner.add(_script(1, 0.1, "APPROVED"))

    async def _run():
        record = await harness.flow.start("Add retries")
        await harness.flow.join(record.record_id)
        await wait_until(
            lambda: harness.record(record.record_id).state is SessionPhase.COMPLETED, attempts=3000
        )
        return record

    record = asyncio.run(_run())

    assert harness.record(record.record_id).plan_approved_at is not None


def test_stop_during_plan_ready_cancels_auto_approval(harness: Harness) -> None:
    harness.runner.add(_script(2, 0.5, PLAN_TEXT))

    async def _run():
        record = await harness.flow.start("Add retries")
        await harness.flow.join(record.record_id)
        stopped = await harness.orch.stop_session(record.record_id)
        with pytest.raises(InvalidTransitionError):
            await harness.flow.approve_plan(record.record_id)
        return record, stopped

    record, stopped = asyncio.run(_run())

    assert stopped.state is SessionPhase.STOPPED
    assert not harness.registry.has_timer(record.session_id)
    assert harness.worktrees.cleaned == [record.branch_name]
    assert len(harness.runner.launches) == 1


def test_parse_review_and_pr_url() -> None:
    assert parse_review("Looks good.\nAPPROVED") == (True, None)
    approved, issues = parse_review(ISSUES_TEXT)
    assert approved is False
    assert issues == "1. app/http.py - retry count is never checked"
    assert parse_review("I am not sure") == (False, None)

    assert extract_pr_url("see https://github.com/acme/app/pull/7).") == "https://github.com/acme/app/pull/7"
    assert extract_pr_url(None) is None
