from __future__ import annotations

import asyncio

from conftest import RecordingChannel
from forge_mcp.notify import (
    LoggingChannel,
    NotificationButton,
    SessionNotifier,
    format_plan_ready,
    format_pr_ready,
    format_session_status,
    session_actions,
)
from forge_mcp.sessions import SessionRegistry
from forge_mcp.storage import CodeResult, SessionPhase, SessionRecord
from forge_mcp.worktree import DiffStats


def _record(**changes) -> SessionRecord:
    values = {
        "record_id": "rec-1",
        "session_id": "sid-1",
        "task": "Add a --verbose flag to the command line interface so users can debug",
        "branch_name": "forge/add-a-verbose-flag-abc123",
    }
    values.update(changes)
    return SessionRecord(**values)


def test_waiting_status_shows_question_preview() -> None:
    record = _record(
        state=SessionPhase.WAITING,
        total_turns=2,
        total_cost_usd=0.456,
        last_message="Should the flag also enable request logging? " + "x" * 2000,
    )

    text = format_session_status(record)

    assert text.startswith("💬 Code Session: Needs Response")
    assert f"Task: {record.task[:47]}..." in text
    assert "Turns: 2 · Cost: $0.46" in text
    assert "Should the flag also enable request logging?" in text
    assert len(text) < 1300


def test_completed_status_lists_result() -> None:
    record = _record(
        state=SessionPhase.COMPLETED,
        result=CodeResult(stats=DiffStats(files_changed=3), warning="Fix session failed"),
        pr_url="https://github.com/acme/app/pull/9",
    )

    text = format_session_status(record)

    assert "Files changed: 3" in text
    assert "Warning: Fix session failed" in text
    assert "PR: https://github.com/acme/app/pull/9" in text


def test_error_status_includes_error() -> None:
    text = format_session_status(_record(state=SessionPhase.ERROR, error="Agent CLI exited with code 1"))

    assert "❌ Code Session: Failed" in text
    assert "Error: Agent CLI exited with code 1" in text


def test_actions_follow_state() -> None:
    def _callbacks(state: SessionPhase) -> list[str]:
        return [button.callback_data for button in session_actions(_record(state=state))]

    assert _callbacks(SessionPhase.RUNNING) == ["code:stop:rec-1"]
    assert _callbacks(SessionPhase.PLAN_READY) == ["code:approve_plan:rec-1", "code:stop:rec-1"]
    assert _callbacks(SessionPhase.COMPLETED) == ["code:resume:rec-1", "code:approve:rec-1", "code:reject:rec-1"]
    assert _callbacks(SessionPhase.STOPPED) == []
    assert _callbacks(SessionPhase.MERGED) == []


def test_plan_and_pr_messages() -> None:
    record = _record(plan="## Plan\n1. edit cli.py", total_turns=12, total_cost_usd=3.2)

    plan_text = format_plan_ready(record, 20)
    pr_text = format_pr_ready(record.touch(pr_url="https://github.com/acme/app/pull/3"))

    assert "## Plan\n1. edit cli.py" in plan_text
    assert "Auto-approving in 20 minutes" in plan_text
    assert "Turns: 12 · Cost: $3.20" in pr_text
    assert "PR: https://github.com/acme/app/pull/3" in pr_text


def test_update_sends_then_edits() -> None:
    registry = SessionRegistry()
    channel = RecordingChannel()
    notifier = SessionNotifier(channel, registry)
    buttons = [NotificationButton("Stop", "stop", "rec-1")]

    async def _run():
        assert await notifier.update("sid-1", "first", buttons)
        assert await notifier.update("sid-1", "second")

    asyncio.run(_run())

    assert channel.sent == [("first", ["code:stop:rec-1"])]
    assert channel.edited == [("msg-1", "second", [])]
    assert registry.session_for_message("msg-1") == "sid-1"


class FlakyChannel(RecordingChannel):
    def __init__(self, *, fail_send: bool = False) -> None:
        super().__init__()
        self.fail_send = fail_send

    async def send(self, text, actions=()):
        if self.fail_send:
            raise ConnectionError("chat API unreachable")
        return await super().send(text, actions)

    async def edit(self, message_id, text, actions=()):
        raise LookupError("message to edit not found")


def test_failed_edit_falls_back_to_new_message() -> None:
    registry = SessionRegistry()
    registry.set_message("sid-1", "old-message")
    channel = FlakyChannel()
    notifier = SessionNotifier(channel, registry)

    assert asyncio.run(notifier.update("sid-1", "fresh"))

    assert channel.sent == [("fresh", [])]
    assert registry.message_for("sid-1") == "msg-1"


def test_delivery_failures_are_reported_not_raised() -> None:
    registry = SessionRegistry()
    notifier = SessionNotifier(FlakyChannel(fail_send=True), registry)

    async def _run():
        task = notifier.post_nowait("sid-1", "hello")
        await notifier.drain()
        return task.result(), await notifier.post("standalone")

    tracked, standalone = asyncio.run(_run())

    assert tracked is False
    assert standalone is False
    assert registry.message_for("sid-1") is None


def test_logging_channel_assigns_ids() -> None:
    channel = LoggingChannel()

    async def _run():
        first = await channel.send("one")
        edited = await channel.edit(first, "two")
        return first, edited

    assert asyncio.run(_run()) == ("log-1", "log-1")
