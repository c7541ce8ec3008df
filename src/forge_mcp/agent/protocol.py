"""Decoder for the agent CLI's line-delimited JSON output.

The agent writes one JSON object per line on stdout. Only a handful of
shapes matter to the orchestrator:

* ``assistant``: content blocks, either ``text`` or ``tool_use``
* ``user``: echoes ``tool_result`` blocks back into the conversation
* ``result``: turn summary, emitted once per completed turn

Anything else, including the plain-text status lines the CLI prints before
streaming starts, decodes to :class:`UnrecognizedLine` and is dropped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

SUMMARY_LIMIT = 120

_PATH_TOOLS = {"Read", "Edit", "Write", "MultiEdit", "NotebookEdit"}
_PATTERN_TOOLS = {"Glob", "Grep"}


class FailureReason(str, Enum):
    """Why a session ended in error."""

    SPAWN = "spawn"
    PROTOCOL = "protocol"
    EXIT = "exit"
    TIMEOUT = "timeout"
    COST_CEILING = "cost_ceiling"


@dataclass(frozen=True, slots=True)
class SessionResult:
    """Summary of one completed agent turn."""

    session_id: str | None = None
    turns: int = 0
    duration_ms: int = 0
    cost_usd: float | None = None
    text: str = ""


@dataclass(frozen=True, slots=True)
class ThinkingEvent:
    text: str
    kind: Literal["thinking"] = "thinking"


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    tool: str
    summary: str = ""
    kind: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_use_id: str | None = None
    is_error: bool = False
    summary: str = ""
    kind: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True, slots=True)
class TurnResultEvent:
    result: SessionResult = field(default_factory=SessionResult)
    synthetic: bool = False
    kind: Literal["turn_result"] = "turn_result"


@dataclass(frozen=True, slots=True)
class FailureEvent:
    reason: FailureReason
    message: str
    kind: Literal["failure"] = "failure"


@dataclass(frozen=True, slots=True)
class ExitEvent:
    returncode: int | None
    signal: str | None = None
    kind: Literal["exit"] = "exit"


@dataclass(frozen=True, slots=True)
class UnrecognizedLine:
    line: str
    kind: Literal["unrecognized"] = "unrecognized"


ProgressEvent = Union[ThinkingEvent, ToolCallEvent, ToolResultEvent, TurnResultEvent]
SessionEvent = Union[
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnResultEvent,
    FailureEvent,
    ExitEvent,
]


def truncate(text: str, limit: int = SUMMARY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def summarize_tool_input(tool: str, tool_input: Any) -> str:
    """Produce a short human-readable summary of a tool invocation's input."""

    if not isinstance(tool_input, dict):
        return ""

    if tool in _PATH_TOOLS:
        value = tool_input.get("file_path") or tool_input.get("notebook_path")
    elif tool in _PATTERN_TOOLS:
        value = tool_input.get("pattern")
    elif tool == "Bash":
        value = tool_input.get("command")
    else:
        return ""

    return truncate(value) if isinstance(value, str) else ""


def decode_line(line: str | bytes) -> dict[str, Any] | UnrecognizedLine:
    """Decode one stdout line into a protocol object."""

    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    try:
        payload = json.loads(stripped)
    except ValueError:
        return UnrecognizedLine(stripped)
    if not isinstance(payload, dict):
        return UnrecognizedLine(stripped)
    return payload


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def _as_cost(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return float(value)


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts)
    return ""


class StreamParser:
    """Stateful decoder for one agent process's stdout.

    The only state carried across lines is the most recent text block of the
    current turn, consumed and cleared by the next ``result`` line.
    """

    def __init__(self) -> None:
        self._last_text = ""

    @property
    def last_text(self) -> str:
        return self._last_text

    def feed(self, line: str | bytes) -> list[SessionEvent]:
        if not line.strip():
            return []
        payload = decode_line(line)
        if isinstance(payload, UnrecognizedLine):
            return []

        event_type = payload.get("type")
        if event_type == "assistant":
            return self._assistant(payload)
        if event_type == "user":
            return self._tool_results(payload)
        if event_type == "result":
            return [self._result(payload)]
        return []

    def _content_blocks(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        message = payload.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        if blocks is None:
            blocks = payload.get("content")
        if not isinstance(blocks, list):
            return []
        return [block for block in blocks if isinstance(block, dict)]

    def _assistant(self, payload: dict[str, Any]) -> list[SessionEvent]:
        events: list[SessionEvent] = []
        for block in self._content_blocks(payload):
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                self._last_text = block["text"]
                events.append(ThinkingEvent(text=block["text"]))
            elif block_type == "tool_use":
                name = block.get("name")
                tool = name if isinstance(name, str) and name else "unknown"
                events.append(
                    ToolCallEvent(tool=tool, summary=summarize_tool_input(tool, block.get("input")))
                )
        return events

    def _tool_results(self, payload: dict[str, Any]) -> list[SessionEvent]:
        events: list[SessionEvent] = []
        for block in self._content_blocks(payload):
            if block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id")
            events.append(
                ToolResultEvent(
                    tool_use_id=tool_use_id if isinstance(tool_use_id, str) else None,
                    is_error=block.get("is_error") is True,
                    summary=truncate(_block_text(block.get("content"))),
                )
            )
        return events

    def _result(self, payload: dict[str, Any]) -> SessionEvent:
        subtype = payload.get("subtype")
        is_error = payload.get("is_error") is True or (
            isinstance(subtype, str) and subtype.startswith("error")
        )
        result_text = payload.get("result") if isinstance(payload.get("result"), str) else ""
        last_text = self._last_text
        self._last_text = ""

        if is_error:
            if result_text:
                return FailureEvent(reason=FailureReason.PROTOCOL, message=result_text)
            suffix = f" ({subtype})" if isinstance(subtype, str) and subtype != "error" else ""
            return FailureEvent(
                reason=FailureReason.PROTOCOL,
                message=f"Agent CLI returned an error result{suffix}",
            )

        session_id = payload.get("session_id")
        return TurnResultEvent(
            result=SessionResult(
                session_id=session_id if isinstance(session_id, str) else None,
                turns=_as_count(payload.get("num_turns")),
                duration_ms=_as_count(payload.get("duration_ms")),
                cost_usd=_as_cost(payload.get("total_cost_usd")),
                text=last_text or result_text,
            )
        )


__all__ = [
    "ExitEvent",
    "FailureEvent",
    "FailureReason",
    "ProgressEvent",
    "SessionEvent",
    "SessionResult",
    "StreamParser",
    "ThinkingEvent",
    "ToolCallEvent",
    "ToolResultEvent",
    "TurnResultEvent",
    "UnrecognizedLine",
    "decode_line",
    "summarize_tool_input",
    "truncate",
]
