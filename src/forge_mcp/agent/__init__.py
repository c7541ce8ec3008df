"""Coding-agent CLI orchestration utilities."""

from .protocol import (
    ExitEvent,
    FailureEvent,
    FailureReason,
    SessionEvent,
    SessionResult,
    StreamParser,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnResultEvent,
)
from .runner import (
    AgentExecutionResult,
    AgentMode,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    AgentScript,
    AgentSession,
    AgentSpawnError,
    FakeAgentRunner,
    LaunchSpec,
    SessionInputError,
    SessionState,
)
from .session_log import SessionLog

__all__ = [
    "AgentExecutionResult",
    "AgentMode",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentScript",
    "AgentSession",
    "AgentSpawnError",
    "ExitEvent",
    "FailureEvent",
    "FailureReason",
    "FakeAgentRunner",
    "LaunchSpec",
    "SessionEvent",
    "SessionInputError",
    "SessionLog",
    "SessionResult",
    "SessionState",
    "StreamParser",
    "ThinkingEvent",
    "ToolCallEvent",
    "ToolResultEvent",
    "TurnResultEvent",
]
