"""Session phases, the transition table and session errors."""

from __future__ import annotations

from ..storage.models import SessionPhase


class SessionError(RuntimeError):
    """Base class for session orchestration errors."""


class SessionAlreadyActiveError(SessionError):
    """Raised when a session id already has a live registry entry."""


class SessionNotFoundError(SessionError):
    """Raised when no durable record exists for an id."""


class SessionStartError(SessionError):
    """Raised when a session could not be started."""


class InvalidTransitionError(SessionError):
    """Raised when a caller asks for a phase change the table forbids."""


# Phases in which a record claims a live process.
ACTIVE_PHASES: frozenset[SessionPhase] = frozenset(
    {
        SessionPhase.RUNNING,
        SessionPhase.WAITING,
        SessionPhase.PLANNING,
        SessionPhase.EXECUTING,
        SessionPhase.PUSHING,
        SessionPhase.REVIEWING,
        SessionPhase.FIXING,
    }
)

TERMINAL_PHASES: frozenset[SessionPhase] = frozenset({SessionPhase.MERGED, SessionPhase.REJECTED})

RESUMABLE_PHASES: frozenset[SessionPhase] = frozenset(
    {SessionPhase.COMPLETED, SessionPhase.ERROR, SessionPhase.STOPPED}
)

TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.PENDING: frozenset(
        {SessionPhase.RUNNING, SessionPhase.PLANNING, SessionPhase.ERROR, SessionPhase.REJECTED}
    ),
    SessionPhase.RUNNING: frozenset(
        {SessionPhase.WAITING, SessionPhase.COMPLETED, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.WAITING: frozenset(
        {SessionPhase.RUNNING, SessionPhase.COMPLETED, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.COMPLETED: frozenset(
        {SessionPhase.RUNNING, SessionPhase.MERGED, SessionPhase.REJECTED}
    ),
    SessionPhase.ERROR: frozenset({SessionPhase.RUNNING, SessionPhase.REJECTED}),
    SessionPhase.STOPPED: frozenset({SessionPhase.RUNNING, SessionPhase.REJECTED}),
    SessionPhase.MERGED: frozenset(),
    SessionPhase.REJECTED: frozenset(),
    SessionPhase.PLANNING: frozenset(
        {SessionPhase.PLAN_READY, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.PLAN_READY: frozenset(
        {SessionPhase.EXECUTING, SessionPhase.ERROR, SessionPhase.STOPPED, SessionPhase.REJECTED}
    ),
    SessionPhase.EXECUTING: frozenset(
        {SessionPhase.PUSHING, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.PUSHING: frozenset(
        {SessionPhase.REVIEWING, SessionPhase.COMPLETED, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.REVIEWING: frozenset(
        {SessionPhase.FIXING, SessionPhase.COMPLETED, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
    SessionPhase.FIXING: frozenset(
        {SessionPhase.PUSHING, SessionPhase.ERROR, SessionPhase.STOPPED}
    ),
}


def can_transition(current: SessionPhase, target: SessionPhase) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: SessionPhase, target: SessionPhase) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move session from {current.value} to {target.value}")


__all__ = [
    "ACTIVE_PHASES",
    "InvalidTransitionError",
    "RESUMABLE_PHASES",
    "SessionAlreadyActiveError",
    "SessionError",
    "SessionNotFoundError",
    "SessionStartError",
    "TERMINAL_PHASES",
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
]
