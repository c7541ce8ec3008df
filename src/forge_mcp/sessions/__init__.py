"""Session registry, lifecycle and autonomous flow."""

from .autonomous import AutonomousFlow, extract_pr_url, parse_review
from .lifecycle import SessionOrchestrator
from .models import (
    ACTIVE_PHASES,
    TRANSITIONS,
    InvalidTransitionError,
    SessionAlreadyActiveError,
    SessionError,
    SessionNotFoundError,
    SessionStartError,
    ensure_transition,
)
from .reconcile import ReconcileOutcome, ReconcileReport, SessionReconciler
from .registry import SessionRegistry

__all__ = [
    "ACTIVE_PHASES",
    "AutonomousFlow",
    "InvalidTransitionError",
    "ReconcileOutcome",
    "ReconcileReport",
    "SessionAlreadyActiveError",
    "SessionError",
    "SessionNotFoundError",
    "SessionOrchestrator",
    "SessionReconciler",
    "SessionRegistry",
    "SessionStartError",
    "TRANSITIONS",
    "ensure_transition",
    "extract_pr_url",
    "parse_review",
]
