"""Session notifications."""

from .formatting import (
    NotificationButton,
    format_plan_ready,
    format_pr_ready,
    format_progress_milestone,
    format_review_result,
    format_review_started,
    format_session_status,
    merge_actions,
    plan_actions,
    session_actions,
)
from .notifier import LoggingChannel, NotificationChannel, SessionNotifier

__all__ = [
    "LoggingChannel",
    "NotificationButton",
    "NotificationChannel",
    "SessionNotifier",
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
