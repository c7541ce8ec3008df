"""Per-session git worktree management."""

from .manager import (
    MergeConflictError,
    WorktreeError,
    WorktreeExistsError,
    WorktreeManager,
    parse_diff_stat,
)
from .models import DiffStats, WorktreeInfo

__all__ = [
    "DiffStats",
    "MergeConflictError",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeInfo",
    "WorktreeManager",
    "parse_diff_stat",
]
