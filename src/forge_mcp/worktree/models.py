"""Data models for session worktrees."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    branch_name: str


class DiffStats(BaseModel):
    """Summary of a worktree's changes against the mainline branch."""

    files_changed: int = Field(0, ge=0)
    insertions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)
    summary: str = Field("", description="Last line of `git diff --stat`")


__all__ = ["DiffStats", "WorktreeInfo"]
