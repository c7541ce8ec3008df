from __future__ import annotations

import asyncio
import shutil
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from forge_mcp.config import ForgeSettings
from forge_mcp.worktree import DiffStats, WorktreeError, WorktreeInfo


@dataclass
class _Row:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Row] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Row(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class StubWorktrees:
    """In-process stand-in for WorktreeManager that never shells out to git."""

    def __init__(self, base: Path) -> None:
        self.base = base
        self.created: list[str] = []
        self.cleaned: list[str] = []
        self.merged: list[str] = []
        self.pushed: list[str] = []
        self.stats = DiffStats()
        self.files: list[str] = []
        self.commit_log = ""
        self.diff_text = ""
        self.create_error: str | None = None
        self.merge_error: Exception | None = None
        self.stats_error: str | None = None

    def path_for(self, session_id: str) -> Path:
        return self.base / session_id

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def create(self, branch_name: str, session_id: str) -> WorktreeInfo:
        if self.create_error is not None:
            raise WorktreeError(self.create_error)
        path = self.path_for(session_id)
        path.mkdir(parents=True)
        self.created.append(branch_name)
        return WorktreeInfo(path=path, branch_name=branch_name)

    async def diff_stats(self, path: Path) -> DiffStats:
        if self.stats_error is not None:
            raise WorktreeError(self.stats_error)
        return self.stats

    async def changed_files(self, path: Path) -> list[str]:
        return list(self.files)

    async def log(self, path: Path) -> str:
        return self.commit_log

    async def diff(self, path: Path) -> str:
        return self.diff_text

    async def merge(self, path: Path, branch_name: str) -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.merged.append(branch_name)
        await self.cleanup(path, branch_name)

    async def cleanup(self, path: Path, branch_name: str) -> None:
        self.cleaned.append(branch_name)
        shutil.rmtree(path, ignore_errors=True)

    async def push(self, path: Path, branch_name: str) -> bool:
        self.pushed.append(branch_name)
        return True


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[str, list[str]]] = []
        self.edited: list[tuple[str, str, list[str]]] = []

    async def send(self, text, actions=()):
        self.sent.append((text, [button.callback_data for button in actions]))
        return f"msg-{len(self.sent)}"

    async def edit(self, message_id, text, actions=()):
        self.edited.append((message_id, text, [button.callback_data for button in actions]))
        return message_id


async def wait_until(predicate: Callable[[], bool], attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition was not reached")


@pytest.fixture()
def settings(tmp_path: Path) -> ForgeSettings:
    return ForgeSettings(
        log_dir=tmp_path / "logs",
        repo_root=tmp_path / "repo",
        worktree_base=tmp_path / "worktrees",
        prompt_paths=(tmp_path / "prompts",),
    )


@pytest.fixture()
def worktrees(tmp_path: Path) -> StubWorktrees:
    return StubWorktrees(tmp_path / "worktrees")
