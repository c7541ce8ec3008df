from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from forge_mcp.worktree import (
    MergeConflictError,
    WorktreeExistsError,
    WorktreeManager,
    parse_diff_stat,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=Forge Test", "-c", "user.email=forge@example.com", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def _commit_file(cwd: Path, name: str, content: str) -> None:
    (cwd / name).write_text(content, encoding="utf-8")
    _git(cwd, "add", name)
    _git(cwd, "commit", "-q", "-m", f"add {name}")


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "-q")
    _git(root, "checkout", "-q", "-b", "main")
    _commit_file(root, "README.md", "hello\n")
    return root


@pytest.fixture()
def manager(repo: Path, tmp_path: Path) -> WorktreeManager:
    return WorktreeManager(repo, tmp_path / "repo-worktrees", mainline="main", remote="origin")


def test_parse_diff_stat_summary_line() -> None:
    output = " a.py | 3 ++-\n b.py | 1 -\n 2 files changed, 2 insertions(+), 2 deletions(-)\n"

    stats = parse_diff_stat(output)

    assert (stats.files_changed, stats.insertions, stats.deletions) == (2, 2, 2)
    assert parse_diff_stat("").files_changed == 0
    assert parse_diff_stat(" 1 file changed, 1 insertion(+)").insertions == 1


@requires_git
def test_fresh_worktree_reports_zero_changes(manager: WorktreeManager) -> None:
    async def _run():
        info = await manager.create("forge/add-flag", "sess-a")
        return info, await manager.diff_stats(info.path), await manager.changed_files(info.path)

    info, stats, files = asyncio.run(_run())

    assert info.path == manager.path_for("sess-a")
    assert info.path.exists()
    assert stats.files_changed == 0
    assert files == []


@requires_git
def test_committed_changes_are_counted(manager: WorktreeManager) -> None:
    info = asyncio.run(manager.create("forge/three-files", "sess-b"))
    for name in ("a.py", "b.py", "c.py"):
        _commit_file(info.path, name, f"# {name}\n")

    async def _inspect():
        return (
            await manager.diff_stats(info.path),
            await manager.changed_files(info.path),
            await manager.log(info.path),
            await manager.diff(info.path),
        )

    stats, files, log, diff = asyncio.run(_inspect())

    assert stats.files_changed == 3
    assert stats.insertions == 3
    assert sorted(files) == ["a.py", "b.py", "c.py"]
    assert len(log.splitlines()) == 3
    assert "+# a.py" in diff


@requires_git
def test_create_rejects_existing_worktree(manager: WorktreeManager) -> None:
    asyncio.run(manager.create("forge/one", "sess-c"))

    with pytest.raises(WorktreeExistsError):
        asyncio.run(manager.create("forge/two", "sess-c"))


@requires_git
def test_fast_forward_merge_removes_worktree(manager: WorktreeManager, repo: Path) -> None:
    info = asyncio.run(manager.create("forge/feature", "sess-d"))
    _commit_file(info.path, "feature.py", "x = 1\n")

    asyncio.run(manager.merge(info.path, "forge/feature"))

    assert (repo / "feature.py").exists()
    assert not info.path.exists()
    assert "forge/feature" not in _git(repo, "branch", "--list", "forge/feature")


@requires_git
def test_merge_fails_when_mainline_advanced(manager: WorktreeManager, repo: Path) -> None:
    info = asyncio.run(manager.create("forge/stale", "sess-e"))
    _commit_file(info.path, "branch.py", "y = 1\n")
    _commit_file(repo, "main.py", "z = 1\n")

    with pytest.raises(MergeConflictError) as excinfo:
        asyncio.run(manager.merge(info.path, "forge/stale"))

    assert "rebase" in str(excinfo.value)
    assert info.path.exists()


@requires_git
def test_cleanup_is_repeatable(manager: WorktreeManager) -> None:
    info = asyncio.run(manager.create("forge/throwaway", "sess-f"))

    asyncio.run(manager.cleanup(info.path, info.branch_name))
    asyncio.run(manager.cleanup(info.path, info.branch_name))

    assert not manager.exists("sess-f")


@requires_git
def test_push_without_remote_is_best_effort(manager: WorktreeManager) -> None:
    info = asyncio.run(manager.create("forge/no-remote", "sess-g"))

    assert asyncio.run(manager.push(info.path, info.branch_name)) is False
