"""Git worktree management: one isolated checkout and branch per session."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .models import DiffStats, WorktreeInfo

logger = logging.getLogger(__name__)

_FILES_RE = re.compile(r"(\d+) files? changed")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+) deletions?\(-\)")


class WorktreeError(RuntimeError):
    """Raised when a required git operation fails."""


class WorktreeExistsError(WorktreeError):
    """Raised when a worktree already exists for a session id."""


class MergeConflictError(WorktreeError):
    """Raised when a branch cannot be fast-forwarded onto the mainline."""


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_diff_stat(output: str) -> DiffStats:
    """Parse the summary line of ``git diff --stat`` output."""

    lines = [line for line in output.strip().splitlines() if line.strip()]
    if not lines:
        return DiffStats()
    summary = lines[-1].strip()

    def _count(pattern: re.Pattern[str]) -> int:
        match = pattern.search(summary)
        return int(match.group(1)) if match else 0

    return DiffStats(
        files_changed=_count(_FILES_RE),
        insertions=_count(_INSERTIONS_RE),
        deletions=_count(_DELETIONS_RE),
        summary=summary,
    )


class WorktreeManager:
    """Create, inspect, merge and remove per-session git worktrees."""

    def __init__(
        self,
        repo_root: Path,
        base_dir: Path,
        *,
        mainline: str = "main",
        remote: str = "origin",
        git_executable: str = "git",
    ) -> None:
        self._repo_root = Path(repo_root)
        self._base_dir = Path(base_dir)
        self._mainline = mainline
        self._remote = remote
        self._git_executable = git_executable

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def mainline(self) -> str:
        return self._mainline

    def path_for(self, session_id: str) -> Path:
        return self._base_dir / session_id

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def _git(self, *args: str, cwd: Path | None = None, check: bool = True) -> GitResult:
        cmd = (self._git_executable, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd or self._repo_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorktreeError(f"git {args[0]} failed: {exc}") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        result = GitResult(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise WorktreeError(f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    async def create(self, branch_name: str, session_id: str) -> WorktreeInfo:
        """Create a worktree on a new branch from the freshest mainline ref."""

        path = self.path_for(session_id)
        if path.exists():
            raise WorktreeExistsError(f"Worktree already exists at {path}")

        fetch = await self._git("fetch", self._remote, self._mainline, check=False)
        if not fetch.ok:
            logger.warning(
                "Fetch of mainline failed, using local refs",
                extra={"remote": self._remote, "stderr": fetch.stderr.strip()},
            )

        remote_ref = f"{self._remote}/{self._mainline}"
        verify = await self._git("rev-parse", "--verify", "--quiet", remote_ref, check=False)
        base_ref = remote_ref if verify.ok else self._mainline

        self._base_dir.mkdir(parents=True, exist_ok=True)
        await self._git("worktree", "add", "-b", branch_name, str(path), base_ref)
        logger.info(
            "Created worktree",
            extra={"session_id": session_id, "path": str(path), "branch": branch_name, "base": base_ref},
        )
        return WorktreeInfo(path=path, branch_name=branch_name)

    async def diff_stats(self, path: Path) -> DiffStats:
        result = await self._git("diff", "--stat", f"{self._mainline}...HEAD", cwd=path)
        return parse_diff_stat(result.stdout)

    async def changed_files(self, path: Path) -> list[str]:
        result = await self._git("diff", "--name-only", f"{self._mainline}...HEAD", cwd=path)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def log(self, path: Path) -> str:
        result = await self._git("log", "--oneline", f"{self._mainline}..HEAD", cwd=path)
        return result.stdout.strip()

    async def diff(self, path: Path) -> str:
        result = await self._git("diff", f"{self._mainline}...HEAD", cwd=path)
        return result.stdout

    async def merge(self, path: Path, branch_name: str) -> None:
        """Fast-forward the mainline onto ``branch_name``, then remove the worktree.

        Runs in the repository root, which must have the mainline checked out.
        """

        result = await self._git("merge", "--ff-only", branch_name, check=False)
        if not result.ok:
            raise MergeConflictError(
                f"Fast-forward merge of {branch_name} into {self._mainline} failed. "
                f"{self._mainline} has advanced since the branch was created; "
                f"rebase {branch_name} onto {self._mainline} first. "
                f"({result.stderr.strip()})"
            )
        logger.info("Merged session branch", extra={"branch": branch_name, "mainline": self._mainline})
        await self.cleanup(path, branch_name)

    async def cleanup(self, path: Path, branch_name: str) -> None:
        """Remove the worktree and delete its branch. Safe to call repeatedly."""

        for args in (
            ("worktree", "remove", "--force", str(path)),
            ("branch", "-D", branch_name),
            ("worktree", "prune"),
        ):
            try:
                result = await self._git(*args, check=False)
            except WorktreeError as exc:
                logger.debug("Cleanup step failed", extra={"step": args[0], "error": str(exc)})
                continue
            if not result.ok:
                logger.debug(
                    "Cleanup step skipped",
                    extra={"step": " ".join(args[:2]), "stderr": result.stderr.strip()},
                )

    async def push(self, path: Path, branch_name: str) -> bool:
        """Best-effort push of the session branch to the remote."""

        try:
            result = await self._git("push", "-u", self._remote, branch_name, cwd=path, check=False)
        except WorktreeError as exc:
            logger.warning("Push failed", extra={"branch": branch_name, "error": str(exc)})
            return False
        if not result.ok:
            logger.warning("Push failed", extra={"branch": branch_name, "stderr": result.stderr.strip()})
        return result.ok


__all__ = [
    "GitResult",
    "MergeConflictError",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeManager",
    "parse_diff_stat",
]
