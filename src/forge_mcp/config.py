"""Configuration management for Forge MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_BLOCKED_ENV_KEYS: tuple[str, ...] = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "DATABASE_URL",
    "DIRECT_URL",
    "POSTGRES_URL",
    "REDIS_URL",
    "GITHUB_TOKEN",
    "SLACK_BOT_TOKEN",
    "SLACK_SIGNING_SECRET",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_WEBHOOK_SECRET",
    "AWS_SECRET_ACCESS_KEY",
)

DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "Read",
    "Edit",
    "Write",
    "Glob",
    "Grep",
    "Bash(git:*)",
    "Bash(mypy:*)",
    "Bash(pyright:*)",
    "Bash(pytest:*)",
    "Bash(python -m pytest:*)",
    "Bash(uv run:*)",
    "Bash(uv add:*)",
    "Bash(uv sync:*)",
    "Bash(pip install:*)",
    "Bash(ls:*)",
    "Bash(cat:*)",
    "Bash(head:*)",
    "Bash(tail:*)",
    "Bash(wc:*)",
)


class ForgeSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    agent_path: str | None = Field(default=None, validation_alias="FORGE_AGENT_PATH")
    agent_command: str = Field(default="claude", validation_alias="FORGE_AGENT_COMMAND")
    agent_model: str | None = Field(default=None, validation_alias="FORGE_AGENT_MODEL")

    repo_root: Path = Field(default=Path("."), validation_alias="FORGE_REPO_ROOT")
    worktree_base: Path | None = Field(default=None, validation_alias="FORGE_WORKTREE_BASE")
    mainline_branch: str = Field(default="main", validation_alias="FORGE_MAINLINE_BRANCH")
    remote_name: str = Field(default="origin", validation_alias="FORGE_REMOTE")
    branch_prefix: str = Field(default="forge/", validation_alias="FORGE_BRANCH_PREFIX")

    log_dir: Path = Field(default=Path("./logs/code-sessions"), validation_alias="FORGE_SESSION_LOG_DIR")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    prompt_paths: tuple[Path, ...] = Field(
        default=(Path("prompts"),), validation_alias="FORGE_PROMPT_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="FORGE_LOG_LEVEL")

    one_shot_timeout_seconds: float = Field(default=600.0, validation_alias="FORGE_ONE_SHOT_TIMEOUT")
    one_shot_max_turns: int = Field(default=25, validation_alias="FORGE_ONE_SHOT_MAX_TURNS")
    kill_grace_seconds: float = Field(default=5.0, validation_alias="FORGE_KILL_GRACE")
    empty_exit_is_success: bool = Field(default=True, validation_alias="FORGE_EMPTY_EXIT_IS_SUCCESS")
    blocked_env_keys: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_BLOCKED_ENV_KEYS, validation_alias="FORGE_BLOCKED_ENV_KEYS"
    )
    allowed_tools: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_ALLOWED_TOOLS, validation_alias="FORGE_ALLOWED_TOOLS"
    )

    auto_approve_minutes: float = Field(default=20.0, validation_alias="FORGE_AUTO_APPROVE_MINUTES")
    max_planning_cost_usd: float = Field(default=5.0, validation_alias="FORGE_MAX_PLANNING_COST")
    planning_max_minutes: float = Field(default=30.0, validation_alias="FORGE_PLANNING_MAX_MINUTES")
    max_cost_usd: float = Field(default=20.0, validation_alias="FORGE_MAX_COST")
    max_duration_minutes: float = Field(default=120.0, validation_alias="FORGE_MAX_DURATION_MINUTES")
    review_max_minutes: float = Field(default=15.0, validation_alias="FORGE_REVIEW_MAX_MINUTES")
    max_retries: int = Field(default=3, validation_alias="FORGE_MAX_RETRIES")
    commit_strategy: Literal["incremental", "single"] = Field(
        default="incremental", validation_alias="FORGE_COMMIT_STRATEGY"
    )
    review_max_rounds: int = Field(default=3, validation_alias="FORGE_REVIEW_MAX_ROUNDS")

    notify_on_plan_ready: bool = Field(default=True, validation_alias="FORGE_NOTIFY_PLAN_READY")
    notify_on_progress: bool = Field(default=True, validation_alias="FORGE_NOTIFY_PROGRESS")
    notify_on_complete: bool = Field(default=True, validation_alias="FORGE_NOTIFY_COMPLETE")
    notify_on_error: bool = Field(default=True, validation_alias="FORGE_NOTIFY_ERROR")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FORGE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("prompt_paths", mode="before")
    @classmethod
    def _parse_prompt_paths(cls, value):
        if value is None or value == "":
            return (Path("prompts"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("prompts"),)
        raise TypeError("FORGE_PROMPT_PATHS must be a list of paths or a path-separated string")

    @field_validator("blocked_env_keys", "allowed_tools", mode="before")
    @classmethod
    def _parse_csv(cls, value):
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator(
        "one_shot_timeout_seconds",
        "kill_grace_seconds",
        "auto_approve_minutes",
        "max_planning_cost_usd",
        "planning_max_minutes",
        "max_cost_usd",
        "max_duration_minutes",
        "review_max_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("ceilings and timers must be > 0")
        return value

    @field_validator("one_shot_max_turns", "review_max_rounds")
    @classmethod
    def _validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("turn and round limits must be >= 1")
        return value

    @property
    def resolved_worktree_base(self) -> Path:
        """Directory holding one worktree per session, outside the main checkout."""

        if self.worktree_base is not None:
            return self.worktree_base
        root = self.repo_root.expanduser().resolve()
        return root.parent / f"{root.name}-worktrees"


@lru_cache(maxsize=1)
def get_settings() -> ForgeSettings:
    """Return cached settings instance."""

    settings = ForgeSettings()
    settings.repo_root = settings.repo_root.expanduser().resolve()
    settings.log_dir = settings.log_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.prompt_paths = tuple(path.expanduser().resolve() for path in settings.prompt_paths)
    return settings


__all__ = [
    "DEFAULT_ALLOWED_TOOLS",
    "DEFAULT_BLOCKED_ENV_KEYS",
    "ForgeSettings",
    "get_settings",
]
