"""FastMCP server bootstrap for Forge."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentNotFoundError, AgentRunner
from .config import ForgeSettings, get_settings
from .notify import LoggingChannel, NotificationChannel, SessionNotifier
from .prompts import PromptBuilder, PromptLoadError, PromptLoader, PromptTemplates
from .sessions import (
    AutonomousFlow,
    SessionOrchestrator,
    SessionReconciler,
    SessionRegistry,
)
from .storage import ChromaRecordStore, ChromaUnavailableError, InMemoryRecordStore, RecordStore
from .tools import register_tools
from .worktree import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the Forge server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[ForgeSettings] = None,
    runner: AgentRunner | None = None,
    store: RecordStore | None = None,
    channel: NotificationChannel | None = None,
) -> FastMCP:
    """Wire the orchestration services and expose them as MCP tools."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)

    agent_metadata: dict[str, Any] = {
        "available": False,
        "version": None,
        "error": None,
    }

    if runner is None:
        try:
            runner = AgentRunner(
                Path(settings.agent_path) if settings.agent_path else None,
                command=settings.agent_command,
                settings=settings,
            )
        except AgentNotFoundError as exc:
            agent_metadata["error"] = str(exc)
            runner = None
    if runner is not None:
        agent_metadata["available"] = True
        try:
            version_result = _run_sync(runner.version())
            if version_result.ok:
                agent_metadata["version"] = version_result.stdout.strip()
            else:
                agent_metadata["error"] = (
                    version_result.stderr.strip()
                    or f"Agent version command failed with exit code {version_result.returncode}"
                )
        except OSError as exc:
            agent_metadata["error"] = str(exc)

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "forge_sessions",
        "error": None,
    }
    if store is None:
        try:
            chroma_store = ChromaRecordStore(settings.chroma_persist_path)
            chroma_store.ping()
            chroma_metadata["available"] = True
            store = chroma_store
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            logger.warning("Chroma unavailable, records are kept in memory", extra={"error": str(exc)})
            store = InMemoryRecordStore()
    storage_backend = type(store).__name__

    prompt_error: str | None = None
    try:
        templates = PromptLoader(settings.prompt_paths).load()
    except PromptLoadError as exc:
        prompt_error = str(exc)
        logger.warning("Prompt overrides ignored", extra={"error": prompt_error})
        templates = PromptTemplates()

    registry = SessionRegistry()
    registry.install_shutdown_hook()
    notifier = SessionNotifier(channel or LoggingChannel(), registry)
    worktrees = WorktreeManager(
        settings.repo_root,
        settings.resolved_worktree_base,
        mainline=settings.mainline_branch,
        remote=settings.remote_name,
    )
    prompts = PromptBuilder(
        templates,
        mainline=settings.mainline_branch,
        commit_strategy=settings.commit_strategy,
        max_retries=settings.max_retries,
    )

    orchestrator: SessionOrchestrator | None = None
    autonomous: AutonomousFlow | None = None
    if runner is not None:
        orchestrator = SessionOrchestrator(
            settings, runner, worktrees, registry, store, notifier, prompts
        )
        autonomous = AutonomousFlow(orchestrator)
    reconciler = SessionReconciler(registry, store, worktrees, notifier)

    # Nothing is running yet, so every record claiming a live process is a zombie.
    startup_reconciler = SessionReconciler(registry, store, worktrees)
    reconcile_actions: list[dict[str, Any]] = []
    for report in _run_sync(startup_reconciler.reconcile_all()):
        reconcile_actions.append(
            {
                "record_id": report.record_id,
                "session_id": report.session_id,
                "outcome": report.outcome.value,
            }
        )
    if reconcile_actions:
        logger.info("Reconciled sessions at startup", extra={"count": len(reconcile_actions)})

    server = FastMCP(
        name="Forge MCP",
        version=__version__,
        instructions=(
            "Forge dispatches coding-agent sessions against one repository, each in its "
            "own git worktree and branch. Create and start sessions, answer them while "
            "they wait for input, then approve (fast-forward merge) or reject the result. "
            "start_autonomous runs a plan/execute/review loop without supervision."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        orchestrator=orchestrator,
        autonomous=autonomous,
        reconciler=reconciler,
    )

    @server.resource(
        "resource://forge/status",
        name="forge_status",
        title="Forge MCP Status",
        description="Provides the current runtime status for the Forge MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        state_counts: dict[str, int] = {}
        recent: list[dict[str, Any]] = []
        storage_error = None
        try:
            records = store.list()
            for record in records:
                state_counts[record.state.value] = state_counts.get(record.state.value, 0) + 1
            recent = [
                {
                    "record_id": record.record_id,
                    "session_id": record.session_id,
                    "state": record.state.value,
                    "branch": record.branch_name,
                }
                for record in records[-5:]
            ]
        except Exception as exc:  # noqa: BLE001 - status must render even if storage fails
            storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agent": {
                "path": settings.agent_path,
                "command": settings.agent_command,
                "model": settings.agent_model,
                **agent_metadata,
            },
            "repository": {
                "root": str(settings.repo_root),
                "worktree_base": str(settings.resolved_worktree_base),
                "mainline": settings.mainline_branch,
            },
            "storage": {
                "backend": storage_backend,
                "chroma": chroma_metadata,
                "error": storage_error,
            },
            "prompts": {"error": prompt_error},
            "sessions": {
                "active": sorted(registry.active()),
                "state_counts": state_counts,
                "recent": recent,
                "startup_reconcile": reconcile_actions,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "agent_runner", runner)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "record_store", store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "session_registry", registry)
    setattr(server, "orchestrator", orchestrator)
    setattr(server, "autonomous_flow", autonomous)
    setattr(server, "reconcile_actions", reconcile_actions)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Forge MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Forge MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
