"""Forge MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from forge_mcp.agent.session_log import SessionLog
from forge_mcp.config import ForgeSettings
from forge_mcp.storage import ChromaRecordStore, ChromaUnavailableError, SessionPhase
from forge_mcp.storage.chroma import SNAPSHOT_EVENT


def load_store(settings: ForgeSettings) -> ChromaRecordStore:
    try:
        store = ChromaRecordStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    states = [SessionPhase(state) for state in args.state] if args.state else None
    records = store.list(states=states)
    if args.json:
        print(json.dumps([record.model_dump(mode="json") for record in records], indent=2))
    else:
        for record in records:
            print(
                f"{record.record_id} [{record.state.value}] {record.branch_name} "
                f"turns={record.total_turns} cost=${record.total_cost_usd:.2f}"
            )


def cmd_show(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    record = store.get(args.record_id)
    if record is None:
        print(f"No session record with id {args.record_id}")
        raise SystemExit(1)
    payload = record.model_dump(mode="json")
    payload["events"] = [event.model_dump(mode="json") for event in store.events(args.record_id)]
    print(json.dumps(payload, indent=2))


def cmd_log(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    lines, total = SessionLog(settings.log_dir, args.session_id).read_lines(args.after)
    for line in lines:
        print(line)
    if args.after and not lines:
        print(f"(no lines after {args.after}; {total} total)")


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    base = settings.resolved_worktree_base
    by_session = {record.session_id: record for record in store.list()}
    directories = sorted(path for path in base.iterdir() if path.is_dir()) if base.exists() else []
    payload = []
    for path in directories:
        record = by_session.get(path.name)
        payload.append(
            {
                "path": str(path),
                "session_id": path.name,
                "record_id": record.record_id if record else None,
                "state": record.state.value if record else "orphaned",
            }
        )
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    records = store.list()

    state_counts: dict[str, int] = {}
    for record in records:
        state_counts[record.state.value] = state_counts.get(record.state.value, 0) + 1

    metrics = {
        "sessions_total": len(records),
        "state_counts": state_counts,
        "autonomous_total": sum(1 for record in records if record.autonomous),
        "total_turns": sum(record.total_turns for record in records),
        "total_cost_usd": round(sum(record.total_cost_usd for record in records), 4),
    }
    print(json.dumps(metrics, indent=2))


def cmd_search(args: argparse.Namespace) -> None:
    settings = ForgeSettings()
    store = load_store(settings)
    filters = {"record_id": args.record_id} if args.record_id else None
    events = [
        event
        for event in store.search_events(args.query, filters=filters)
        if args.snapshots or event.event_type != SNAPSHOT_EVENT
    ]
    if args.limit:
        events = events[: args.limit]
    for event in events:
        record_id = event.metadata.get("record_id", "-")
        print(f"{event.timestamp.isoformat()} {record_id} {event.event_type} {event.document[:200]}")
    if not events:
        print(f"No events matching {args.query!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forge MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List session records")
    p_sessions.add_argument("--state", action="append", help="Filter by state (repeatable)")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_show = sub.add_parser("show", help="Show one record and its audit trail")
    p_show.add_argument("record_id")
    p_show.set_defaults(func=cmd_show)

    p_log = sub.add_parser("log", help="Print a session's log file")
    p_log.add_argument("session_id")
    p_log.add_argument("--after", type=int, default=0, help="Skip the first N lines")
    p_log.set_defaults(func=cmd_log)

    p_worktrees = sub.add_parser("worktrees", help="List worktree directories and their records")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_search = sub.add_parser("search", help="Search the audit trail")
    p_search.add_argument("query")
    p_search.add_argument("--record-id", help="Only events for this record")
    p_search.add_argument("--limit", type=int, default=0, help="Show at most N events")
    p_search.add_argument("--snapshots", action="store_true", help="Include record snapshots")
    p_search.set_defaults(func=cmd_search)

    p_metrics = sub.add_parser("metrics", help="Show session counts and spend")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
