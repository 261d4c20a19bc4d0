from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Optional

from dotenv import load_dotenv

from storyloop.durable import loops as loop_store
from storyloop.durable import notes as note_store
from storyloop.durable import work_items as item_store
from storyloop.durable.db import connect_loop_db
from storyloop.feature_flags import api_host, api_port
from storyloop.models import ExternalRef, LoopStatus, StoryPriority, WorkGroup, WorkItem
from storyloop.observability import configure_logfire, configure_logging


def _item_from_dict(data: dict[str, Any], group_id: Optional[str], workspace: Optional[str]) -> WorkItem:
    return WorkItem(
        id=str(data["id"]),
        title=str(data["title"]),
        description=str(data.get("description") or ""),
        group_id=group_id,
        workspace_path=None if group_id else (data.get("workspace_path") or workspace),
        acceptance_criteria=[str(value) for value in data.get("acceptance_criteria") or []],
        priority=StoryPriority(data.get("priority") or StoryPriority.MEDIUM.value),
        depends_on=[str(value) for value in data.get("depends_on") or []],
        max_attempts=int(data.get("max_attempts") or 3),
        research_only=bool(data.get("research_only", False)),
        external_ref=ExternalRef.from_dict(data.get("external_ref")),
        sort_order=int(data.get("sort_order") or 0),
    )


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from storyloop.api.server import create_app

    configure_logfire()
    app = create_app(db_path=args.db)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _cmd_loops(args: argparse.Namespace) -> int:
    conn = connect_loop_db(args.db)
    statuses = [LoopStatus(args.status)] if args.status else None
    records = loop_store.list_loops(conn, statuses, limit=args.limit)
    payload = [
        {
            "id": record.id,
            "status": record.status.value,
            "workspace_path": record.workspace_path,
            "group_id": record.group_id,
            "iterations": record.total_iterations,
            "completed": record.total_items_completed,
            "failed": record.total_items_failed,
            "message": record.status_message,
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    conn = connect_loop_db(args.db)
    record = loop_store.get_loop(conn, args.loop_id)
    if record is None:
        print(f"Loop not found: {args.loop_id}", file=sys.stderr)
        return 1
    print(json.dumps(record.to_dict(), indent=2))
    return 0


def _cmd_notes(args: argparse.Namespace) -> int:
    conn = connect_loop_db(args.db)
    if loop_store.get_loop(conn, args.loop_id) is None:
        print(f"Loop not found: {args.loop_id}", file=sys.stderr)
        return 1
    notes = note_store.list_agent_notes(conn, loop_id=args.loop_id, item_id=args.item)
    print(json.dumps([note.to_dict() for note in notes], indent=2))
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    """Load a JSON document of stories: {"group": {...}?, "items": [...]}."""
    with open(args.path, "r", encoding="utf-8") as handle:
        document = json.load(handle)
    conn = connect_loop_db(args.db)
    group_id = None
    group_data = document.get("group")
    if group_data:
        group = WorkGroup(
            id=str(group_data["id"]),
            name=str(group_data.get("name") or group_data["id"]),
            workspace_path=str(group_data["workspace_path"]),
            description=str(group_data.get("description") or ""),
        )
        if item_store.get_group(conn, group.id) is None:
            item_store.insert_group(conn, group)
        group_id = group.id
    count = 0
    for raw in document.get("items") or []:
        item_store.insert_work_item(conn, _item_from_dict(raw, group_id, args.workspace))
        count += 1
    print(f"Imported {count} stories" + (f" into group {group_id}" if group_id else ""))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="storyloop: autonomous story completion loops")
    parser.add_argument("--db", default=None, help="SQLite database path (default: SL_DB_PATH)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=api_host())
    serve.add_argument("--port", type=int, default=api_port())
    serve.set_defaults(func=_cmd_serve)

    loops = sub.add_parser("loops", help="List loop records")
    loops.add_argument("--status", choices=[status.value for status in LoopStatus])
    loops.add_argument("--limit", type=int, default=50)
    loops.set_defaults(func=_cmd_loops)

    show = sub.add_parser("show", help="Show one loop with its iteration log")
    show.add_argument("loop_id")
    show.set_defaults(func=_cmd_show)

    notes = sub.add_parser("notes", help="Show the agent notes written by a loop")
    notes.add_argument("loop_id")
    notes.add_argument("--item", default=None, help="Only notes for this story")
    notes.set_defaults(func=_cmd_notes)

    importer = sub.add_parser("import", help="Import stories from a JSON file")
    importer.add_argument("path")
    importer.add_argument("--workspace", default=None, help="Workspace for ungrouped stories")
    importer.set_defaults(func=_cmd_import)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
