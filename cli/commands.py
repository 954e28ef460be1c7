"""
TodoDB CLI
==========
Command-line front end over TodoDatabase.

Usage:
    tododb [--data-dir DIR] [--name NAME] [--log-level LEVEL] COMMAND

    tododb add TITLE [--done] [--at ISO]
    tododb list [--raw]
    tododb range START END [--raw]
    tododb done ID
    tododb update ID [--title T] [--done | --not-done]
    tododb delete ID
    tododb check [--rebuild]
    tododb stats

Exit status is 0 on success and 1 when the engine reports an error.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import List, Optional, TextIO

from cli.renderer import Renderer
from engine.config import EngineConfig
from engine.database import DEFAULT_NAME, TodoDatabase
from engine.errors import TodoStoreError, ValidationError

logger = logging.getLogger(__name__)


# ─── Commands ────────────────────────────────────────────────────────────

def cmd_add(args, db: TodoDatabase, out: Renderer) -> None:
    record_id = db.add_todo(args.title, completed=args.done, created_at=args.at)
    out.render_message(f"Added todo {record_id}")


def cmd_list(args, db: TodoDatabase, out: Renderer) -> None:
    out.render_todos(db.get_todos())


def cmd_range(args, db: TodoDatabase, out: Renderer) -> None:
    out.render_todos(db.get_todos_by_date_range(args.start, args.end))


def cmd_done(args, db: TodoDatabase, out: Renderer) -> None:
    todo = db.get_todo(args.id)
    db.update_todo(replace(todo, completed=True))
    out.render_message(f"Completed todo {args.id}")


def cmd_update(args, db: TodoDatabase, out: Renderer) -> None:
    if args.title is None and args.completed is None:
        raise ValidationError("nothing to update: pass --title and/or --done/--not-done")
    todo = db.get_todo(args.id)
    if args.title is not None:
        todo = replace(todo, title=args.title)
    if args.completed is not None:
        todo = replace(todo, completed=args.completed)
    db.update_todo(todo)
    out.render_message(f"Updated todo {args.id}")


def cmd_delete(args, db: TodoDatabase, out: Renderer) -> None:
    db.delete_todo(args.id)
    out.render_message(f"Deleted todo {args.id}")


def cmd_check(args, db: TodoDatabase, out: Renderer) -> int:
    if args.rebuild:
        count = db.rebuild_index()
        out.render_message(f"Rebuilt index: {count} entries")
    issues = db.check_integrity()
    for issue in issues:
        out.render_message(f"  - {issue}")
    out.render_message("OK" if not issues else f"{len(issues)} issue(s) found")
    return 0 if not issues else 1


def cmd_stats(args, db: TodoDatabase, out: Renderer) -> None:
    out.render_message(json.dumps(db.stats(), indent=2, default=str))


COMMANDS = {
    "add": cmd_add,
    "list": cmd_list,
    "range": cmd_range,
    "done": cmd_done,
    "update": cmd_update,
    "delete": cmd_delete,
    "check": cmd_check,
    "stats": cmd_stats,
}


# ─── Parser ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tododb",
        description="Embedded todo store with a by-date index",
    )
    parser.add_argument("--data-dir", default=None,
                        help="Directory holding stores (default: $TODODB_DATA_DIR or ./data)")
    parser.add_argument("--name", default=os.environ.get("TODODB_NAME", DEFAULT_NAME),
                        help="Store name (default: %(default)s)")
    parser.add_argument("--log-level", default=os.environ.get("TODODB_LOG_LEVEL", "WARNING"),
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        type=str.upper, help="Logging level (default: %(default)s)")

    sub = parser.add_subparsers(dest="command", required=True)

    p_add = sub.add_parser("add", help="Add a todo")
    p_add.add_argument("title")
    p_add.add_argument("--done", action="store_true", help="Mark it completed")
    p_add.add_argument("--at", default=None, help="Creation time (ISO 8601, default now)")

    p_list = sub.add_parser("list", help="List all todos in id order")
    p_list.add_argument("--raw", action="store_true", help="Pipe-separated output")

    p_range = sub.add_parser("range", help="Todos created between START and END (inclusive)")
    p_range.add_argument("start")
    p_range.add_argument("end")
    p_range.add_argument("--raw", action="store_true", help="Pipe-separated output")

    p_done = sub.add_parser("done", help="Mark a todo completed")
    p_done.add_argument("id", type=int)

    p_update = sub.add_parser("update", help="Change a todo's title or status")
    p_update.add_argument("id", type=int)
    p_update.add_argument("--title", default=None)
    status = p_update.add_mutually_exclusive_group()
    status.add_argument("--done", dest="completed", action="store_const", const=True)
    status.add_argument("--not-done", dest="completed", action="store_const", const=False)

    p_delete = sub.add_parser("delete", help="Delete a todo")
    p_delete.add_argument("id", type=int)

    p_check = sub.add_parser("check", help="Verify the index against the records")
    p_check.add_argument("--rebuild", action="store_true",
                         help="Rebuild the index before checking")

    sub.add_parser("stats", help="Show store statistics as JSON")
    return parser


# ─── Entry point ─────────────────────────────────────────────────────────

def run(argv: Optional[List[str]] = None, output: TextIO = None) -> int:
    """Parse arguments, run one command, return the exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    renderer = Renderer(output)
    if getattr(args, "raw", False):
        renderer.mode = "raw"

    try:
        config = EngineConfig.from_env(data_dir=args.data_dir)
    except ValueError as e:
        renderer.render_error(e)
        return 1

    try:
        with TodoDatabase(args.name, config=config) as db:
            status = COMMANDS[args.command](args, db, renderer)
    except TodoStoreError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        renderer.render_error(e)
        return 1
    return status or 0


def main() -> None:
    sys.exit(run())
