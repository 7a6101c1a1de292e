"""Operator CLI for notification maintenance.

Usage:
    collab-notify fix-structure --user u1
    collab-notify reset
    collab-notify unread --user u1
    collab-notify purge-read --user u1
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from collab_notify.config import EngineConfig, load_config
from collab_notify.engine import NotificationEngine
from collab_notify.logs import configure_logging, get_logger
from collab_notify.store.sqlite import SQLiteNotificationStore

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="collab-notify", description="Notification store maintenance.")
    parser.add_argument("--config", help="Path to config YAML (default: $COLLAB_NOTIFY_CONFIG or ~/.collab_notify/config.yml)")
    parser.add_argument("--db", help="SQLite database path (overrides config)")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")

    sub = parser.add_subparsers(dest="command", required=True)
    fix = sub.add_parser("fix-structure", help="Rewrite a user's records into the current shape")
    fix.add_argument("--user", required=True, help="Recipient user id")
    sub.add_parser("reset", help="Clear caches and repair subtask records")
    unread = sub.add_parser("unread", help="Print a user's unread count")
    unread.add_argument("--user", required=True, help="Recipient user id")
    purge = sub.add_parser("purge-read", help="Delete a user's read records")
    purge.add_argument("--user", required=True, help="Recipient user id")
    return parser


async def run(args: argparse.Namespace, config: EngineConfig) -> int:
    store = SQLiteNotificationStore(args.db or config.store.db_path, collection=config.store.collection)
    engine = NotificationEngine(store, config=config)
    await engine.init()
    try:
        if args.command == "fix-structure":
            fixed = await engine.fix_notification_structure(args.user)
            print(f"Fixed {fixed} notification(s) for {args.user}")
        elif args.command == "reset":
            repaired = await engine.reset_notification_system()
            print(f"Reset complete; repaired {repaired} subtask notification(s)")
        elif args.command == "unread":
            count = await engine.get_unread_notification_count(args.user)
            print(count)
        elif args.command == "purge-read":
            deleted = await engine.delete_read_notifications(args.user)
            print(f"Deleted {deleted} read notification(s) for {args.user}")
    finally:
        await engine.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.config)
    try:
        return asyncio.run(run(args, config))
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.error("command failed", command=args.command, error=str(exc), exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
