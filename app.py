"""Command line helper for the inventory storage layer."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Awaitable, Callable, Optional

import settings as settings_module
from invcore.errors import StorageError
from invcore.logging_config import configure_logging
from invcore.storage import InventoryStorage, build_storage

logger = logging.getLogger(__name__)


async def _with_storage(
    args: argparse.Namespace,
    work: Callable[[InventoryStorage], Awaitable[int]],
) -> int:
    storage = build_storage(args.config)
    await storage.connect()
    try:
        return await work(storage)
    finally:
        await storage.close()


def _run(args: argparse.Namespace, work: Callable[[InventoryStorage], Awaitable[int]]) -> int:
    try:
        return asyncio.run(_with_storage(args, work))
    except (StorageError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def command_init(args: argparse.Namespace) -> int:
    username = args.admin_username or os.environ.get("ADMIN_USERNAME", "")
    email = args.admin_email or os.environ.get("ADMIN_EMAIL", "")
    password_hash = args.admin_password_hash or os.environ.get("ADMIN_PASSWORD_HASH", "")

    async def work(storage: InventoryStorage) -> int:
        missing = await storage.ensure_schema()
        for tab, headers in missing.items():
            print(f"Tab {tab} is missing headers: {', '.join(headers)}")
        if username:
            if not (email and password_hash):
                print("Error: an admin account needs both an email and a password hash", file=sys.stderr)
                return 1
            admin = await storage.ensure_default_admin(username, email, password_hash)
            print(f"Admin account: {admin.username} ({admin.id})")
        print(f"Storage ready ({storage.backend_name}).")
        return 0

    return _run(args, work)


def command_users(args: argparse.Namespace) -> int:
    async def work(storage: InventoryStorage) -> int:
        users = await storage.list_users()
        counts = await storage.count_items_by_owner()
        if not users:
            print("No users found.")
            return 0
        for user in users:
            limit = "unlimited" if user.has_unlimited else str(user.item_limit)
            status = "active" if user.is_active else "inactive"
            print(
                f"{user.id:<16} {user.username:<20} {user.role:<6} {status:<8} "
                f"items {counts.get(user.id, 0)}/{limit}"
            )
        return 0

    return _run(args, work)


def command_stats(args: argparse.Namespace) -> int:
    async def work(storage: InventoryStorage) -> int:
        user = await storage.get_user(args.user_id)
        stats = await storage.get_stats(user.id)
        print(f"User            : {user.username}")
        print(f"Total items     : {stats.total_items}")
        print(f"Total value     : {stats.total_value:.2f}")
        print(f"Low stock items : {stats.low_stock_items}")
        print(f"Categories      : {stats.total_categories}")
        return 0

    return _run(args, work)


def command_refresh_counts(args: argparse.Namespace) -> int:
    async def work(storage: InventoryStorage) -> int:
        changed = await storage.refresh_inventory_counts()
        if not changed:
            print("Inventory counts already up to date.")
            return 0
        for user_id, count in sorted(changed.items()):
            print(f"{user_id}: {count}")
        return 0

    return _run(args, work)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inventory storage management tool")
    parser.add_argument("--settings", default=None, help="Path to a JSON settings file (defaults to settings.json in the data directory)")
    parser.add_argument("--log-level", default=None, help="Logging level (defaults to the settings file, then LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create missing tables, tabs and header rows")
    init_parser.add_argument("--admin-username", default="", help="Create this admin account if missing")
    init_parser.add_argument("--admin-email", default="", help="Email of the admin account")
    init_parser.add_argument(
        "--admin-password-hash",
        default="",
        help="Already hashed password stored for the admin account",
    )
    init_parser.set_defaults(func=command_init)

    users_parser = subparsers.add_parser("users", help="List accounts with their item counts")
    users_parser.set_defaults(func=command_users)

    stats_parser = subparsers.add_parser("stats", help="Show inventory statistics for a user")
    stats_parser.add_argument("user_id", help="Id of the user")
    stats_parser.set_defaults(func=command_stats)

    refresh_parser = subparsers.add_parser(
        "refresh-counts",
        help="Store live item counts in the spreadsheet users tab",
    )
    refresh_parser.set_defaults(func=command_refresh_counts)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings_path = args.settings or settings_module.default_settings_path()
    try:
        args.config = settings_module.load_storage_settings(settings_path)
    except (OSError, ValueError) as exc:
        print(f"Error: invalid settings {settings_path}: {exc}", file=sys.stderr)
        return 1
    configure_logging(args.log_level or args.config.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
