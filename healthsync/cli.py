"""
Command line entry point for device-side sync.

Usage:
    healthsync login --email <email> [--device-name <name>]
    healthsync logout
    healthsync sync
    healthsync status
    healthsync watch
"""

import argparse
import asyncio
import getpass
import logging
import platform
import sys
from datetime import timezone

from healthsync.core.config import Settings, get_settings
from healthsync.schemas.sync import AuthRequest
from healthsync.services.errors import LoginFailedError
from healthsync.services.local_config import LocalConfig
from healthsync.services.local_store import LocalStore
from healthsync.services.remote_client import RemoteClient
from healthsync.services.scheduler import SyncScheduler, format_relative_time, run_with_sync_lifecycle
from healthsync.services.sync import SyncClient

logger = logging.getLogger(__name__)


def _local_config(settings: Settings) -> LocalConfig:
    return LocalConfig(settings.config_dir, default_server_url=settings.server_url)


async def _open_client(settings: Settings, config: LocalConfig) -> SyncClient:
    store = LocalStore.from_path(settings.local_db_path, echo=settings.debug)
    await store.init()
    remote = RemoteClient(config, timeout=settings.http_timeout_seconds)
    return SyncClient(
        store,
        remote,
        pull_limit=settings.pull_limit,
        push_batch_size=settings.push_batch_size,
    )


async def _close_client(client: SyncClient) -> None:
    await client.remote.close()
    await client.store.close()


async def cmd_login(args: argparse.Namespace, settings: Settings) -> int:
    """Exchange credentials for a token and store it."""
    config = _local_config(settings)
    password = args.password or getpass.getpass("Password: ")
    remote = RemoteClient(config, timeout=settings.http_timeout_seconds)
    try:
        response = await remote.authenticate(AuthRequest(
            email=args.email,
            password=password,
            device_name=args.device_name or platform.node() or "cli",
        ))
    except LoginFailedError as e:
        print(f"Login failed: {e}")
        return 1
    finally:
        await remote.close()

    config.set("auth_token", response.token)
    print("Logged in.")
    return 0


async def cmd_logout(args: argparse.Namespace, settings: Settings) -> int:
    _local_config(settings).delete("auth_token")
    print("Logged out.")
    return 0


async def cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    """Run one sync cycle with progress output."""
    config = _local_config(settings)
    if not config.is_logged_in():
        print('Not logged in. Please run "healthsync login" first.')
        return 1

    client = await _open_client(settings, config)
    try:
        scheduler = SyncScheduler(client, config)
        result = await scheduler.run_once("manual")
        if result is None:
            print(f"Sync failed: {scheduler.status.message or scheduler.status.kind}")
            if scheduler.status.message and scheduler.status.message.startswith("auth"):
                print('Please run "healthsync login" again.')
            return 1
    finally:
        await _close_client(client)

    if result.pulled:
        print(f"Pulling... {result.pulled} changes")
    if result.pushed:
        print(f"Pushing... {result.pushed} changes ({result.conflicts} conflicts)")
    print("Done.")
    return 0


async def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Show login state, cursor, pending changes and last sync."""
    config = _local_config(settings)
    store = LocalStore.from_path(settings.local_db_path, echo=settings.debug)
    await store.init()
    try:
        pending = await store.count_outbox()
        cursor = await store.get_cursor()
        last = await store.last_sync()
    finally:
        await store.close()

    print(f"Server:   {config.get_server_url()}")
    print(f"Login:    {'logged in' if config.is_logged_in() else 'not logged in'}")
    print(f"Cursor:   {cursor}")
    print(f"Pending:  {pending} changes")
    if last is None:
        print("Last sync: never")
    else:
        when = format_relative_time(last["completed_at"].replace(tzinfo=timezone.utc))
        detail = f" - {last['error_message']}" if last["error_message"] else ""
        print(f"Last sync: {last['status']} ({last['trigger']}, {when}){detail}")
    return 0


async def cmd_watch(args: argparse.Namespace, settings: Settings) -> int:
    """Keep syncing in the background until interrupted."""
    config = _local_config(settings)
    if not config.is_logged_in():
        print('Not logged in. Please run "healthsync login" first.')
        return 1

    client = await _open_client(settings, config)
    scheduler = SyncScheduler(
        client,
        config,
        interval_seconds=settings.sync_interval_seconds,
        shutdown_timeout=settings.shutdown_timeout_seconds,
    )
    scheduler.subscribe(lambda status: logger.info(f"Sync status: {status.kind}"))
    try:
        await run_with_sync_lifecycle(asyncio.Event().wait(), scheduler)
    finally:
        await _close_client(client)
    return 0


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "sync": cmd_sync,
    "status": cmd_status,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="healthsync", description="Sync local health data with the server")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in and store a device token")
    login.add_argument("--email", required=True)
    login.add_argument("--password", help="Prompted for when omitted")
    login.add_argument("--device-name", help="Name shown for this device's session")

    sub.add_parser("logout", help="Forget the stored token")
    sub.add_parser("sync", help="Pull server changes and push local ones")
    sub.add_parser("status", help="Show sync state")
    sub.add_parser("watch", help="Sync now, every interval, and on exit")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = get_settings()
    try:
        return asyncio.run(COMMANDS[args.command](args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
