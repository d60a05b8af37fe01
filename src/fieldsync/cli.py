"""
fieldsync command line interface.

Operator commands against a local sync database: inspect the queue,
run a drain, and deal with entries that exhausted their retries.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .engine import SyncEngine, create_engine
from .utils.config import FieldSyncConfig, load_config
from .utils.errors import FieldSyncError
from .utils.logging import setup_logging


console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="Offline sync and conflict-resolution engine"
    )
    parser.add_argument("--version", action="version", version=f"fieldsync {__version__}")
    parser.add_argument(
        "-c", "--config", action="append", default=[], metavar="PATH",
        help="Configuration file (json, yaml, toml or .env); may be repeated"
    )
    parser.add_argument("--db", metavar="PATH", help="Path to the local sync database")
    parser.add_argument("--remote-url", metavar="URL", help="Base URL of the sync server")
    parser.add_argument("--log-level", metavar="LEVEL", help="Logging level (default INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show queue length and pending counts")
    subparsers.add_parser("drain", help="Run one full sync against the remote")
    subparsers.add_parser("failed", help="List entries that exhausted their retries")

    retry = subparsers.add_parser("retry-failed", help="Make exhausted entries eligible again")
    retry.add_argument("--limit", type=int, default=None, help="Reset at most N entries")

    purge = subparsers.add_parser("purge-failed", help="Delete exhausted entries")
    purge.add_argument(
        "--older-than-days", type=float, default=None, metavar="N",
        help="Only delete entries created more than N days ago"
    )

    export = subparsers.add_parser("export", help="Dump local data as JSON")
    export.add_argument("-o", "--output", metavar="PATH", help="Write to a file instead of stdout")

    return parser


def resolve_config(args: argparse.Namespace) -> FieldSyncConfig:
    overrides: Dict[str, Any] = {}
    if args.db:
        overrides.setdefault("storage", {})["path"] = args.db
    if args.remote_url:
        overrides.setdefault("remote", {})["base_url"] = args.remote_url
    if args.log_level:
        overrides.setdefault("logging", {})["level"] = args.log_level
    return load_config(config_paths=args.config, extra_config=overrides or None)


async def cmd_status(engine: SyncEngine, args: argparse.Namespace) -> int:
    stats = await engine.store.get_stats(engine.config.sync.max_retries)

    table = Table(title="Sync status")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Database", str(engine.config.storage.path))
    table.add_row("Queue length", str(stats["queue_length"]))
    table.add_row("Exhausted entries", str(stats["failed_items"]))
    for entity_type, count in stats["pending"].items():
        table.add_row(f"Pending {entity_type}", str(count))
    table.add_row("Total pending", str(stats["total_pending"]))
    console.print(table)
    return 0


async def cmd_drain(engine: SyncEngine, args: argparse.Namespace) -> int:
    result = await engine.orchestrator.sync_all()

    table = Table(title="Drain result")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Unresolved", justify="right")
    table.add_row(str(result.synced), str(result.failed), str(result.skipped), str(result.unresolved))
    console.print(table)

    for error in result.errors:
        console.print(f"[red]-[/red] {error}")
    return 0 if result.success else 1


async def cmd_failed(engine: SyncEngine, args: argparse.Namespace) -> int:
    entries = await engine.queue.failed_entries()
    if not entries:
        console.print("No exhausted entries")
        return 0

    table = Table(title=f"Exhausted entries ({len(entries)})")
    table.add_column("Entry")
    table.add_column("Entity")
    table.add_column("Operation")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Last error")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.label,
            entry.operation.value,
            str(entry.attempts),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.last_error or "",
        )
    console.print(table)
    return 0


async def cmd_retry_failed(engine: SyncEngine, args: argparse.Namespace) -> int:
    count = await engine.queue.retry_failed(limit=args.limit)
    console.print(f"Re-queued {count} entr{'y' if count == 1 else 'ies'}")
    return 0


async def cmd_purge_failed(engine: SyncEngine, args: argparse.Namespace) -> int:
    count = await engine.queue.purge_failed(older_than_days=args.older_than_days)
    console.print(f"Purged {count} entr{'y' if count == 1 else 'ies'}")
    return 0


async def cmd_export(engine: SyncEngine, args: argparse.Namespace) -> int:
    data = await engine.store.export_data()
    text = json.dumps(data, indent=2)
    if args.output:
        Path(args.output).write_text(text)
        console.print(f"Exported to {args.output}")
    else:
        sys.stdout.write(text + "\n")
    return 0


COMMANDS = {
    "status": cmd_status,
    "drain": cmd_drain,
    "failed": cmd_failed,
    "retry-failed": cmd_retry_failed,
    "purge-failed": cmd_purge_failed,
    "export": cmd_export,
}


async def run(args: argparse.Namespace, config: FieldSyncConfig) -> int:
    engine = create_engine(config, monitor_connectivity=False)
    try:
        await engine.initialize()
        return await COMMANDS[args.command](engine, args)
    finally:
        await engine.stop()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
        setup_logging(
            app_name=config.app_name,
            log_level=config.logging.level,
            log_dir=config.logging.directory,
            enable_json=config.logging.format == "json",
            max_size=config.logging.max_size,
            backup_count=config.logging.backup_count,
            enable_sentry=config.logging.enable_sentry,
            sentry_dsn=config.logging.sentry_dsn,
        )
        return asyncio.run(run(args, config))
    except FieldSyncError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for suggestion in e.get_suggestions():
            console.print(f"  - {suggestion}")
        return 2
    except KeyboardInterrupt:
        console.print("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
