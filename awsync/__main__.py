"""CLI entry point for awsync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .config import Config, load_config
from .engine import SyncEngine
from .errors import SyncError
from .report import log_buckets
from .stores import EventStore, open_store


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Set by the engine through `extra=`
CONTEXT_FIELDS = ("bucket_id", "store")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying the bucket and store when known."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging on stderr, keeping stdout for reports.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    default = logging.DEBUG if verbose else logging.INFO
    level = LOG_LEVELS.get(log_level, default) if log_level else default

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        JSONFormatter() if json_output
        else logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _staging_specs(config: Config) -> list[str]:
    """One staging datastore per host lives in the sync directory."""
    directory = config.staging.path
    if not directory.is_dir():
        return []
    return [f"local:{path}" for path in sorted(directory.glob(config.staging.pattern))]


async def _close_all(stores: list[EventStore]) -> None:
    for store in stores:
        await store.close()


async def cmd_sync(args: argparse.Namespace) -> int:
    """Sync one or more source stores into a destination store."""
    config = load_config(args.config)
    if args.workers:
        config.sync.workers = args.workers

    source_specs = args.sources or _staging_specs(config)
    if not source_specs:
        print(
            f"No sources given and no staging datastores in {config.staging.path}",
            file=sys.stderr,
        )
        return 1

    stores: list[EventStore] = []
    try:
        destination = open_store(args.destination or "remote:", config)
        stores.append(destination)
        sources = []
        for spec in source_specs:
            source = open_store(spec, config)
            stores.append(source)
            sources.append(source)
    except (ValueError, SyncError) as e:
        print(f"Error: {e}", file=sys.stderr)
        await _close_all(stores)
        return 1

    engine = SyncEngine.from_config(config.sync)
    try:
        reports = await engine.sync_many(sources, destination)
        if args.log_buckets:
            await log_buckets(destination)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _close_all(stores)

    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        for report in reports:
            print(f"{report.source} -> {report.destination}")
            if report.error:
                print(f"  Failed: {report.error}")
            for o in report.outcomes:
                if o.delta is not None:
                    print(f"  {o.source_bucket_id}: +{o.delta} ({o.status.value})")
                else:
                    print(f"  {o.source_bucket_id}: {o.status.value} ({o.error})")

    return 0 if all(r.ok for r in reports) else 1


async def cmd_buckets(args: argparse.Namespace) -> int:
    """List the buckets of a store with their event counts."""
    config = load_config(args.config)

    try:
        store = open_store(args.store, config)
    except (ValueError, SyncError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        counts = await log_buckets(store)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()

    if args.json:
        print(json.dumps(counts, indent=2))
    else:
        for bucket_id, count in counts.items():
            print(f"{bucket_id}: {count}")

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="awsync",
        description="One-way sync of event buckets between ActivityWatch datastores",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync pass per source")
    sync_parser.add_argument(
        "--from",
        dest="sources",
        action="append",
        metavar="STORE",
        help="Source store (local:PATH or remote:HOST:PORT), repeatable. "
             "Default: every staging datastore in the sync directory",
    )
    sync_parser.add_argument(
        "--to",
        dest="destination",
        metavar="STORE",
        default=None,
        help="Destination store (default: the configured server)",
    )
    sync_parser.add_argument(
        "-w", "--workers",
        type=int,
        default=None,
        help="Buckets synced concurrently",
    )
    sync_parser.add_argument(
        "--log-buckets",
        action="store_true",
        help="Log the destination buckets and event counts afterwards",
    )
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="Print pass reports as JSON",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Buckets command
    buckets_parser = subparsers.add_parser("buckets", help="List buckets and event counts")
    buckets_parser.add_argument("store", help="Store to inspect (local:PATH or remote:HOST:PORT)")
    buckets_parser.add_argument(
        "--json",
        action="store_true",
        help="Print counts as JSON",
    )
    buckets_parser.set_defaults(func=cmd_buckets)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
