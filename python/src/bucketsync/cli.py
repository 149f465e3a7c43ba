"""CLI entry point for bucketsync."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from bucketsync import metrics
from bucketsync.bucket import Bucket, SyncOptions
from bucketsync.config import BucketSyncConfig, load_config
from bucketsync.context import Context
from bucketsync.errors import BucketError
from bucketsync.logging_config import configure_logging
from bucketsync.storage import open_bucket

logger = logging.getLogger("bucketsync")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="bucketsync",
        description="bucketsync - checksum-based sync between local trees and buckets",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("bucketsync.yaml"),
        help="Path to YAML configuration file (default: bucketsync.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without modifying the bucket",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Emit a debug event for every bucket operation",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Cancel the command after this many seconds",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("check", help="Check that the bucket is reachable")

    ls = commands.add_parser("ls", help="List keys under a prefix")
    ls.add_argument("prefix", nargs="?", default="")

    for name, first, second in (
        ("push", "local", "remote"),
        ("pull", "remote", "local"),
    ):
        sub = commands.add_parser(name, help=f"Sync {first} to {second}")
        sub.add_argument(first)
        sub.add_argument(second)
        sub.add_argument("--exclude", default="", help="Regular expression of paths to skip")
        sub.add_argument(
            "--delete",
            action="store_true",
            help=f"Delete {second} files that do not exist in {first}",
        )

    upload = commands.add_parser("upload", help="Upload one file")
    upload.add_argument("path")
    upload.add_argument("key")

    download = commands.add_parser("download", help="Download one key")
    download.add_argument("key")
    download.add_argument("path")

    rm = commands.add_parser("rm", help="Remove keys")
    rm.add_argument("keys", nargs="+")

    rm_prefix = commands.add_parser("rm-prefix", help="Remove every key under a prefix")
    rm_prefix.add_argument("prefix")

    rm_matching = commands.add_parser("rm-matching", help="Remove every key matching a regex")
    rm_matching.add_argument("pattern")

    return parser.parse_args(argv)


async def run_command(bucket: Bucket, args: argparse.Namespace, ctx: Context) -> None:
    """Execute one parsed command against an initialized bucket."""
    command = args.command
    if command == "check":
        await bucket.check(ctx)
        print(f"{bucket.options.name}: ok")
    elif command == "ls":
        iterator = await bucket.list(ctx, args.prefix)
        async for item in iterator:
            print(item.key)
    elif command == "push":
        await bucket.push(ctx, SyncOptions(local=args.local, remote=args.remote, exclude=args.exclude))
    elif command == "pull":
        await bucket.pull(ctx, SyncOptions(local=args.local, remote=args.remote, exclude=args.exclude))
    elif command == "upload":
        await bucket.upload(ctx, args.key, args.path)
    elif command == "download":
        await bucket.download(ctx, args.key, args.path)
    elif command == "rm":
        await bucket.remove_many(ctx, *args.keys)
    elif command == "rm-prefix":
        await bucket.remove_prefix(ctx, args.prefix)
    elif command == "rm-matching":
        await bucket.remove_matching(ctx, args.pattern)
    else:
        raise ValueError(f"Unknown command: {command}")


def apply_overrides(config: BucketSyncConfig, args: argparse.Namespace) -> None:
    """Apply CLI flags on top of the loaded configuration."""
    if args.log_level is not None:
        config.logging.level = args.log_level
    if args.log_format is not None:
        config.logging.format = args.log_format
    if args.dry_run:
        config.bucket.dry_run = True
    if args.verbose:
        config.bucket.verbose = True
    if getattr(args, "delete", False):
        if args.command == "push":
            config.bucket.delete_on_push = True
        else:
            config.bucket.delete_on_pull = True


async def _run(config: BucketSyncConfig, args: argparse.Namespace) -> None:
    bucket = await open_bucket(config.bucket)
    ctx = Context(timeout=args.timeout)
    try:
        await run_command(bucket, args, ctx)
    finally:
        ctx.cancel()
        await bucket.close()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the bucketsync CLI.

    Loads configuration, applies CLI overrides, opens the configured
    bucket, and runs the requested command.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    apply_overrides(config, args)

    # Configure structured logging (replaces basicConfig)
    configure_logging(
        level=config.logging.level, fmt=config.logging.format, verbose=config.bucket.verbose
    )

    if config.metrics.enabled:
        metrics.init_metrics()

    status = "success"
    try:
        asyncio.run(_run(config, args))
    except BucketError as exc:
        status = "error"
        logger.error("%s failed: %s", args.command, exc)

    metrics.record_operation(args.command, status)
    if config.metrics.enabled and config.metrics.textfile:
        metrics.write_textfile(config.metrics.textfile)

    if status == "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
