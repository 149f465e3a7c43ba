"""Structured logging configuration for bucketsync."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Operation events, separate from the bucketsync.operations module logger.
logger = logging.getLogger("bucketsync.events")

# Structured fields copied from log records into JSON output.
_EVENT_FIELDS = (
    "backend",
    "dry_run",
    "operation",
    "bucket",
    "bucket_prefix",
    "key",
    "keys",
    "prefix",
    "expression",
    "path",
    "local",
    "remote",
    "exclude",
    "source_key",
    "dest_key",
)


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, plus any operation fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EVENT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


def log_operation(options: Any, backend: str, operation: str, **fields: Any) -> None:
    """Emit a diagnostic event for a bucket operation when verbose is set.

    Args:
        options: The bucket's BucketOptions.
        backend: Backend type name (e.g. "sqlite").
        operation: Operation name (e.g. "put", "remove prefix").
        **fields: Operation-specific fields such as key, path, or prefix.
    """
    if not options.verbose:
        return
    extra = {
        "backend": backend,
        "dry_run": options.dry_run,
        "operation": operation,
        "bucket": options.name,
        "bucket_prefix": options.prefix,
    }
    extra.update(fields)
    logger.debug("%s %s on bucket %s", backend, operation, options.name, extra=extra)


def configure_logging(level: str = "INFO", fmt: str = "text", verbose: bool = False) -> None:
    """Configure root logging with the specified level and format.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Format type: 'text' for human-readable, 'json' for structured.
        verbose: Let operation events through at DEBUG whatever ``level`` is.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    logger.setLevel(logging.DEBUG if verbose else logging.NOTSET)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG if verbose else numeric_level)

    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root.addHandler(handler)
