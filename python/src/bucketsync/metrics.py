"""Prometheus metrics definitions for bucketsync.

All custom metrics use the ``bucketsync_`` prefix. Metrics are opt-in:
until ``init_metrics()`` is called the module-level references stay
``None`` and the ``record_*`` helpers do nothing.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, write_to_textfile

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Bucket operation counter  (labels: operation, status)
# ---------------------------------------------------------------------------
operations_total: Counter | None = None

# ---------------------------------------------------------------------------
# Sync transfer counters  (labels: direction = upload | download | delete | skip)
# ---------------------------------------------------------------------------
files_transferred_total: Counter | None = None
bytes_transferred_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; collectors are registered in the global
    registry only on the first call.
    """
    global _initialized
    global operations_total, files_transferred_total, bytes_transferred_total

    if _initialized:
        return

    operations_total = Counter(
        "bucketsync_operations_total",
        "Total bucket operations by type and outcome",
        ["operation", "status"],
    )

    files_transferred_total = Counter(
        "bucketsync_files_transferred_total",
        "Files handled by push and pull, by direction",
        ["direction"],
    )

    bytes_transferred_total = Counter(
        "bucketsync_bytes_transferred_total",
        "Bytes streamed by push and pull, by direction",
        ["direction"],
    )

    _initialized = True


def record_operation(operation: str, status: str) -> None:
    if operations_total is not None:
        operations_total.labels(operation=operation, status=status).inc()


def record_transfer(direction: str, size: int = 0) -> None:
    if files_transferred_total is not None:
        files_transferred_total.labels(direction=direction).inc()
    if bytes_transferred_total is not None and size:
        bytes_transferred_total.labels(direction=direction).inc(size)


def write_textfile(path: str) -> None:
    """Write the current counters to ``path`` in the Prometheus text format.

    prometheus_client writes a temp file and renames it over ``path``.
    """
    write_to_textfile(path, REGISTRY)
