"""Bucket operations that are the same on every backend.

Each coroutine takes the bucket first, so a backend binds it as a method
with a plain class attribute (``put = common.put``). The bucket must have
``options``, a ``backend_type`` name and an ``_open(ctx, key, writable)``
coroutine. Backends keep their own ``stat``, ``remove`` and ``list``.
"""

from bucketsync import operations, sync
from bucketsync.bucket import CopyOptions, SyncOptions, SyncStats
from bucketsync.context import Context
from bucketsync.logging_config import log_operation
from bucketsync.streams import DiscardWriter


def _log(bucket, operation: str, **fields) -> None:
    log_operation(bucket.options, bucket.backend_type, operation, **fields)


async def writer(bucket, ctx: Context, key: str):
    """Open a writer, or a DiscardWriter when the bucket is in dry-run mode."""
    _log(bucket, "writer", key=key)
    if bucket.options.dry_run:
        return DiscardWriter(key)
    return await bucket._open(ctx, key, writable=True)


async def reader(bucket, ctx: Context, key: str):
    _log(bucket, "reader", key=key)
    return await bucket._open(ctx, key, writable=False)


async def put(bucket, ctx: Context, key: str, source) -> None:
    _log(bucket, "put", key=key)
    await operations.put(ctx, bucket, key, source)


async def get(bucket, ctx: Context, key: str):
    _log(bucket, "get", key=key)
    return await bucket.reader(ctx, key)


async def upload(bucket, ctx: Context, key: str, path: str) -> int:
    _log(bucket, "upload", key=key, path=path)
    return await operations.upload(ctx, bucket, key, path)


async def download(bucket, ctx: Context, key: str, path: str) -> int:
    _log(bucket, "download", key=key, path=path)
    return await operations.download(ctx, bucket, key, path)


async def push(bucket, ctx: Context, opts: SyncOptions) -> SyncStats:
    _log(bucket, "push", remote=opts.remote, local=opts.local, exclude=opts.exclude)
    return await sync.push(ctx, bucket, opts)


async def pull(bucket, ctx: Context, opts: SyncOptions) -> SyncStats:
    _log(bucket, "pull", remote=opts.remote, local=opts.local, exclude=opts.exclude)
    return await sync.pull(ctx, bucket, opts)


async def copy(bucket, ctx: Context, opts: CopyOptions) -> None:
    _log(bucket, "copy", source_key=opts.source_key, dest_key=opts.destination_key)
    await operations.copy(ctx, bucket, opts)


async def remove_many(bucket, ctx: Context, *keys: str) -> None:
    _log(bucket, "remove many", keys=list(keys))
    if bucket.options.dry_run:
        return
    await operations.remove_many(ctx, bucket, keys)


async def remove_prefix(bucket, ctx: Context, prefix: str) -> None:
    _log(bucket, "remove prefix", prefix=prefix)
    if bucket.options.dry_run:
        return
    await operations.remove_prefix(ctx, bucket, prefix)


async def remove_matching(bucket, ctx: Context, expression: str) -> None:
    _log(bucket, "remove matching", expression=expression)
    if bucket.options.dry_run:
        return
    await operations.remove_matching(ctx, bucket, expression)
