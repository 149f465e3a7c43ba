"""Backend-agnostic bucket operations built on readers, writers and listing.

Every backend delegates put, upload, download, copy and the bulk removal
helpers here. Copy is always a streamed read followed by a write, so the
destination may be any Bucket implementation.
"""

import logging
import os
import re
import uuid
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from bucketsync.bucket import Bucket, CopyOptions
from bucketsync.context import Context
from bucketsync.errors import AggregateError, BucketError, NotFoundError
from bucketsync.streams import CHUNK_SIZE

logger = logging.getLogger(__name__)


async def iter_chunks(source: Any) -> AsyncIterator[bytes]:
    """Yield byte chunks from bytes, an async iterable, or a binary file object."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        for start in range(0, len(data), CHUNK_SIZE):
            yield data[start:start + CHUNK_SIZE]
    elif hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
    elif hasattr(source, "read"):
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    else:
        raise TypeError(f"cannot stream from {type(source).__name__}")


async def write_all(ctx: Context, writer: Any, source: Any, key: str = "") -> int:
    """Stream ``source`` into ``writer`` and commit it.

    The writer is aborted if copying fails or ``ctx`` ends mid-stream.
    Errors raised while committing surface to the caller.

    Returns:
        The number of bytes written.
    """
    total = 0
    try:
        async for chunk in iter_chunks(source):
            ctx.check("put", key)
            await writer.write(chunk)
            total += len(chunk)
    except BaseException:
        await writer.abort()
        raise
    await writer.close()
    return total


async def put(ctx: Context, bucket: Bucket, key: str, source: Any) -> int:
    """Write ``source`` to ``key`` through the bucket's writer."""
    writer = await bucket.writer(ctx, key)
    try:
        return await write_all(ctx, writer, source, key)
    except BucketError:
        raise
    except Exception as exc:
        raise BucketError(
            "problem copying data", bucket=bucket.options.name, key=key, action="put"
        ) from exc


async def upload(ctx: Context, bucket: Bucket, key: str, path: str) -> int:
    """Upload the local file at ``path`` to ``key``.

    Raises:
        NotFoundError: If the local file does not exist.
    """
    try:
        fh = open(path, "rb")
    except FileNotFoundError as exc:
        raise NotFoundError(
            f"problem opening file {path}", bucket=bucket.options.name, key=key, action="upload"
        ) from exc
    with fh:
        return await put(ctx, bucket, key, fh)


async def download(ctx: Context, bucket: Bucket, key: str, path: str) -> int:
    """Download ``key`` to the local file at ``path``.

    Parent directories are created as needed. The file is written to a
    temporary sibling and renamed into place once complete.

    Returns:
        The number of bytes written.
    """
    reader = await bucket.reader(ctx, key)
    try:
        target = Path(path)
        try:
            target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise BucketError(
                f"problem creating enclosing directory for '{path}'",
                bucket=bucket.options.name,
                key=key,
                action="download",
            ) from exc

        tmp = target.with_name(f"{target.name}.tmp.{uuid.uuid4().hex[:8]}")
        total = 0
        try:
            with open(tmp, "wb") as fh:
                async for chunk in reader:
                    ctx.check("download", key)
                    fh.write(chunk)
                    total += len(chunk)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return total
    finally:
        await reader.close()


async def copy(ctx: Context, source: Bucket, opts: CopyOptions) -> int:
    """Stream ``opts.source_key`` from ``source`` into the destination bucket."""
    name = source.options.name
    try:
        reader = await source.reader(ctx, opts.source_key)
    except NotFoundError:
        raise
    except BucketError as exc:
        raise BucketError(
            "problem getting reader for source", bucket=name, key=opts.source_key, action="copy"
        ) from exc

    try:
        try:
            writer = await opts.destination_bucket.writer(ctx, opts.destination_key)
        except BucketError as exc:
            raise BucketError(
                "problem getting writer for destination",
                bucket=opts.destination_bucket.options.name,
                key=opts.destination_key,
                action="copy",
            ) from exc
        return await write_all(ctx, writer, reader, opts.destination_key)
    finally:
        await reader.close()


async def remove_many(ctx: Context, bucket: Bucket, keys: tuple[str, ...] | list[str]) -> None:
    """Remove every key, collecting failures.

    Raises:
        AggregateError: If any removal failed. Every key was still attempted.
    """
    errors: list[Exception] = []
    for key in keys:
        try:
            await bucket.remove(ctx, key)
        except Exception as exc:
            errors.append(exc)
    if errors:
        raise AggregateError(errors, bucket=bucket.options.name, action="remove many")


async def remove_prefix(ctx: Context, bucket: Bucket, prefix: str) -> None:
    """Remove every key whose backend name starts with ``normalize(prefix)``."""
    iterator = await bucket.list(ctx, prefix)
    keys = [item.key async for item in iterator]
    await bucket.remove_many(ctx, *keys)


async def remove_matching(ctx: Context, bucket: Bucket, expression: str) -> None:
    """Remove every key in the bucket that ``expression`` matches (``re.search``)."""
    try:
        regex = re.compile(expression)
    except re.error as exc:
        raise BucketError(
            "problem compiling regex",
            bucket=bucket.options.name,
            key=expression,
            action="remove matching",
        ) from exc

    iterator = await bucket.list(ctx, "")
    keys = [item.key async for item in iterator if regex.search(item.key)]
    await bucket.remove_many(ctx, *keys)
