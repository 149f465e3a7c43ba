"""Checksum-diffed synchronization between a local tree and a bucket.

``push`` mirrors a local directory into a remote key prefix; ``pull``
mirrors a remote key prefix into a local directory. A file is transferred
only when the destination is missing or its MD5 differs from the source.
When the backend reports no usable checksum the file is always
transferred.

Any failure after the exclude pattern compiles aborts the whole sync with
``TransferAbortError``; files already transferred are not rolled back.
"""

import hashlib
import logging
import os
import re

from bucketsync import keys, metrics
from bucketsync.bucket import Bucket, SyncOptions, SyncStats, usable_checksum
from bucketsync.context import Context
from bucketsync.errors import AggregateError, NotFoundError, TransferAbortError

logger = logging.getLogger(__name__)

# Read size for local checksums: 64 KB
_CHUNK_SIZE = 64 * 1024


def walk_local_tree(ctx: Context, root: str) -> list[str]:
    """Return sorted relative paths (``/``-separated) of files under ``root``.

    Raises:
        NotFoundError: If ``root`` is not a directory.
    """
    if not os.path.isdir(root):
        raise NotFoundError(f"local directory {root} does not exist", key=root, action="walk")

    paths: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        ctx.check("walk", root)
        for fname in filenames:
            rel = os.path.relpath(os.path.join(dirpath, fname), root)
            paths.append(rel.replace(os.sep, keys.SEPARATOR))
    paths.sort()
    return paths


def checksum_file(path: str) -> str:
    """Return the hex MD5 of a local file.

    Raises:
        NotFoundError: If the file does not exist.
    """
    md5 = hashlib.md5()
    try:
        with open(path, "rb") as fh:
            while True:
                chunk = fh.read(_CHUNK_SIZE)
                if not chunk:
                    break
                md5.update(chunk)
    except FileNotFoundError as exc:
        raise NotFoundError(f"local file {path} does not exist", key=path, action="checksum") from exc
    return md5.hexdigest()


def _compile_exclude(pattern: str, bucket: str) -> re.Pattern | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise TransferAbortError(
            "problem compiling exclude regex", bucket=bucket, key=pattern, action="sync"
        ) from exc


def _local_path(local: str, rel: str) -> str:
    """Join a relative key path onto the local root, refusing to escape it."""
    root = os.path.abspath(local)
    path = os.path.abspath(os.path.join(root, *rel.split(keys.SEPARATOR)))
    if os.path.commonpath([root, path]) != root:
        raise TransferAbortError(f"key path '{rel}' escapes local directory {local}", action="pull")
    return path


async def push(ctx: Context, bucket: Bucket, opts: SyncOptions) -> SyncStats:
    """Upload new and changed local files under ``opts.local`` to ``opts.remote``.

    With delete-on-push (or delete-on-sync) and not in dry-run mode, remote
    objects under ``opts.remote`` without a local counterpart are removed
    afterwards.

    Raises:
        TransferAbortError: On the first failure.
    """
    options = bucket.options
    exclude = _compile_exclude(opts.exclude, options.name)
    stats = SyncStats()

    try:
        local_paths = walk_local_tree(ctx, opts.local)
    except Exception as exc:
        raise TransferAbortError(
            "problem finding local paths", bucket=options.name, key=opts.local, action="push"
        ) from exc

    for rel in local_paths:
        if exclude is not None and exclude.search(rel):
            continue

        target = keys.join(opts.remote, rel)
        path = os.path.join(opts.local, rel)
        try:
            if await _needs_upload(ctx, bucket, target, path):
                size = await bucket.upload(ctx, target, path)
                stats.uploaded.append(rel)
                metrics.record_transfer("upload", size or 0)
            else:
                stats.skipped.append(rel)
                metrics.record_transfer("skip")
        except Exception as exc:
            raise TransferAbortError(
                f"problem uploading '{rel}' to '{target}'",
                bucket=options.name,
                key=target,
                action="push",
            ) from exc

    if (options.delete_on_push or options.delete_on_sync) and not options.dry_run:
        try:
            stats.deleted = await delete_on_push(ctx, bucket, local_paths, opts.remote)
        except Exception as exc:
            raise TransferAbortError(
                "problem with delete on sync after push",
                bucket=options.name,
                key=opts.remote,
                action="push",
            ) from exc

    logger.info(
        "Pushed %s to %s/%s: %d uploaded, %d unchanged, %d deleted",
        opts.local,
        options.name,
        opts.remote,
        len(stats.uploaded),
        len(stats.skipped),
        len(stats.deleted),
    )
    return stats


async def _needs_upload(ctx: Context, bucket: Bucket, target: str, path: str) -> bool:
    try:
        info = await bucket.stat(ctx, target)
    except NotFoundError:
        return True
    remote = usable_checksum(info.checksum)
    if remote is None:
        return True
    return checksum_file(path) != remote


async def delete_on_push(
    ctx: Context, bucket: Bucket, local_paths: list[str], remote: str
) -> list[str]:
    """Remove remote keys under ``remote`` that have no local counterpart.

    Returns:
        The removed keys.

    Raises:
        AggregateError: If any removal failed (all were attempted).
    """
    present = set(local_paths)
    iterator = await bucket.list(ctx, remote)
    doomed = [
        item.key async for item in iterator if keys.relative_to(remote, item.key) not in present
    ]
    await bucket.remove_many(ctx, *doomed)
    for _ in doomed:
        metrics.record_transfer("delete")
    return doomed


async def pull(ctx: Context, bucket: Bucket, opts: SyncOptions) -> SyncStats:
    """Download new and changed objects under ``opts.remote`` into ``opts.local``.

    A missing local file is downloaded unconditionally. With delete-on-pull
    (or delete-on-sync) and not in dry-run mode, local files that were not
    part of the pulled set are removed afterwards.

    Raises:
        TransferAbortError: On the first failure.
    """
    options = bucket.options
    exclude = _compile_exclude(opts.exclude, options.name)
    stats = SyncStats()

    try:
        iterator = await bucket.list(ctx, opts.remote)
    except Exception as exc:
        raise TransferAbortError(
            "problem listing bucket", bucket=options.name, key=opts.remote, action="pull"
        ) from exc

    pulled: set[str] = set()
    try:
        while await iterator.next(ctx):
            item = iterator.item
            rel = keys.relative_to(opts.remote, item.key)
            if not rel or (exclude is not None and exclude.search(rel)):
                continue

            path = _local_path(opts.local, rel)
            pulled.add(rel)
            try:
                if await _needs_download(item.checksum, path):
                    size = await bucket.download(ctx, item.key, path)
                    stats.downloaded.append(rel)
                    metrics.record_transfer("download", size or 0)
                else:
                    stats.skipped.append(rel)
                    metrics.record_transfer("skip")
            except Exception as exc:
                raise TransferAbortError(
                    f"problem downloading '{item.key}' to '{path}'",
                    bucket=options.name,
                    key=item.key,
                    action="pull",
                ) from exc
    finally:
        await iterator.close()

    if iterator.err is not None:
        raise TransferAbortError(
            "problem iterating bucket", bucket=options.name, key=opts.remote, action="pull"
        ) from iterator.err

    if (options.delete_on_pull or options.delete_on_sync) and not options.dry_run:
        try:
            stats.deleted = delete_on_pull(ctx, pulled, opts.local)
        except Exception as exc:
            raise TransferAbortError(
                "problem with delete on sync after pull",
                bucket=options.name,
                key=opts.local,
                action="pull",
            ) from exc

    logger.info(
        "Pulled %s/%s to %s: %d downloaded, %d unchanged, %d deleted",
        options.name,
        opts.remote,
        opts.local,
        len(stats.downloaded),
        len(stats.skipped),
        len(stats.deleted),
    )
    return stats


async def _needs_download(remote_checksum: str, path: str) -> bool:
    try:
        local = checksum_file(path)
    except NotFoundError:
        return True
    return usable_checksum(remote_checksum) != local


def delete_on_pull(ctx: Context, pulled: set[str], local: str) -> list[str]:
    """Remove local files under ``local`` whose relative path was not pulled.

    Returns:
        The removed relative paths.

    Raises:
        AggregateError: If any removal failed (all were attempted).
    """
    if not os.path.isdir(local):
        return []

    removed: list[str] = []
    errors: list[Exception] = []
    for rel in walk_local_tree(ctx, local):
        if rel in pulled:
            continue
        try:
            os.remove(os.path.join(local, rel))
            removed.append(rel)
            metrics.record_transfer("delete")
        except OSError as exc:
            errors.append(exc)
    if errors:
        raise AggregateError(errors, key=local, action="delete on pull")
    return removed
