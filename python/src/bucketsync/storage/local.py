"""Local filesystem bucket backend for bucketsync.

Objects are stored under ``{root}/{prefix}/{key}``. Writes use the
temp-fsync-rename pattern so a reader never sees a partial object, and
startup removes temp files left behind by interrupted writes. Checksums
are computed from the stored bytes on demand.
"""

import functools
import logging
import os
import uuid
from pathlib import Path

from bucketsync import keys, sync
from bucketsync.bucket import ObjectInfo
from bucketsync.config import LocalBucketOptions, validate_options
from bucketsync.context import Context
from bucketsync.errors import BucketError, ConnectivityError, NotFoundError, StreamClosedError
from bucketsync.iterator import LeasedIterator
from bucketsync.logging_config import log_operation
from bucketsync.storage import common
from bucketsync.streams import open_stream

logger = logging.getLogger(__name__)

_BACKEND = "local"

# Marker in the names of in-progress writes.
_TMP_MARKER = ".tmp."


def _walk_sorted(directory: str, rel: str):
    """Yield (path, name) for every file below ``directory`` in name order.

    Directories sort as ``name + "/"`` so the order matches a plain sort of
    the full ``/``-separated names, like the other backends.
    """
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return
    entries.sort(key=lambda e: e.name + keys.SEPARATOR if e.is_dir() else e.name)
    for entry in entries:
        name = f"{rel}{keys.SEPARATOR}{entry.name}" if rel else entry.name
        if entry.is_dir():
            yield from _walk_sorted(entry.path, name)
        elif entry.is_file():
            yield entry.path, name


class LocalRoot:
    """Session manager for a directory tree.

    Attributes:
        root: The directory holding all objects.
        open_sessions: Number of cloned sessions not yet closed.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.open_sessions = 0

    async def init(self) -> None:
        """Create the root directory and clean up orphan temp files."""
        self.root.mkdir(parents=True, exist_ok=True)
        self._clean_temp_files()
        logger.info("Local bucket root initialized at %s", self.root)

    def _clean_temp_files(self) -> None:
        """Remove orphan temp files left by interrupted atomic writes."""
        count = 0
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for fname in filenames:
                if _TMP_MARKER in fname:
                    try:
                        os.unlink(os.path.join(dirpath, fname))
                        count += 1
                    except OSError:
                        logger.warning("Could not remove temp file %s", fname)
        if count > 0:
            logger.info("Cleaned %d orphan temp files on startup", count)

    async def clone(self) -> "LocalSession":
        await self.ping()
        return LocalSession(self)

    async def ping(self) -> None:
        if not self.root.is_dir():
            raise ConnectivityError(f"bucket root {self.root} is not a directory", action="check")

    async def close(self) -> None:
        pass


class LocalSession:
    """A cloned handle on a LocalRoot."""

    def __init__(self, owner: LocalRoot) -> None:
        self.owner = owner
        self.closed = False
        owner.open_sessions += 1

    def ensure_open(self) -> None:
        if self.closed:
            raise StreamClosedError("local session is closed")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.owner.open_sessions -= 1


class _LocalReader:
    def __init__(self, session: LocalSession, path: Path) -> None:
        self._session = session
        self._fh = open(path, "rb")

    async def read(self, size: int = -1) -> bytes:
        self._session.ensure_open()
        return self._fh.read(size)

    async def close(self) -> None:
        self._fh.close()


class _LocalWriter:
    def __init__(self, session: LocalSession, path: Path) -> None:
        self._session = session
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._tmp = path.with_name(f"{path.name}{_TMP_MARKER}{uuid.uuid4().hex[:8]}")
        self._fh = open(self._tmp, "wb")

    async def write(self, data: bytes) -> None:
        self._session.ensure_open()
        self._fh.write(data)

    async def commit(self) -> None:
        self._session.ensure_open()
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self._fh.close()
        self._tmp.rename(self._path)

    async def discard(self) -> None:
        self._fh.close()
        self._tmp.unlink(missing_ok=True)


class LocalBucket:
    """Bucket stored as files under a root directory.

    Attributes:
        options: The bucket's options.
        fs: The LocalRoot session manager.
    """

    backend_type = _BACKEND

    writer = common.writer
    reader = common.reader
    put = common.put
    get = common.get
    upload = common.upload
    download = common.download
    push = common.push
    pull = common.pull
    copy = common.copy
    remove_many = common.remove_many
    remove_prefix = common.remove_prefix
    remove_matching = common.remove_matching

    def __init__(self, options: LocalBucketOptions, fs: LocalRoot | None = None) -> None:
        validate_options(options, require_connection=fs is None)
        self.options = options
        self.fs = fs if fs is not None else LocalRoot(options.root)

    async def init(self) -> None:
        await self.fs.init()

    def _normalize(self, key: str) -> str:
        return keys.normalize(self.options.prefix, key)

    def _object_path(self, name: str) -> Path:
        """Return the filesystem path for a backend name, confined to the root."""
        root = self.fs.root.resolve()
        path = (root / name).resolve()
        if path == root or root not in path.parents:
            raise BucketError(
                f"key {name!r} resolves outside bucket root",
                bucket=self.options.name,
                key=name,
            )
        return path

    async def check(self, ctx: Context) -> None:
        ctx.check("check")
        await self.fs.ping()

    async def _open(self, ctx: Context, key: str, writable: bool):
        name = self._normalize(key)
        path = self._object_path(name)

        async def opener(session: LocalSession):
            if writable:
                return _LocalWriter(session, path)
            if not path.is_file():
                raise NotFoundError(f"no object named {name}")
            return _LocalReader(session, path)

        return await open_stream(
            ctx,
            self.fs,
            opener,
            backend=_BACKEND,
            bucket=self.options.name,
            name=name,
            writable=writable,
        )

    async def stat(self, ctx: Context, key: str) -> ObjectInfo:
        ctx.check("stat", key)
        path = self._object_path(self._normalize(key))
        if not path.is_file():
            raise NotFoundError(
                f"no object named {key}", bucket=self.options.name, key=key, action="stat"
            )
        return ObjectInfo(key=key, checksum=sync.checksum_file(str(path)), size=path.stat().st_size)

    async def remove(self, ctx: Context, key: str) -> None:
        log_operation(self.options, _BACKEND, "remove", key=key)
        if self.options.dry_run:
            return
        ctx.check("remove", key)
        path = self._object_path(self._normalize(key))
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            ) from exc
        except OSError as exc:
            raise BucketError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            ) from exc
        self._prune_empty_parents(path)

    def _prune_empty_parents(self, path: Path) -> None:
        """Remove now-empty directories between ``path`` and the root."""
        root = self.fs.root.resolve()
        parent = path.parent
        while parent != root and root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    async def list(self, ctx: Context, prefix: str = "") -> LeasedIterator:
        log_operation(self.options, _BACKEND, "list", prefix=prefix)
        ctx.check("list", prefix)
        name = self._normalize(prefix) if prefix else ""
        return LeasedIterator(ctx, self, self.fs, functools.partial(self._scan, prefix=name), prefix)

    async def _scan(self, session: LocalSession, prefix: str):
        for full, name in _walk_sorted(str(self.fs.root), ""):
            session.ensure_open()
            if _TMP_MARKER in name or not keys.matches_prefix(name, prefix):
                continue
            try:
                checksum = sync.checksum_file(full)
                size = os.path.getsize(full)
            except (NotFoundError, FileNotFoundError):
                continue
            yield name, checksum, size

    async def close(self) -> None:
        await self.fs.close()
