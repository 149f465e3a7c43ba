"""In-memory bucket backend for bucketsync.

All objects live in a ``MemoryStore`` dictionary keyed by backend name.
Several buckets (with different prefixes) may share one store, the same
way several buckets may share one database connection. The store counts
the sessions it has handed out so tests can observe leaks.
"""

import functools
import hashlib
import io
import logging

from bucketsync import keys
from bucketsync.bucket import ObjectInfo
from bucketsync.config import MemoryBucketOptions, validate_options
from bucketsync.context import Context
from bucketsync.errors import ConnectivityError, NotFoundError, StreamClosedError
from bucketsync.iterator import LeasedIterator
from bucketsync.logging_config import log_operation
from bucketsync.storage import common
from bucketsync.streams import open_stream

logger = logging.getLogger(__name__)

_BACKEND = "memory"


class MemoryStore:
    """Shared object namespace; also the session manager for memory buckets.

    Attributes:
        objects: Backend name -> (data, hex MD5).
        open_sessions: Number of cloned sessions not yet closed.
        clones: Total number of sessions ever cloned.
    """

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.open_sessions = 0
        self.clones = 0
        self.closed = False

    async def clone(self) -> "MemorySession":
        if self.closed:
            raise ConnectivityError("memory store is closed", action="clone")
        self.clones += 1
        return MemorySession(self)

    async def ping(self) -> None:
        if self.closed:
            raise ConnectivityError("memory store is closed", action="check")

    async def close(self) -> None:
        self.closed = True


class MemorySession:
    """A cloned handle on a MemoryStore."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.closed = False
        store.open_sessions += 1

    def ensure_open(self) -> None:
        if self.closed:
            raise StreamClosedError("memory session is closed")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.store.open_sessions -= 1


class _MemoryReader:
    def __init__(self, session: MemorySession, data: bytes) -> None:
        self._session = session
        self._buf = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        self._session.ensure_open()
        return self._buf.read(size)

    async def close(self) -> None:
        self._buf.close()


class _MemoryWriter:
    def __init__(self, session: MemorySession, name: str) -> None:
        self._session = session
        self._name = name
        self._buf = io.BytesIO()

    async def write(self, data: bytes) -> None:
        self._session.ensure_open()
        self._buf.write(data)

    async def commit(self) -> None:
        self._session.ensure_open()
        data = self._buf.getvalue()
        self._session.store.objects[self._name] = (data, hashlib.md5(data).hexdigest())

    async def discard(self) -> None:
        self._buf = io.BytesIO()


class MemoryBucket:
    """Bucket backed by a MemoryStore.

    Attributes:
        options: The bucket's options.
        store: The (possibly shared) object store.
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

    def __init__(self, options: MemoryBucketOptions, store: MemoryStore | None = None) -> None:
        validate_options(options)
        self.options = options
        self.store = store if store is not None else MemoryStore()
        self._owns_store = store is None

    async def init(self) -> None:
        """No-op for the in-memory backend."""
        pass

    def _normalize(self, key: str) -> str:
        return keys.normalize(self.options.prefix, key)

    async def check(self, ctx: Context) -> None:
        ctx.check("check")
        await self.store.ping()

    async def _open(self, ctx: Context, key: str, writable: bool):
        name = self._normalize(key)

        async def opener(session: MemorySession):
            if writable:
                return _MemoryWriter(session, name)
            try:
                data, _ = session.store.objects[name]
            except KeyError:
                raise NotFoundError(f"no object named {name}") from None
            return _MemoryReader(session, data)

        return await open_stream(
            ctx,
            self.store,
            opener,
            backend=_BACKEND,
            bucket=self.options.name,
            name=name,
            writable=writable,
        )

    async def stat(self, ctx: Context, key: str) -> ObjectInfo:
        ctx.check("stat", key)
        name = self._normalize(key)
        try:
            data, md5 = self.store.objects[name]
        except KeyError:
            raise NotFoundError(
                f"no object named {name}", bucket=self.options.name, key=key, action="stat"
            ) from None
        return ObjectInfo(key=key, checksum=md5, size=len(data))

    async def remove(self, ctx: Context, key: str) -> None:
        log_operation(self.options, _BACKEND, "remove", key=key)
        if self.options.dry_run:
            return
        ctx.check("remove", key)
        name = self._normalize(key)
        if self.store.objects.pop(name, None) is None:
            raise NotFoundError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            )

    async def list(self, ctx: Context, prefix: str = "") -> LeasedIterator:
        log_operation(self.options, _BACKEND, "list", prefix=prefix)
        ctx.check("list", prefix)
        name = self._normalize(prefix) if prefix else ""
        return LeasedIterator(
            ctx, self, self.store, functools.partial(self._scan, prefix=name), prefix
        )

    async def _scan(self, session: MemorySession, prefix: str):
        for name in sorted(self.store.objects):
            session.ensure_open()
            if not keys.matches_prefix(name, prefix):
                continue
            entry = self.store.objects.get(name)
            if entry is None:
                continue
            data, md5 = entry
            yield name, md5, len(data)

    async def close(self) -> None:
        if self._owns_store:
            await self.store.close()
