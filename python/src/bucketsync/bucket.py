"""The Bucket contract shared by every storage backend.

Backends (memory, SQLite, local filesystem, S3) are independent classes
that satisfy the ``Bucket`` protocol. The backend-agnostic algorithms
(push, pull, copy, bulk removal) live in ``bucketsync.sync`` and
``bucketsync.operations`` and work against any implementation.
"""

import weakref
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Protocol, Union

from bucketsync.context import Context


@dataclass(frozen=True)
class SyncOptions:
    """One-directional sync between a local tree and a remote key prefix.

    Attributes:
        local: Local root directory.
        remote: Logical key prefix in the bucket ("" for the bucket root).
        exclude: Optional regular expression; relative paths it matches
            (``re.search``) are skipped.
    """

    local: str
    remote: str
    exclude: str = ""


@dataclass(frozen=True)
class CopyOptions:
    """A streamed copy of one key into any bucket, possibly another backend."""

    source_key: str
    destination_key: str
    destination_bucket: "Bucket"


@dataclass(frozen=True)
class ObjectInfo:
    """Backend-reported metadata for a stored object."""

    key: str
    checksum: str = ""
    size: int = 0


def usable_checksum(checksum: str | None) -> str | None:
    """Return the checksum if it can be compared to a local MD5.

    Empty values and multipart-style ETags (``"<md5>-<parts>"``) are not
    comparable and force a transfer.
    """
    if not checksum:
        return None
    checksum = checksum.strip('"')
    if "-" in checksum:
        return None
    return checksum.lower()


class BucketItem:
    """An object yielded by a BucketIterator.

    Holds a weak reference to the bucket that produced it.
    """

    def __init__(self, bucket: "Bucket", key: str, checksum: str = "", size: int = 0) -> None:
        self._bucket_ref = weakref.ref(bucket)
        self.key = key
        self.checksum = checksum
        self.size = size

    @property
    def bucket(self) -> "Bucket":
        bucket = self._bucket_ref()
        if bucket is None:
            raise ReferenceError(f"bucket for item {self.key!r} no longer exists")
        return bucket

    async def get(self, ctx: Context) -> "ReadableStream":
        """Open a reader on this item."""
        return await self.bucket.get(ctx, self.key)

    def __repr__(self) -> str:
        return f"BucketItem(key={self.key!r}, checksum={self.checksum!r})"


class ReadableStream(Protocol):
    """A readable handle to one stored object."""

    async def read(self, size: int = -1) -> bytes: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[bytes]: ...


class WritableStream(Protocol):
    """A writable handle to one stored object; ``close()`` commits."""

    async def write(self, data: bytes) -> int: ...

    async def close(self) -> None: ...


class BucketIterator(Protocol):
    """Lazy, single-pass traversal of keys under a prefix."""

    @property
    def item(self) -> BucketItem | None: ...

    @property
    def err(self) -> Exception | None: ...

    async def next(self, ctx: Context) -> bool: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[BucketItem]: ...


# Sources accepted by Bucket.put().
PutSource = Union[bytes, BinaryIO, AsyncIterator[bytes], ReadableStream]


class Bucket(Protocol):
    """Uniform object-storage contract.

    Every coroutine takes the caller's cancellation context first.
    Mutating operations are no-ops when the bucket runs in dry-run mode.
    """

    options: Any

    async def init(self) -> None:
        """Connect to the backend. Raises ConnectivityError."""
        ...

    async def check(self, ctx: Context) -> None:
        """Liveness probe. Raises ConnectivityError."""
        ...

    async def writer(self, ctx: Context, key: str) -> WritableStream: ...

    async def reader(self, ctx: Context, key: str) -> ReadableStream: ...

    async def put(self, ctx: Context, key: str, source: PutSource) -> None: ...

    async def get(self, ctx: Context, key: str) -> ReadableStream: ...

    async def stat(self, ctx: Context, key: str) -> ObjectInfo:
        """Return backend metadata for a key. Raises NotFoundError."""
        ...

    async def upload(self, ctx: Context, key: str, path: str) -> int: ...

    async def download(self, ctx: Context, key: str, path: str) -> int: ...

    async def push(self, ctx: Context, opts: SyncOptions) -> Any: ...

    async def pull(self, ctx: Context, opts: SyncOptions) -> Any: ...

    async def copy(self, ctx: Context, opts: CopyOptions) -> None: ...

    async def remove(self, ctx: Context, key: str) -> None: ...

    async def remove_many(self, ctx: Context, *keys: str) -> None: ...

    async def remove_prefix(self, ctx: Context, prefix: str) -> None: ...

    async def remove_matching(self, ctx: Context, expression: str) -> None: ...

    async def list(self, ctx: Context, prefix: str = "") -> BucketIterator: ...

    async def close(self) -> None:
        """Release the connection owned by this bucket."""
        ...


@dataclass
class SyncStats:
    """Relative paths handled by a push or pull, by outcome."""

    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
