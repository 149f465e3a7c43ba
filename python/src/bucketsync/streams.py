"""Session leases and managed object streams.

Every stream or iterator clones a backend session and holds it under a
``Lease``. The lease derives a child context from the caller's context
and spawns a monitor task that releases the cloned session once that
context ends, closing or discarding the raw handle opened on it as well.
Explicit close handles the raw handle itself, releases the session and
then cancels the derived context, so the monitor wakes and exits.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

from bucketsync.context import Context
from bucketsync.errors import (
    BucketError,
    NotFoundError,
    OperationCancelledError,
    StreamClosedError,
)

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB
CHUNK_SIZE = 64 * 1024


class Session(Protocol):
    """A cloned, per-operation handle on a backend connection."""

    async def close(self) -> None: ...


class SessionManager(Protocol):
    """Owns a backend connection and hands out cloned sessions."""

    async def clone(self) -> Session: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class RawReader(Protocol):
    """Backend-specific read handle on an open object."""

    async def read(self, size: int = -1) -> bytes: ...

    async def close(self) -> None: ...


class RawWriter(Protocol):
    """Backend-specific write handle; ``commit`` makes the object visible."""

    async def write(self, data: bytes) -> None: ...

    async def commit(self) -> None: ...

    async def discard(self) -> None: ...


class Lease:
    """Binds a cloned session to a context derived from the caller's.

    Attributes:
        ctx: The derived context. Canceled when the lease is released.
        session: The cloned session.
        on_release: Optional coroutine function run before the session is
            closed, used to close or discard the raw handle opened on it.
    """

    def __init__(
        self,
        ctx: Context,
        session: Session,
        label: str = "",
        on_release: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.ctx = ctx.child()
        self.session = session
        self.label = label
        self.on_release = on_release
        self._released = False
        self._monitor = asyncio.create_task(self._release_when_done())

    @property
    def released(self) -> bool:
        return self._released

    async def _release_when_done(self) -> None:
        await self.ctx.wait()
        try:
            await self.release()
        except Exception:
            logger.warning("Failed to release session for %s", self.label, exc_info=True)

    async def release(self, cleanup: bool = True) -> None:
        """Close the cloned session. Only the first call does anything.

        Args:
            cleanup: Whether to run ``on_release`` first. Streams pass False
                when they have already closed their raw handle themselves.
        """
        if self._released:
            return
        self._released = True
        try:
            if cleanup and self.on_release is not None:
                await self.on_release()
        finally:
            try:
                await self.session.close()
            finally:
                self.ctx.cancel()


class ManagedReader:
    """A readable stream whose session is released on close or cancellation."""

    def __init__(self, lease: Lease, raw: RawReader, name: str) -> None:
        self._lease = lease
        self._raw = raw
        self.name = name
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise StreamClosedError("stream is closed", key=self.name, action="read")
        # A lease released without close() means the context ended.
        self._lease.ctx.check("read", self.name)
        if self._lease.released:
            raise StreamClosedError("stream is closed", key=self.name, action="read")

    async def read(self, size: int = -1) -> bytes:
        self._ensure_open()
        return await self._raw.read(size)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._raw.close()
        finally:
            await self._lease.release(cleanup=False)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    async def __aenter__(self) -> "ManagedReader":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class ManagedWriter:
    """A writable stream; ``close()`` commits, ``abort()`` discards.

    Attributes:
        size: Number of bytes written so far.
    """

    def __init__(self, lease: Lease, raw: RawWriter, name: str) -> None:
        self._lease = lease
        self._raw = raw
        self.name = name
        self.size = 0
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise StreamClosedError("stream is closed", key=self.name, action="write")
        self._lease.ctx.check("write", self.name)
        if self._lease.released:
            raise StreamClosedError("stream is closed", key=self.name, action="write")

    async def write(self, data: bytes) -> int:
        self._ensure_open()
        await self._raw.write(data)
        self.size += len(data)
        return len(data)

    async def close(self) -> None:
        """Commit the object and release the session."""
        if self._closed:
            return
        self._closed = True
        try:
            self._lease.ctx.check("close", self.name)
            await self._raw.commit()
        except BaseException:
            await self._raw.discard()
            raise
        finally:
            await self._lease.release(cleanup=False)

    async def abort(self) -> None:
        """Discard everything written and release the session."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._raw.discard()
        finally:
            await self._lease.release(cleanup=False)

    async def __aenter__(self) -> "ManagedWriter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()


class DiscardWriter:
    """Dry-run sink: accepts and drops every byte, close always succeeds."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.size = 0
        self.closed = False

    async def write(self, data: bytes) -> int:
        self.size += len(data)
        return len(data)

    async def close(self) -> None:
        self.closed = True

    async def abort(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "DiscardWriter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def open_stream(
    ctx: Context,
    sessions: SessionManager,
    opener: Callable[[Any], Awaitable[Any]],
    *,
    backend: str,
    bucket: str,
    name: str,
    writable: bool,
) -> ManagedReader | ManagedWriter:
    """Clone a session, open one object on it, and bind both to ``ctx``.

    Args:
        ctx: The caller's context.
        sessions: The backend's session manager.
        opener: Coroutine function that opens the object on a cloned
            session and returns a RawReader or RawWriter.
        backend: Backend type name, used in error messages.
        bucket: Bucket name, used in error messages.
        name: Normalized backend name of the object.
        writable: Whether to wrap the handle as a writer.

    Raises:
        NotFoundError: If the object does not exist (readers only).
        BucketError: If the object could not be opened.
    """
    action = "writer" if writable else "reader"
    ctx.check(action, name)

    session = await sessions.clone()
    try:
        raw = await opener(session)
    except OperationCancelledError:
        await session.close()
        raise
    except (NotFoundError, FileNotFoundError) as exc:
        await session.close()
        raise NotFoundError(
            f"couldn't open {backend} object {bucket}/{name}",
            bucket=bucket,
            key=name,
            action=action,
        ) from exc
    except Exception as exc:
        await session.close()
        raise BucketError(
            f"couldn't open {backend} object {bucket}/{name}",
            bucket=bucket,
            key=name,
            action=action,
        ) from exc

    # The monitor closes or discards the raw handle if the context ends first.
    lease = Lease(
        ctx,
        session,
        label=f"{backend}:{bucket}/{name}",
        on_release=raw.discard if writable else raw.close,
    )
    if writable:
        return ManagedWriter(lease, raw, name)
    return ManagedReader(lease, raw, name)
