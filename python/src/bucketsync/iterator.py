"""Lazy, single-pass bucket iteration.

Backends provide a ``scan`` coroutine function that, given a cloned
session, returns an async iterator of ``(name, checksum, size)`` rows for
backend names matching the listing prefix. The iterator clones the
session on the first ``next()`` call and holds it under a ``Lease`` bound
to the context ``list()`` was called with, so an abandoned iterator never
outlives that context.
"""

from collections.abc import AsyncIterator, Callable
from typing import Any

from bucketsync import keys
from bucketsync.bucket import Bucket, BucketItem
from bucketsync.context import Context
from bucketsync.errors import OperationCancelledError
from bucketsync.streams import Lease, SessionManager

# Row produced by a backend scan: (backend name, checksum, size).
ScanRow = tuple[str, str, int]


class LeasedIterator:
    """BucketIterator implementation shared by all backends."""

    def __init__(
        self,
        ctx: Context,
        bucket: Bucket,
        sessions: SessionManager,
        scan: Callable[[Any], AsyncIterator[ScanRow]],
        prefix: str = "",
    ) -> None:
        self._ctx = ctx
        self._bucket = bucket
        self._sessions = sessions
        self._scan = scan
        self._prefix = prefix
        self._lease: Lease | None = None
        self._rows: AsyncIterator[ScanRow] | None = None
        self._item: BucketItem | None = None
        self._err: Exception | None = None
        self._done = False

    @property
    def item(self) -> BucketItem | None:
        return self._item

    @property
    def err(self) -> Exception | None:
        return self._err

    async def next(self, ctx: Context) -> bool:
        """Advance to the next matching object.

        Returns False once exhausted, on error (see ``err``), or once
        either the creation context or ``ctx`` has ended.
        """
        if self._done:
            return False
        if self._ctx.cancelled or ctx.cancelled:
            self._err = OperationCancelledError(action="list", key=self._prefix)
            await self.close()
            return False

        try:
            if self._rows is None:
                session = await self._sessions.clone()
                self._lease = Lease(self._ctx, session, label=f"list:{self._prefix}")
                self._rows = self._scan(session)
            name, checksum, size = await self._rows.__anext__()
        except StopAsyncIteration:
            await self.close()
            return False
        except Exception as exc:
            self._err = exc
            await self.close()
            return False

        options = self._bucket.options
        self._item = BucketItem(
            self._bucket,
            keys.denormalize(options.prefix, name),
            checksum,
            size,
        )
        return True

    async def close(self) -> None:
        """Stop iterating and release the cursor and session."""
        if self._done:
            return
        self._done = True
        try:
            if self._rows is not None and hasattr(self._rows, "aclose"):
                await self._rows.aclose()
        finally:
            if self._lease is not None:
                await self._lease.release()

    async def __aiter__(self) -> AsyncIterator[BucketItem]:
        while await self.next(self._ctx):
            yield self._item
        if self._err is not None:
            raise self._err
