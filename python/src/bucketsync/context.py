"""Cancellation contexts for bucket operations.

A ``Context`` is passed as the first argument of every bucket coroutine.
Canceling a context (explicitly or by deadline) cancels every context
derived from it. Streams and iterators derive a child context and release
their backend resources once it ends.
"""

import asyncio
import time
import weakref

from bucketsync.errors import OperationCancelledError


class Context:
    """A cancellation scope with an optional deadline.

    Attributes:
        deadline: ``time.monotonic()`` value after which the context counts
            as canceled, or None for no deadline.
    """

    def __init__(
        self,
        parent: "Context | None" = None,
        timeout: float | None = None,
    ) -> None:
        self._done = asyncio.Event()
        self._children: "weakref.WeakSet[Context]" = weakref.WeakSet()

        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None:
            if parent.deadline is not None:
                deadline = (
                    parent.deadline if deadline is None else min(deadline, parent.deadline)
                )
            if parent.cancelled:
                self._done.set()
            else:
                parent._children.add(self)
        self.deadline = deadline

    @classmethod
    def background(cls) -> "Context":
        """Return a root context that is never canceled on its own."""
        return cls()

    def child(self, timeout: float | None = None) -> "Context":
        """Derive a context that ends no later than this one."""
        return Context(parent=self, timeout=timeout)

    def cancel(self) -> None:
        """Cancel this context and all contexts derived from it."""
        if self._done.is_set():
            return
        self._done.set()
        for child in list(self._children):
            child.cancel()
        self._children.clear()

    @property
    def cancelled(self) -> bool:
        if self._done.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel()
            return True
        return False

    def check(self, action: str = "", key: str = "") -> None:
        """Raise OperationCancelledError if this context has ended."""
        if self.cancelled:
            raise OperationCancelledError(action=action, key=key)

    async def wait(self) -> None:
        """Block until the context is canceled or its deadline passes."""
        if self.cancelled:
            return
        if self.deadline is None:
            await self._done.wait()
            return
        remaining = max(self.deadline - time.monotonic(), 0)
        try:
            await asyncio.wait_for(self._done.wait(), remaining)
        except asyncio.TimeoutError:
            self.cancel()
