"""Tests for session leases and managed streams.

Leak checks use the memory store's ``open_sessions`` counter: every
cloned session must be closed exactly once, whether the stream is closed
explicitly or its context ends first.
"""

import asyncio

import pytest

from bucketsync.context import Context
from bucketsync.errors import (
    BucketError,
    NotFoundError,
    OperationCancelledError,
    StreamClosedError,
)
from bucketsync.streams import DiscardWriter, Lease, ManagedReader, ManagedWriter, open_stream


async def _settle():
    """Let detached monitor tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


class FakeSession:
    def __init__(self):
        self.closes = 0

    async def close(self):
        self.closes += 1


class FakeManager:
    def __init__(self):
        self.sessions: list[FakeSession] = []

    async def clone(self):
        session = FakeSession()
        self.sessions.append(session)
        return session

    async def ping(self):
        pass

    async def close(self):
        pass


class TestLease:
    async def test_release_is_single_fire(self, ctx):
        session = FakeSession()
        lease = Lease(ctx, session)
        await lease.release()
        await lease.release()
        await _settle()
        assert session.closes == 1
        assert lease.released

    async def test_released_when_context_ends(self, ctx):
        child = ctx.child()
        session = FakeSession()
        lease = Lease(child, session)
        child.cancel()
        await _settle()
        assert session.closes == 1
        assert lease.released

    async def test_release_cancels_derived_context_only(self, ctx):
        lease = Lease(ctx, FakeSession())
        await lease.release()
        assert lease.ctx.cancelled
        assert not ctx.cancelled

    async def test_explicit_release_then_cancel_does_not_double_close(self, ctx):
        child = ctx.child()
        session = FakeSession()
        lease = Lease(child, session)
        await lease.release()
        child.cancel()
        await _settle()
        assert session.closes == 1

    async def test_context_end_runs_cleanup_before_session_close(self, ctx):
        child = ctx.child()
        session = FakeSession()
        calls = []

        async def cleanup():
            calls.append(session.closes)

        Lease(child, session, on_release=cleanup)
        child.cancel()
        await _settle()
        assert calls == [0]
        assert session.closes == 1

    async def test_release_without_cleanup(self, ctx):
        calls = []

        async def cleanup():
            calls.append(True)

        lease = Lease(ctx, FakeSession(), on_release=cleanup)
        await lease.release(cleanup=False)
        await _settle()
        assert calls == []

    async def test_failing_cleanup_still_closes_session(self, ctx):
        session = FakeSession()

        async def cleanup():
            raise OSError("boom")

        lease = Lease(ctx, session, on_release=cleanup)
        with pytest.raises(OSError):
            await lease.release()
        assert session.closes == 1
        assert lease.ctx.cancelled


class TestOpenStream:
    async def test_opener_not_found_releases_session(self, ctx):
        manager = FakeManager()

        async def opener(session):
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError, match="couldn't open memory object test/data/k"):
            await open_stream(
                ctx, manager, opener, backend="memory", bucket="test", name="data/k", writable=False
            )
        assert manager.sessions[0].closes == 1

    async def test_opener_failure_wrapped(self, ctx):
        manager = FakeManager()

        async def opener(session):
            raise RuntimeError("boom")

        with pytest.raises(BucketError) as exc_info:
            await open_stream(
                ctx, manager, opener, backend="sqlite", bucket="test", name="data/k", writable=True
            )
        assert not isinstance(exc_info.value, NotFoundError)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert manager.sessions[0].closes == 1

    async def test_cancelled_context_never_clones(self, ctx):
        manager = FakeManager()
        ctx.cancel()

        async def opener(session):
            raise AssertionError("opener must not run")

        with pytest.raises(OperationCancelledError):
            await open_stream(
                ctx, manager, opener, backend="memory", bucket="test", name="k", writable=False
            )
        assert manager.sessions == []


class TestManagedWriter:
    async def test_close_commits_and_releases(self, ctx, memory_bucket, store):
        writer = await memory_bucket.writer(ctx, "a.txt")
        assert isinstance(writer, ManagedWriter)
        assert store.open_sessions == 1
        await writer.write(b"hello ")
        await writer.write(b"world")
        assert writer.size == 11
        await writer.close()
        assert store.objects["data/a.txt"][0] == b"hello world"
        assert store.open_sessions == 0

    async def test_abort_discards(self, ctx, memory_bucket, store):
        writer = await memory_bucket.writer(ctx, "a.txt")
        await writer.write(b"partial")
        await writer.abort()
        assert "data/a.txt" not in store.objects
        assert store.open_sessions == 0

    async def test_context_manager_aborts_on_error(self, ctx, memory_bucket, store):
        with pytest.raises(ValueError):
            async with await memory_bucket.writer(ctx, "a.txt") as writer:
                await writer.write(b"partial")
                raise ValueError("stop")
        assert "data/a.txt" not in store.objects
        assert store.open_sessions == 0

    async def test_context_manager_commits(self, ctx, memory_bucket, store):
        async with await memory_bucket.writer(ctx, "a.txt") as writer:
            await writer.write(b"done")
        assert store.objects["data/a.txt"][0] == b"done"

    async def test_write_after_cancel_fails(self, ctx, memory_bucket, store):
        child = ctx.child()
        writer = await memory_bucket.writer(child, "a.txt")
        await writer.write(b"x")
        child.cancel()
        await _settle()
        assert store.open_sessions == 0
        with pytest.raises(OperationCancelledError):
            await writer.write(b"y")

    async def test_close_after_cancel_does_not_commit(self, ctx, memory_bucket, store):
        child = ctx.child()
        writer = await memory_bucket.writer(child, "a.txt")
        await writer.write(b"x")
        child.cancel()
        with pytest.raises(OperationCancelledError):
            await writer.close()
        await _settle()
        assert "data/a.txt" not in store.objects
        assert store.open_sessions == 0

    async def test_write_after_close_fails(self, ctx, memory_bucket):
        writer = await memory_bucket.writer(ctx, "a.txt")
        await writer.close()
        with pytest.raises(StreamClosedError):
            await writer.write(b"late")


class TestManagedReader:
    async def test_read_and_close(self, ctx, memory_bucket, store):
        await memory_bucket.put(ctx, "a.txt", b"content")
        reader = await memory_bucket.get(ctx, "a.txt")
        assert isinstance(reader, ManagedReader)
        assert store.open_sessions == 1
        assert await reader.read() == b"content"
        await reader.close()
        await reader.close()
        assert store.open_sessions == 0

    async def test_async_iteration(self, ctx, memory_bucket):
        data = b"x" * (200 * 1024)
        await memory_bucket.put(ctx, "big.bin", data)
        async with await memory_bucket.get(ctx, "big.bin") as reader:
            chunks = [chunk async for chunk in reader]
        assert len(chunks) == 4
        assert b"".join(chunks) == data

    async def test_missing_key(self, ctx, memory_bucket, store):
        with pytest.raises(NotFoundError, match="couldn't open memory object test/data/missing"):
            await memory_bucket.get(ctx, "missing")
        assert store.open_sessions == 0

    async def test_abandoned_reader_released_on_cancel(self, ctx, memory_bucket, store):
        await memory_bucket.put(ctx, "a.txt", b"content")
        child = ctx.child()
        reader = await memory_bucket.get(child, "a.txt")
        assert store.open_sessions == 1
        child.cancel()
        await _settle()
        assert store.open_sessions == 0
        with pytest.raises(OperationCancelledError):
            await reader.read()
        await reader.close()
        assert store.open_sessions == 0

    async def test_deadline_releases_reader(self, memory_bucket, store):
        setup = Context()
        await memory_bucket.put(setup, "a.txt", b"content")
        ctx = Context(timeout=0.01)
        await memory_bucket.get(ctx, "a.txt")
        assert store.open_sessions == 1
        await asyncio.sleep(0.05)
        await _settle()
        assert store.open_sessions == 0


class TestDiscardWriter:
    async def test_discards_everything(self):
        writer = DiscardWriter("k")
        assert await writer.write(b"abc") == 3
        await writer.close()
        assert writer.closed
        assert writer.size == 3
