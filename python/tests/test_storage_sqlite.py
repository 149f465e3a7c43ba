"""Unit tests for the SQLite blob bucket backend.

Tests cover connection setup, ranged reads, paginated listing, bucket
isolation on a shared connection, and per-stream connection cleanup.
"""

import hashlib

import pytest

from bucketsync.config import SQLiteBucketOptions
from bucketsync.errors import ConfigurationError, ConnectivityError
from bucketsync.storage import sqlite as sqlite_backend
from bucketsync.storage.sqlite import SQLiteBucket, SQLiteConnection


@pytest.fixture
async def connection(tmp_path):
    conn = SQLiteConnection(str(tmp_path / "shared.db"))
    await conn.init()
    yield conn
    await conn.close()


class TestInit:
    async def test_creates_files_table(self, sqlite_bucket):
        db = sqlite_bucket.connection.ensure_db()
        async with db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='files'"
        ) as cursor:
            assert await cursor.fetchone() is not None

    async def test_idempotent_init(self, sqlite_bucket):
        await sqlite_bucket.init()

    async def test_unreachable_database(self, tmp_path):
        bucket = SQLiteBucket(
            SQLiteBucketOptions(name="b", path=str(tmp_path / "no-such-dir" / "x.db"))
        )
        with pytest.raises(ConnectivityError):
            await bucket.init()

    async def test_check_after_close(self, ctx, tmp_path):
        bucket = SQLiteBucket(SQLiteBucketOptions(name="b", path=str(tmp_path / "x.db")))
        await bucket.init()
        await bucket.check(ctx)
        await bucket.close()
        with pytest.raises(ConnectivityError):
            await bucket.check(ctx)

    def test_path_required(self):
        with pytest.raises(ConfigurationError, match="path is required"):
            SQLiteBucket(SQLiteBucketOptions(name="b"))

    @pytest.mark.parametrize("path", [":memory:", "file::memory:?cache=shared"])
    def test_in_memory_path_rejected(self, path):
        with pytest.raises(ConfigurationError, match="cannot be an in-memory database"):
            SQLiteBucket(SQLiteBucketOptions(name="b", path=path))

    def test_injected_connection_needs_no_path(self, connection):
        SQLiteBucket(SQLiteBucketOptions(name="b"), connection=connection)


class TestStorage:
    async def test_row_records_md5_and_length(self, ctx, sqlite_bucket):
        await sqlite_bucket.put(ctx, "k", b"payload")
        db = sqlite_bucket.connection.ensure_db()
        async with db.execute(
            "SELECT bucket, name, md5, length FROM files"
        ) as cursor:
            rows = await cursor.fetchall()
        assert rows == [("test", "data/k", hashlib.md5(b"payload").hexdigest(), 7)]

    async def test_ranged_reads(self, ctx, sqlite_bucket):
        await sqlite_bucket.put(ctx, "k", b"0123456789")
        reader = await sqlite_bucket.get(ctx, "k")
        try:
            assert await reader.read(4) == b"0123"
            assert await reader.read(4) == b"4567"
            assert await reader.read(4) == b"89"
            assert await reader.read(4) == b""
        finally:
            await reader.close()

    async def test_listing_paginates(self, ctx, sqlite_bucket, monkeypatch):
        monkeypatch.setattr(sqlite_backend, "_PAGE_SIZE", 2)
        names = [f"f{i}" for i in range(5)]
        for name in names:
            await sqlite_bucket.put(ctx, name, name.encode())

        iterator = await sqlite_bucket.list(ctx)
        assert [item.key async for item in iterator] == names

    async def test_listing_literal_prefix(self, ctx, sqlite_bucket):
        for key in ("abc/1", "abc123/2", "abd/3"):
            await sqlite_bucket.put(ctx, key, b"x")
        iterator = await sqlite_bucket.list(ctx, "abc")
        assert [item.key async for item in iterator] == ["abc/1", "abc123/2"]


class TestSharedConnection:
    async def test_buckets_isolated_by_name(self, ctx, connection):
        first = SQLiteBucket(SQLiteBucketOptions(name="first"), connection=connection)
        second = SQLiteBucket(SQLiteBucketOptions(name="second"), connection=connection)
        await first.put(ctx, "k", b"one")
        await second.put(ctx, "k", b"two")

        assert (await first.stat(ctx, "k")).size == 3
        iterator = await second.list(ctx)
        items = [item async for item in iterator]
        assert [(item.key, item.checksum) for item in items] == [
            ("k", hashlib.md5(b"two").hexdigest())
        ]

    async def test_close_leaves_injected_connection_open(self, ctx, connection):
        bucket = SQLiteBucket(SQLiteBucketOptions(name="b"), connection=connection)
        await bucket.close()
        await connection.ping()
