"""Shared pytest fixtures for bucketsync tests.

Every bucket fixture is initialized against a temporary directory (or an
in-memory store) and closed after the test. The memory store is exposed
separately so tests can assert that no cloned sessions leak.
"""

import pytest

from bucketsync.config import LocalBucketOptions, MemoryBucketOptions, SQLiteBucketOptions
from bucketsync.context import Context
from bucketsync.storage.local import LocalBucket
from bucketsync.storage.memory import MemoryBucket, MemoryStore
from bucketsync.storage.sqlite import SQLiteBucket


@pytest.fixture
async def ctx():
    """A background context, canceled when the test ends."""
    context = Context.background()
    yield context
    context.cancel()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def memory_bucket(store):
    """A memory bucket with prefix 'data' on the shared ``store`` fixture."""
    bucket = MemoryBucket(MemoryBucketOptions(name="test", prefix="data"), store=store)
    await bucket.init()
    yield bucket
    await bucket.close()


@pytest.fixture
async def sqlite_bucket(tmp_path):
    bucket = SQLiteBucket(
        SQLiteBucketOptions(name="test", prefix="data", path=str(tmp_path / "bucket.db"))
    )
    await bucket.init()
    yield bucket
    await bucket.close()


@pytest.fixture
async def local_bucket(tmp_path):
    bucket = LocalBucket(
        LocalBucketOptions(name="test", prefix="data", root=str(tmp_path / "objects"))
    )
    await bucket.init()
    yield bucket
    await bucket.close()


@pytest.fixture(params=["memory", "sqlite", "local"])
async def bucket(request, tmp_path):
    """Each non-network backend in turn, all with prefix 'data'."""
    if request.param == "memory":
        b = MemoryBucket(MemoryBucketOptions(name="test", prefix="data"))
    elif request.param == "sqlite":
        b = SQLiteBucket(
            SQLiteBucketOptions(name="test", prefix="data", path=str(tmp_path / "bucket.db"))
        )
    else:
        b = LocalBucket(
            LocalBucketOptions(name="test", prefix="data", root=str(tmp_path / "objects"))
        )
    await b.init()
    yield b
    await b.close()
