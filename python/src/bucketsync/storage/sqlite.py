"""SQLite blob bucket backend for bucketsync.

Objects are stored as BLOBs in a single ``files`` table shared by every
bucket in the database, keyed by (bucket, name). Each row records the MD5
and length of its data so sync can compare checksums without reading
the object.

Tables:
    files(bucket, name, data, md5, length, uploaded)

``SQLiteConnection`` owns one connection used for liveness checks,
metadata lookups and removals. Every stream and iterator clones its own
connection, which is closed when the stream closes or the governing
context ends. Several buckets may share one ``SQLiteConnection``.
"""

import functools
import hashlib
import io
import logging
import sqlite3
from datetime import datetime, timezone

import aiosqlite

from bucketsync import keys
from bucketsync.bucket import ObjectInfo
from bucketsync.config import SQLiteBucketOptions, validate_options
from bucketsync.context import Context
from bucketsync.errors import BucketError, ConnectivityError, NotFoundError
from bucketsync.iterator import LeasedIterator
from bucketsync.logging_config import log_operation
from bucketsync.storage import common
from bucketsync.streams import open_stream

logger = logging.getLogger(__name__)

_BACKEND = "sqlite"

# Rows fetched per listing query.
_PAGE_SIZE = 100

_CREATE_FILES = """
CREATE TABLE IF NOT EXISTS files (
    bucket TEXT NOT NULL,
    name TEXT NOT NULL,
    data BLOB NOT NULL,
    md5 TEXT NOT NULL,
    length INTEGER NOT NULL,
    uploaded TEXT NOT NULL,
    PRIMARY KEY (bucket, name)
)
"""


async def _connect(path: str) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path)
    await db.execute("PRAGMA busy_timeout=5000")
    return db


class SQLiteConnection:
    """Owns the primary database connection and clones per-operation ones.

    Attributes:
        path: Path to the SQLite database file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the primary connection and create the files table.

        Raises:
            ConnectivityError: If the database cannot be opened.
        """
        if self._db is not None:
            return
        try:
            db = await _connect(self.path)
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(_CREATE_FILES)
            await db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise ConnectivityError(
                f"problem connecting to sqlite database {self.path}", action="connect"
            ) from exc
        self._db = db
        logger.info("SQLite bucket connection opened at %s", self.path)

    def ensure_db(self) -> aiosqlite.Connection:
        """Return the primary connection or raise."""
        if self._db is None:
            raise ConnectivityError("no session defined", action="check")
        return self._db

    async def clone(self) -> "SQLiteSession":
        self.ensure_db()
        try:
            return SQLiteSession(await _connect(self.path))
        except (sqlite3.Error, OSError) as exc:
            raise ConnectivityError(
                f"problem cloning sqlite session for {self.path}", action="clone"
            ) from exc

    async def ping(self) -> None:
        db = self.ensure_db()
        try:
            async with db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
        except (sqlite3.Error, ValueError) as exc:
            raise ConnectivityError("problem contacting sqlite database", action="check") from exc

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None


class SQLiteSession:
    """A cloned connection used by exactly one stream or iterator."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.db.close()


class _SQLiteReader:
    """Reads an object in ranges with ``substr`` rather than loading it whole."""

    def __init__(self, session: SQLiteSession, bucket: str, name: str, length: int) -> None:
        self._session = session
        self._bucket = bucket
        self._name = name
        self._length = length
        self._pos = 0

    async def read(self, size: int = -1) -> bytes:
        remaining = self._length - self._pos
        if remaining <= 0:
            return b""
        count = remaining if size < 0 else min(size, remaining)
        async with self._session.db.execute(
            "SELECT substr(data, ?, ?) FROM files WHERE bucket = ? AND name = ?",
            (self._pos + 1, count, self._bucket, self._name),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"object {self._name} was removed during read", key=self._name)
        chunk = bytes(row[0])
        self._pos += len(chunk)
        return chunk

    async def close(self) -> None:
        pass


class _SQLiteWriter:
    def __init__(self, session: SQLiteSession, bucket: str, name: str) -> None:
        self._session = session
        self._bucket = bucket
        self._name = name
        self._buf = io.BytesIO()

    async def write(self, data: bytes) -> None:
        self._buf.write(data)

    async def commit(self) -> None:
        data = self._buf.getvalue()
        db = self._session.db
        await db.execute(
            "INSERT OR REPLACE INTO files (bucket, name, data, md5, length, uploaded) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                self._bucket,
                self._name,
                data,
                hashlib.md5(data).hexdigest(),
                len(data),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await db.commit()

    async def discard(self) -> None:
        self._buf = io.BytesIO()


class SQLiteBucket:
    """Bucket stored as rows of a SQLite ``files`` table.

    Attributes:
        options: The bucket's options.
        connection: The (possibly shared) SQLiteConnection.
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

    def __init__(
        self,
        options: SQLiteBucketOptions,
        connection: SQLiteConnection | None = None,
    ) -> None:
        validate_options(options, require_connection=connection is None)
        self.options = options
        self.connection = connection if connection is not None else SQLiteConnection(options.path)
        self._owns_connection = connection is None

    async def init(self) -> None:
        await self.connection.init()

    def _normalize(self, key: str) -> str:
        return keys.normalize(self.options.prefix, key)

    async def check(self, ctx: Context) -> None:
        ctx.check("check")
        await self.connection.ping()

    async def _open(self, ctx: Context, key: str, writable: bool):
        name = self._normalize(key)
        bucket = self.options.name

        async def opener(session: SQLiteSession):
            if writable:
                return _SQLiteWriter(session, bucket, name)
            async with session.db.execute(
                "SELECT length FROM files WHERE bucket = ? AND name = ?", (bucket, name)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"no object named {name}")
            return _SQLiteReader(session, bucket, name, row[0])

        return await open_stream(
            ctx,
            self.connection,
            opener,
            backend=_BACKEND,
            bucket=bucket,
            name=name,
            writable=writable,
        )

    async def stat(self, ctx: Context, key: str) -> ObjectInfo:
        ctx.check("stat", key)
        name = self._normalize(key)
        db = self.connection.ensure_db()
        try:
            async with db.execute(
                "SELECT md5, length FROM files WHERE bucket = ? AND name = ?",
                (self.options.name, name),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise BucketError(
                f"problem finding '{name}'", bucket=self.options.name, key=key, action="stat"
            ) from exc
        if row is None:
            raise NotFoundError(
                f"no object named {name}", bucket=self.options.name, key=key, action="stat"
            )
        return ObjectInfo(key=key, checksum=row[0], size=row[1])

    async def remove(self, ctx: Context, key: str) -> None:
        log_operation(self.options, _BACKEND, "remove", key=key)
        if self.options.dry_run:
            return
        ctx.check("remove", key)
        name = self._normalize(key)
        db = self.connection.ensure_db()
        try:
            async with db.execute(
                "DELETE FROM files WHERE bucket = ? AND name = ?", (self.options.name, name)
            ) as cursor:
                removed = cursor.rowcount
            await db.commit()
        except sqlite3.Error as exc:
            raise BucketError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            ) from exc
        if removed == 0:
            raise NotFoundError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            )

    async def list(self, ctx: Context, prefix: str = "") -> LeasedIterator:
        log_operation(self.options, _BACKEND, "list", prefix=prefix)
        ctx.check("list", prefix)
        name = self._normalize(prefix) if prefix else ""
        return LeasedIterator(
            ctx, self, self.connection, functools.partial(self._scan, prefix=name), prefix
        )

    async def _scan(self, session: SQLiteSession, prefix: str):
        """Yield matching rows a page at a time, ordered by name."""
        query = (
            "SELECT name, md5, length FROM files "
            "WHERE bucket = ? AND (? IS NULL OR name > ?) AND substr(name, 1, ?) = ? "
            "ORDER BY name LIMIT ?"
        )
        last: str | None = None
        while True:
            async with session.db.execute(
                query, (self.options.name, last, last, len(prefix), prefix, _PAGE_SIZE)
            ) as cursor:
                rows = await cursor.fetchall()
            for name, md5, length in rows:
                yield name, md5, length
            if len(rows) < _PAGE_SIZE:
                return
            last = rows[-1][0]

    async def close(self) -> None:
        if self._owns_connection:
            await self.connection.close()
