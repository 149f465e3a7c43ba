"""AWS S3 bucket backend for bucketsync.

Stores objects in an upstream S3 bucket via aiobotocore. Logical keys map
to S3 keys as ``{prefix}/{key}``; listing uses the native ``Prefix``
filter of ``list_objects_v2``, which is a literal string-prefix match.

The S3 ETag is the reported checksum. Multipart-uploaded objects carry an
ETag that is not an MD5 of the content, so sync always transfers them.

Credentials are resolved via the standard AWS credential chain
(env vars, ~/.aws/credentials, IAM role, etc.) unless given explicitly.
"""

import functools
import io
import logging

from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError

from bucketsync import keys
from bucketsync.bucket import ObjectInfo
from bucketsync.config import S3BucketOptions, validate_options
from bucketsync.context import Context
from bucketsync.errors import BucketError, ConnectivityError, NotFoundError, StreamClosedError
from bucketsync.iterator import LeasedIterator
from bucketsync.logging_config import log_operation
from bucketsync.storage import common
from bucketsync.streams import open_stream

logger = logging.getLogger(__name__)

_BACKEND = "s3"

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class S3Client:
    """Owns the aiobotocore client; cloned sessions share it.

    Attributes:
        bucket_name: The upstream S3 bucket name.
        open_sessions: Number of cloned sessions not yet closed.
    """

    def __init__(self, options: S3BucketOptions) -> None:
        self.bucket_name = options.bucket
        self.region = options.region
        self.endpoint_url = options.endpoint_url
        self.use_path_style = options.use_path_style
        self.access_key_id = options.access_key_id
        self.secret_access_key = options.secret_access_key
        self.open_sessions = 0
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    async def init(self) -> None:
        """Create the aiobotocore S3 client and verify the upstream bucket exists.

        Raises:
            ConnectivityError: If the upstream bucket does not exist or is inaccessible.
        """
        if self._client is not None:
            return

        client_kwargs: dict = {"region_name": self.region}
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        if self.use_path_style:
            from botocore.config import Config as BotoConfig
            client_kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})

        # Use explicit credentials if provided, otherwise fall back to chain
        if self.access_key_id and self.secret_access_key:
            session = AioSession()
            session.set_credentials(self.access_key_id, self.secret_access_key)
            self._session = session
        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as e:
            await self.close()
            raise ConnectivityError(
                f"Cannot access upstream S3 bucket '{self.bucket_name}'", action="connect"
            ) from e

        logger.info(
            "S3 bucket client initialized: bucket=%s region=%s",
            self.bucket_name,
            self.region,
        )

    @property
    def client(self):
        if self._client is None:
            raise ConnectivityError("no session defined", action="check")
        return self._client

    async def clone(self) -> "S3Session":
        return S3Session(self)

    async def ping(self) -> None:
        try:
            await self.client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as e:
            raise ConnectivityError(
                f"problem contacting S3 bucket '{self.bucket_name}'", action="check"
            ) from e

    async def close(self) -> None:
        """Close the aiobotocore client session."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None


class S3Session:
    """A per-operation handle on the shared S3 client."""

    def __init__(self, owner: S3Client) -> None:
        self.owner = owner
        self.closed = False
        owner.open_sessions += 1

    @property
    def client(self):
        if self.closed:
            raise StreamClosedError("s3 session is closed")
        return self.owner.client

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.owner.open_sessions -= 1


class _S3Reader:
    def __init__(self, session: S3Session, body) -> None:
        self._session = session
        self._body = body

    async def read(self, size: int = -1) -> bytes:
        if self._session.closed:
            raise StreamClosedError("s3 session is closed")
        if size < 0:
            return await self._body.read()
        return await self._body.read(size)

    async def close(self) -> None:
        self._body.close()


class _S3Writer:
    """Buffers the object and uploads it with one put_object on commit."""

    def __init__(self, session: S3Session, bucket_name: str, s3_key: str) -> None:
        self._session = session
        self._bucket_name = bucket_name
        self._s3_key = s3_key
        self._buf = io.BytesIO()

    async def write(self, data: bytes) -> None:
        self._buf.write(data)

    async def commit(self) -> None:
        await self._session.client.put_object(
            Bucket=self._bucket_name,
            Key=self._s3_key,
            Body=self._buf.getvalue(),
        )

    async def discard(self) -> None:
        self._buf = io.BytesIO()


class S3Bucket:
    """Bucket stored in an upstream S3 bucket.

    Attributes:
        options: The bucket's options.
        s3: The (possibly shared) S3Client.
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

    def __init__(self, options: S3BucketOptions, s3: S3Client | None = None) -> None:
        validate_options(options, require_connection=s3 is None)
        self.options = options
        self.s3 = s3 if s3 is not None else S3Client(options)
        self._owns_client = s3 is None

    async def init(self) -> None:
        await self.s3.init()

    def _normalize(self, key: str) -> str:
        return keys.normalize(self.options.prefix, key)

    async def check(self, ctx: Context) -> None:
        ctx.check("check")
        await self.s3.ping()

    async def _open(self, ctx: Context, key: str, writable: bool):
        name = self._normalize(key)
        bucket_name = self.s3.bucket_name

        async def opener(session: S3Session):
            if writable:
                return _S3Writer(session, bucket_name, name)
            try:
                resp = await session.client.get_object(Bucket=bucket_name, Key=name)
            except ClientError as e:
                if _error_code(e) in _NOT_FOUND_CODES:
                    raise NotFoundError(f"no object named {name}") from e
                raise
            return _S3Reader(session, resp["Body"])

        return await open_stream(
            ctx,
            self.s3,
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
            resp = await self.s3.client.head_object(Bucket=self.s3.bucket_name, Key=name)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise NotFoundError(
                    f"no object named {name}", bucket=self.options.name, key=key, action="stat"
                ) from e
            raise BucketError(
                f"problem finding '{name}'", bucket=self.options.name, key=key, action="stat"
            ) from e
        return ObjectInfo(
            key=key,
            checksum=resp.get("ETag", "").strip('"'),
            size=resp.get("ContentLength", 0),
        )

    async def remove(self, ctx: Context, key: str) -> None:
        """Delete one object.

        S3 deletes are idempotent, so existence is checked first to report
        a missing key as NotFoundError like the other backends.
        """
        log_operation(self.options, _BACKEND, "remove", key=key)
        if self.options.dry_run:
            return
        await self.stat(ctx, key)
        name = self._normalize(key)
        try:
            await self.s3.client.delete_object(Bucket=self.s3.bucket_name, Key=name)
        except ClientError as e:
            raise BucketError(
                f"problem removing file {key}", bucket=self.options.name, key=key, action="remove"
            ) from e

    async def list(self, ctx: Context, prefix: str = "") -> LeasedIterator:
        log_operation(self.options, _BACKEND, "list", prefix=prefix)
        ctx.check("list", prefix)
        name = self._normalize(prefix) if prefix else ""
        return LeasedIterator(ctx, self, self.s3, functools.partial(self._scan, prefix=name), prefix)

    async def _scan(self, session: S3Session, prefix: str):
        kwargs: dict = {"Bucket": self.s3.bucket_name}
        if prefix:
            kwargs["Prefix"] = prefix
        paginator = session.client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(**kwargs):
            for obj in page.get("Contents", []):
                yield obj["Key"], obj.get("ETag", "").strip('"'), obj.get("Size", 0)

    async def close(self) -> None:
        if self._owns_client:
            await self.s3.close()
