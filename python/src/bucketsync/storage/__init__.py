"""Bucket backends for bucketsync."""

from typing import TYPE_CHECKING

from bucketsync.bucket import Bucket
from bucketsync.config import (
    LocalBucketOptions,
    MemoryBucketOptions,
    S3BucketOptions,
    SQLiteBucketOptions,
)
from bucketsync.errors import ConfigurationError

if TYPE_CHECKING:
    from bucketsync.config import BucketConfig

__all__ = ["BACKENDS", "create_bucket", "open_bucket"]

BACKENDS = ("memory", "sqlite", "local", "s3")


def create_bucket(config: "BucketConfig") -> Bucket:
    """Create a bucket instance based on configuration.

    The bucket is not connected yet; call ``await bucket.init()`` or use
    ``open_bucket``.

    Raises:
        ConfigurationError: If the backend is unknown or required config is missing.
    """
    backend = config.backend
    common = config.common_options()

    if backend == "memory":
        from bucketsync.storage.memory import MemoryBucket

        return MemoryBucket(MemoryBucketOptions(**common))

    elif backend == "sqlite":
        from bucketsync.storage.sqlite import SQLiteBucket

        return SQLiteBucket(SQLiteBucketOptions(path=config.sqlite_path, **common))

    elif backend == "local":
        from bucketsync.storage.local import LocalBucket

        return LocalBucket(LocalBucketOptions(root=config.local_root, **common))

    elif backend == "s3":
        try:
            from bucketsync.storage.aws import S3Bucket
        except ImportError as exc:
            raise ConfigurationError(
                "aiobotocore is required for the s3 backend", action="configure"
            ) from exc
        return S3Bucket(
            S3BucketOptions(
                bucket=config.s3_bucket,
                region=config.s3_region,
                endpoint_url=config.s3_endpoint_url,
                use_path_style=config.s3_use_path_style,
                access_key_id=config.s3_access_key_id,
                secret_access_key=config.s3_secret_access_key,
                **common,
            )
        )

    else:
        raise ConfigurationError(
            f"Unknown bucket backend: {backend} (expected one of {', '.join(BACKENDS)})",
            action="configure",
        )


async def open_bucket(config: "BucketConfig") -> Bucket:
    """Create a bucket and connect it to its backend.

    Raises:
        ConfigurationError: If the configuration is invalid.
        ConnectivityError: If the backend cannot be reached.
    """
    bucket = create_bucket(config)
    await bucket.init()
    return bucket
