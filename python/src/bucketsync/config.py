"""Configuration loading and Pydantic models for bucketsync."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from bucketsync.errors import ConfigurationError


class BucketOptions(BaseModel):
    """Options shared by every bucket backend."""

    name: str = ""
    prefix: str = ""
    dry_run: bool = False
    verbose: bool = False
    delete_on_push: bool = False
    delete_on_pull: bool = False
    delete_on_sync: bool = False

    def required_fields(self) -> dict[str, Any]:
        """Backend connection fields that must be non-empty."""
        return {}

    def invalid_fields(self) -> dict[str, str]:
        """Backend connection fields holding an unusable value, with the reason."""
        return {}


class MemoryBucketOptions(BucketOptions):
    """Options for the in-memory backend."""


class SQLiteBucketOptions(BucketOptions):
    """Options for the SQLite blob backend."""

    path: str = ""

    def required_fields(self) -> dict[str, Any]:
        return {"path": self.path}

    def invalid_fields(self) -> dict[str, str]:
        # Every cloned session opens its own connection by path.
        if self.path == ":memory:" or self.path.startswith("file::memory:"):
            return {"path": "cannot be an in-memory database"}
        return {}


class LocalBucketOptions(BucketOptions):
    """Options for the local filesystem backend."""

    root: str = ""

    def required_fields(self) -> dict[str, Any]:
        return {"root": self.root}


class S3BucketOptions(BucketOptions):
    """Options for the S3 backend.

    Credentials fall back to the standard AWS chain when not given.
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str = ""
    use_path_style: bool = False
    access_key_id: str = ""
    secret_access_key: str = ""

    def required_fields(self) -> dict[str, Any]:
        return {"bucket": self.bucket}


def validate_options(options: BucketOptions, require_connection: bool = True) -> None:
    """Reject incomplete options before a bucket is constructed.

    Args:
        options: The options to check.
        require_connection: Whether backend connection fields must be set.
            False when the caller injects an existing connection.

    Raises:
        ConfigurationError: If the name or a required connection field is
            empty, or a connection field holds an unusable value.
    """
    if not options.name:
        raise ConfigurationError("bucket name must be specified", action="configure")
    if not require_connection:
        return
    for field_name, value in options.required_fields().items():
        if not value:
            raise ConfigurationError(
                f"{type(options).__name__}.{field_name} is required",
                bucket=options.name,
                action="configure",
            )
    for field_name, reason in options.invalid_fields().items():
        raise ConfigurationError(
            f"{type(options).__name__}.{field_name} {reason}",
            bucket=options.name,
            action="configure",
        )


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: str = "INFO"
    format: str = "text"


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = False
    textfile: str = ""


class BucketConfig(BaseModel):
    """Bucket selection for the command-line tool."""

    backend: str = "local"
    name: str = "default"
    prefix: str = ""
    dry_run: bool = False
    verbose: bool = False
    delete_on_push: bool = False
    delete_on_pull: bool = False
    delete_on_sync: bool = False
    sqlite_path: str = ""
    local_root: str = ""
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    s3_use_path_style: bool = False
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""

    def common_options(self) -> dict[str, Any]:
        """Fields shared by every BucketOptions subclass."""
        return {
            "name": self.name,
            "prefix": self.prefix,
            "dry_run": self.dry_run,
            "verbose": self.verbose,
            "delete_on_push": self.delete_on_push,
            "delete_on_pull": self.delete_on_pull,
            "delete_on_sync": self.delete_on_sync,
        }


class BucketSyncConfig(BaseModel):
    """Top-level bucketsync configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    bucket: BucketConfig = Field(default_factory=BucketConfig)


def _parse_logging(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the logging section from YAML data."""
    if data is None:
        return {}
    return {
        "level": data.get("level", "INFO"),
        "format": data.get("format", "text"),
    }


def _parse_bucket(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the bucket section from YAML data.

    Handles nested backend sections: bucket.sqlite.path -> sqlite_path,
    bucket.local.root -> local_root, bucket.s3.* -> s3_*.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {
        key: data[key]
        for key in (
            "backend",
            "name",
            "prefix",
            "dry_run",
            "verbose",
            "delete_on_push",
            "delete_on_pull",
            "delete_on_sync",
        )
        if key in data
    }

    sqlite_section = data.get("sqlite")
    if isinstance(sqlite_section, dict):
        result["sqlite_path"] = sqlite_section.get("path", "")

    local_section = data.get("local")
    if isinstance(local_section, dict):
        result["local_root"] = local_section.get("root", "")

    s3_section = data.get("s3")
    if isinstance(s3_section, dict):
        result["s3_bucket"] = s3_section.get("bucket", "")
        result["s3_region"] = s3_section.get("region", "us-east-1")
        result["s3_endpoint_url"] = s3_section.get("endpoint_url", "")
        result["s3_use_path_style"] = s3_section.get("use_path_style", False)
        result["s3_access_key_id"] = s3_section.get("access_key_id", "")
        result["s3_secret_access_key"] = s3_section.get("secret_access_key", "")

    return result


def load_config(path: Path) -> BucketSyncConfig:
    """Load a BucketSyncConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated BucketSyncConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    metrics_section = raw.get("metrics") or {}
    return BucketSyncConfig(
        logging=LoggingConfig(**_parse_logging(raw.get("logging"))),
        metrics=MetricsConfig(
            enabled=metrics_section.get("enabled", False),
            textfile=metrics_section.get("textfile", ""),
        ),
        bucket=BucketConfig(**_parse_bucket(raw.get("bucket"))),
    )
