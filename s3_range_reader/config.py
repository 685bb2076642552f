from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidArgumentError

if TYPE_CHECKING:
    from typing import Self

LOG = logging.getLogger("s3_range_reader.config")

DEFAULT_CORE_POOL_SIZE = 50
DEFAULT_MAX_POOL_SIZE = 128
DEFAULT_KEEP_ALIVE_TIME = 10


class StorageConfig(BaseModel):
    """Connection overlay for an S3-compatible store.

    Used for registry entries. Attributes left as ``None`` are not supplied
    by this overlay and fall through to lower-priority sources.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = Field(default=None, repr=False)
    force_path_style: bool | None = None
    core_pool_size: int | None = Field(default=None, gt=0)
    max_pool_size: int | None = Field(default=None, gt=0)
    keep_alive_time: int | None = Field(default=None, ge=0)

    @property
    def cache_key(self) -> str:
        return cache_key(self.endpoint, self.region)

    @property
    def has_credentials(self) -> bool:
        return self.access_key_id is not None and self.secret_access_key is not None

    @classmethod
    def builder(cls) -> StorageConfigBuilder:
        return StorageConfigBuilder()


class StorageConfigBuilder:
    """Fluent builder for :class:`StorageConfig`."""

    def __init__(self) -> None:
        self._values: dict[str, object] = {}

    def endpoint(self, endpoint: str | None) -> Self:
        self._values["endpoint"] = endpoint
        return self

    def region(self, region: str | None) -> Self:
        self._values["region"] = region
        return self

    def access_key_id(self, access_key_id: str | None) -> Self:
        self._values["access_key_id"] = access_key_id
        return self

    def secret_access_key(self, secret_access_key: str | None) -> Self:
        self._values["secret_access_key"] = secret_access_key
        return self

    def credentials(self, access_key_id: str, secret_access_key: str) -> Self:
        return self.access_key_id(access_key_id).secret_access_key(secret_access_key)

    def force_path_style(self, force_path_style: bool = True) -> Self:
        self._values["force_path_style"] = force_path_style
        return self

    def core_pool_size(self, core_pool_size: int) -> Self:
        self._values["core_pool_size"] = core_pool_size
        return self

    def max_pool_size(self, max_pool_size: int) -> Self:
        self._values["max_pool_size"] = max_pool_size
        return self

    def keep_alive_time(self, keep_alive_time: int) -> Self:
        self._values["keep_alive_time"] = keep_alive_time
        return self

    def build(self) -> StorageConfig:
        return StorageConfig(**self._values)


def cache_key(endpoint: str | None, region: str | None) -> str:
    return f"{endpoint or 'aws'}::{region or 'default'}"


def env_prefix(alias: str) -> str:
    return f"IIO_{alias.upper()}_AWS_"


class EnvironmentOverlay(BaseSettings):
    """``IIO_<ALIAS>_AWS_*`` environment variables.

    The alias is the location scheme, so instantiate with
    ``EnvironmentOverlay(_env_prefix=env_prefix(alias))`` or use
    :func:`load_environment_overlay`.
    """

    model_config = SettingsConfigDict(
        env_prefix="IIO_S3_AWS_", case_sensitive=False, extra="ignore"
    )

    user: str | None = None
    password: str | None = Field(default=None, repr=False)
    endpoint: str | None = None
    region: str | None = None
    core_pool_size: int = DEFAULT_CORE_POOL_SIZE
    max_pool_size: int = DEFAULT_MAX_POOL_SIZE
    keep_alive_time: int = DEFAULT_KEEP_ALIVE_TIME
    force_path_style: bool = False

    @field_validator("endpoint", "region", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def load_environment_overlay(alias: str) -> EnvironmentOverlay:
    """Load the environment overlay for a scheme alias (``S3``, ``HTTPS``, ...)."""
    return EnvironmentOverlay(_env_prefix=env_prefix(alias))


class ReaderSettings(BaseSettings):
    """Process-level tunables for client caching and parallel reads."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    client_cache_max_size: int = Field(
        default=16,
        gt=0,
        validation_alias="S3_RANGE_READER_CLIENT_CACHE_MAX_SIZE",
    )
    client_cache_ttl_minutes: float = Field(
        default=30,
        gt=0,
        validation_alias="S3_RANGE_READER_CLIENT_CACHE_TTL_MINUTES",
    )
    max_connections: int = Field(
        default=50,
        gt=0,
        validation_alias="S3_RANGE_READER_HTTP_MAX_CONNECTIONS",
    )
    connect_timeout: float = Field(
        default=10,
        validation_alias="S3_RANGE_READER_HTTP_CONNECT_TIMEOUT",
    )
    socket_timeout: float = Field(
        default=30,
        validation_alias="S3_RANGE_READER_HTTP_SOCKET_TIMEOUT",
    )
    max_parallel_reads: int = Field(
        default=8,
        gt=0,
        validation_alias="S3_RANGE_READER_MAX_PARALLEL_READS",
    )
    range_read_pool_size: int = Field(
        default=32,
        gt=0,
        validation_alias="S3_RANGE_READER_RANGE_READ_POOL_SIZE",
    )
    read_timeout: float = Field(
        default=120,
        gt=0,
        validation_alias="S3_RANGE_READER_READ_TIMEOUT",
    )
    header_cache_size: int = Field(
        default=1024,
        gt=0,
        validation_alias="S3_RANGE_READER_HEADER_CACHE_SIZE",
    )

    @property
    def client_cache_ttl(self) -> float:
        """Client idle TTL in seconds."""
        return self.client_cache_ttl_minutes * 60


def load_reader_settings_from_env() -> ReaderSettings:
    return ReaderSettings()


class ConfigRegistry:
    """Per-bucket connection overlays plus an optional default.

    Pure storage: resolution happens in :mod:`s3_range_reader.resolver`.
    Every call observes a consistent snapshot; concurrent writers race with
    last-write-wins semantics.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._configs: dict[str, StorageConfig] = {}
        self._default: StorageConfig | None = None

    def register(self, bucket: str, config: StorageConfig) -> None:
        if not bucket:
            msg = "Bucket name cannot be empty"
            raise InvalidArgumentError(msg)
        if config is None:
            msg = "Config cannot be None"
            raise InvalidArgumentError(msg)
        LOG.info("registering S3 config for bucket %s -> %r", bucket, config)
        with self._lock:
            self._configs[bucket] = config

    def unregister(self, bucket: str) -> StorageConfig | None:
        LOG.info("unregistering S3 config for bucket %s", bucket)
        with self._lock:
            return self._configs.pop(bucket, None)

    def get(self, bucket: str) -> StorageConfig | None:
        with self._lock:
            return self._configs.get(bucket)

    def set_default(self, config: StorageConfig | None) -> None:
        LOG.info("setting default S3 config: %r", config)
        with self._lock:
            self._default = config

    def get_default(self) -> StorageConfig | None:
        with self._lock:
            return self._default

    def get_or_default(self, bucket: str) -> StorageConfig | None:
        with self._lock:
            config = self._configs.get(bucket)
            return config if config is not None else self._default

    def clear(self) -> None:
        LOG.info("clearing all S3 configs")
        with self._lock:
            self._configs.clear()
            self._default = None

    def size(self) -> int:
        with self._lock:
            return len(self._configs)

    def is_registered(self, bucket: str) -> bool:
        with self._lock:
            return bucket in self._configs

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, bucket: object) -> bool:
        return isinstance(bucket, str) and self.is_registered(bucket)
