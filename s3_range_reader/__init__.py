"""Cached, parallel byte-range reads from S3-compatible object stores."""

from .app import create_app
from .clients import ClientCache, build_client
from .config import ConfigRegistry, EnvironmentOverlay, ReaderSettings, StorageConfig
from .context import S3Context, get_default_context, reset_default_context
from .errors import (
    BackendReadError,
    InvalidArgumentError,
    NotFoundError,
    ParseError,
    RangeNotSatisfiableError,
    ReadTimeoutError,
    ResolutionError,
    S3RangeReaderError,
)
from .location import LocationDescriptor, parse_location
from .reader import S3RangeReader, reconcile_ranges
from .resolver import ResolvedConfig, resolve_config

__all__ = [
    "BackendReadError",
    "ClientCache",
    "ConfigRegistry",
    "EnvironmentOverlay",
    "InvalidArgumentError",
    "LocationDescriptor",
    "NotFoundError",
    "ParseError",
    "RangeNotSatisfiableError",
    "ReadTimeoutError",
    "ReaderSettings",
    "ResolutionError",
    "ResolvedConfig",
    "S3Context",
    "S3RangeReader",
    "S3RangeReaderError",
    "StorageConfig",
    "build_client",
    "create_app",
    "get_default_context",
    "parse_location",
    "reconcile_ranges",
    "reset_default_context",
    "resolve_config",
]
