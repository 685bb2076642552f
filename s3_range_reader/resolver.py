"""Merge location, registry and environment sources into one descriptor.

Per attribute, the first source that supplies a value wins:

1. URL query parameters (``endpoint``, ``region``, ``pathstyle``)
2. credentials embedded as ``user:password@`` (credentials only)
3. the bucket's registry entry, or the registry default
4. ``IIO_<ALIAS>_AWS_*`` environment variables
5. values inferred from the URL shape
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from .config import cache_key, env_prefix, load_environment_overlay
from .errors import ResolutionError
from .location import LocationDescriptor, parse_location

if TYPE_CHECKING:
    from .config import ConfigRegistry, EnvironmentOverlay, StorageConfig

LOG = logging.getLogger("s3_range_reader.resolver")

FALLBACK_REGION = "us-east-1"

CredentialsMode = Literal["explicit", "anonymous", "default"]

_TRUE_VALUES = {"true", "1", "yes", "y", "t", "on"}


@dataclass(frozen=True)
class ResolvedConfig:
    """Connection parameters sufficient to build a backend client."""

    location: LocationDescriptor
    region: str
    endpoint: str | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    force_path_style: bool = False
    core_pool_size: int = 50
    max_pool_size: int = 128
    keep_alive_time: int = 10

    @property
    def bucket(self) -> str:
        return self.location.bucket

    @property
    def key(self) -> str:
        return self.location.key

    @property
    def filename(self) -> str:
        return self.location.filename

    @property
    def alias(self) -> str:
        return self.location.alias

    @property
    def cache_key(self) -> str:
        return cache_key(self.endpoint, self.region)

    @property
    def credentials_mode(self) -> CredentialsMode:
        """How the backend client should authenticate.

        Both halves present but empty means anonymous access; anything unset
        defers to the platform's default credential chain.
        """
        if self.user is None or self.password is None:
            return "default"
        if self.user == "" and self.password == "":
            return "anonymous"
        return "explicit"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _first(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if candidate:
            return candidate
    return None


def _resolve_credentials(
    location: LocationDescriptor,
    overlay: StorageConfig | None,
    environment: EnvironmentOverlay,
) -> tuple[str | None, str | None]:
    if location.has_credentials:
        return location.user, location.password
    if overlay is not None and overlay.has_credentials:
        return overlay.access_key_id, overlay.secret_access_key
    return environment.user, environment.password


def resolve_config(
    location: str | LocationDescriptor,
    registry: ConfigRegistry,
    environment: EnvironmentOverlay | None = None,
) -> ResolvedConfig:
    """Resolve the connection descriptor for ``location``.

    Args:
        location: A location string or an already parsed descriptor.
        registry: Registry consulted for the bucket's overlay or the default.
        environment: Environment overlay; loaded for the location's alias
            when omitted.

    Raises:
        ParseError: if ``location`` is a string that cannot be parsed.
        ResolutionError: if no region resolves and no endpoint is present.
    """
    if isinstance(location, str):
        location = parse_location(location)
    if environment is None:
        environment = load_environment_overlay(location.alias)

    query = location.query
    overlay = registry.get_or_default(location.bucket)

    endpoint = _first(
        query.get("endpoint"),
        overlay.endpoint if overlay is not None else None,
        environment.endpoint,
        location.endpoint,
    )
    region = _first(
        query.get("region"),
        overlay.region if overlay is not None else None,
        environment.region,
        location.region,
    )
    if region is None and endpoint is not None:
        # SDKs want a region even for non-AWS providers
        region = FALLBACK_REGION
    if region is None:
        msg = (
            f"No region info found for bucket '{location.bucket}'. Please set it "
            "via URL param (?region=...), the config registry, or environment "
            f"variable '{env_prefix(location.alias)}REGION'"
        )
        raise ResolutionError(msg)

    user, password = _resolve_credentials(location, overlay, environment)

    if "pathstyle" in query:
        force_path_style = _parse_bool(query["pathstyle"])
    elif overlay is not None and overlay.force_path_style is not None:
        force_path_style = overlay.force_path_style
    else:
        force_path_style = environment.force_path_style

    def pool_value(name: str) -> int:
        if overlay is not None and getattr(overlay, name) is not None:
            return getattr(overlay, name)
        return getattr(environment, name)

    resolved = ResolvedConfig(
        location=location,
        region=region,
        endpoint=endpoint,
        user=user,
        password=password,
        force_path_style=force_path_style,
        core_pool_size=pool_value("core_pool_size"),
        max_pool_size=pool_value("max_pool_size"),
        keep_alive_time=pool_value("keep_alive_time"),
    )
    LOG.debug(
        "S3 config for bucket %s: endpoint=%s region=%s force_path_style=%s credentials=%s",
        resolved.bucket,
        resolved.endpoint,
        resolved.region,
        resolved.force_path_style,
        resolved.credentials_mode,
    )
    return resolved
