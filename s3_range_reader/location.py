"""Classification of S3 location strings.

Four URL shapes are recognised:

``native``
    ``s3://bucket/key[?region=...]``
``legacy-path-style``
    ``https://s3[-.]<region>.<domain>/bucket/key``
``virtual-hosted``
    ``https://bucket.s3[-.]<region>.<domain>/key``
``generic-path-style``
    ``https://host[:port]/bucket/key`` (MinIO, Wasabi behind custom domains, ...)

Region inference from host names is best-effort: a two-label custom domain
placed where a region is expected can still be misread as one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal
from urllib.parse import parse_qsl, unquote, urlsplit

from .errors import ParseError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from urllib.parse import SplitResult

LOG = logging.getLogger("s3_range_reader.location")

UrlShape = Literal[
    "native", "legacy-path-style", "virtual-hosted", "generic-path-style"
]

S3_DOT = "s3."
S3_DASH = "s3-"
S3_DOT_VH = "." + S3_DOT
S3_DASH_VH = "." + S3_DASH
AMAZON_AWS = ".amazonaws.com"
AMAZON_AWS_SUFFIX = AMAZON_AWS.lstrip(".")


@dataclass(frozen=True)
class LocationDescriptor:
    """Everything that can be learned from a location string on its own."""

    location: str = field(repr=False)
    scheme: str
    host: str
    bucket: str
    key: str
    filename: str
    shape: UrlShape
    region: str | None = None
    endpoint: str | None = None
    port: int | None = None
    query: Mapping[str, str] = field(default_factory=dict, compare=False)
    user: str | None = None
    password: str | None = field(default=None, repr=False)

    @property
    def alias(self) -> str:
        """Upper-cased scheme, used to namespace environment variables."""
        return self.scheme.upper()

    @property
    def has_credentials(self) -> bool:
        return self.user is not None and self.password is not None


@dataclass(frozen=True)
class _ShapeResult:
    bucket: str
    key: str
    region: str | None = None
    endpoint: str | None = None


def parse_query_params(query: str) -> dict[str, str]:
    """Decode a query string into a dict keyed by lower-cased parameter name."""
    if not query:
        return {}
    return {
        name.lower(): value
        for name, value in parse_qsl(query, keep_blank_values=True)
    }


def filename_from_key(key: str) -> str:
    return key.rstrip("/").rsplit("/", 1)[-1]


def classify(scheme: str, host: str | None) -> UrlShape:
    """Pick the URL shape for a scheme/host pair.

    Raises:
        ParseError: if the scheme is neither S3 nor HTTP(S), or a host is missing.
    """
    if scheme.startswith("http"):
        if not host:
            msg = "HTTP locations need a host"
            raise ParseError(msg)
        if host.startswith((S3_DASH, S3_DOT)) and "." in host:
            return "legacy-path-style"
        if S3_DASH_VH in host or S3_DOT_VH in host:
            return "virtual-hosted"
        return "generic-path-style"
    if scheme.startswith("s3"):
        if not host:
            msg = "s3 locations need a bucket as host"
            raise ParseError(msg)
        return "native"
    msg = f"unsupported scheme {scheme!r}"
    raise ParseError(msg)


def _origin(scheme: str, host: str, port: int | None) -> str:
    origin = f"{scheme}://{host}"
    if port is not None:
        origin = f"{origin}:{port}"
    return origin


def _split_bucket_and_key(path: str) -> tuple[str, str]:
    if "/" not in path:
        return path, ""
    bucket, key = path.split("/", 1)
    return bucket, key


def _parse_native(
    scheme: str, host: str, port: int | None, path: str, query: Mapping[str, str]
) -> _ShapeResult:
    return _ShapeResult(bucket=host, key=path, region=query.get("region") or None)


def _parse_legacy_path_style(
    scheme: str, host: str, port: int | None, path: str, query: Mapping[str, str]
) -> _ShapeResult:
    # s3-<region>.domain.tld / s3.<region>.domain.tld; s3.domain.tld has no region
    label, dot, rest = host[len(S3_DOT) :].partition(".")
    region = label if dot and label and "." in rest else None
    bucket, key = _split_bucket_and_key(path)
    return _ShapeResult(
        bucket=bucket,
        key=key,
        region=region,
        endpoint=_origin(scheme, host, port),
    )


def _parse_virtual_hosted(
    scheme: str, host: str, port: int | None, path: str, query: Mapping[str, str]
) -> _ShapeResult:
    marker = S3_DASH_VH if S3_DASH_VH in host else S3_DOT_VH
    index = host.find(marker)
    if index <= 0:
        msg = f"no bucket in virtual-hosted host {host!r}"
        raise ParseError(msg)

    bucket = host[:index]
    remainder = host[index + len(marker) :]
    label, dot, _ = remainder.partition(".")
    region = label if dot and label and remainder != AMAZON_AWS_SUFFIX else None

    endpoint = None
    if not host.endswith(AMAZON_AWS):
        # bucket.s3.region.domain.tld is served by s3.region.domain.tld
        endpoint = _origin(scheme, host[index + 1 :], port)
    return _ShapeResult(bucket=bucket, key=path, region=region, endpoint=endpoint)


def _parse_generic_path_style(
    scheme: str, host: str, port: int | None, path: str, query: Mapping[str, str]
) -> _ShapeResult:
    bucket, key = _split_bucket_and_key(path)
    return _ShapeResult(bucket=bucket, key=key, endpoint=_origin(scheme, host, port))


_SHAPE_PARSERS: dict[UrlShape, Callable[..., _ShapeResult]] = {
    "native": _parse_native,
    "legacy-path-style": _parse_legacy_path_style,
    "virtual-hosted": _parse_virtual_hosted,
    "generic-path-style": _parse_generic_path_style,
}


def _port(parts: SplitResult) -> int | None:
    try:
        return parts.port
    except ValueError as error:
        msg = f"invalid port in {parts.netloc!r}"
        raise ParseError(msg) from error


def parse_location(location: str) -> LocationDescriptor:
    """Parse a location string into a :class:`LocationDescriptor`.

    A path without a second segment yields an empty key rather than an error.

    Raises:
        ParseError: if the location cannot be classified.
    """
    try:
        parts = urlsplit(location.strip())
    except ValueError as error:
        msg = f"unable to parse location {location!r}: {error}"
        raise ParseError(msg) from error
    scheme = parts.scheme.lower()
    if not scheme:
        msg = f"unable to parse location {location!r}: missing scheme"
        raise ParseError(msg)

    host = parts.hostname
    try:
        shape = classify(scheme, host)
    except ParseError as error:
        msg = f"unable to parse location {location!r}: {error}"
        raise ParseError(msg) from error
    assert host is not None

    port = _port(parts)
    query = parse_query_params(parts.query)
    path = unquote(parts.path)
    if path.startswith("/"):
        path = path[1:]

    result = _SHAPE_PARSERS[shape](scheme, host, port, path, query)
    user = unquote(parts.username) if parts.username is not None else None
    password = unquote(parts.password) if parts.password is not None else None

    descriptor = LocationDescriptor(
        location=location,
        scheme=scheme,
        host=host,
        bucket=result.bucket,
        key=result.key,
        filename=filename_from_key(result.key),
        shape=shape,
        region=result.region,
        endpoint=result.endpoint,
        port=port,
        query=query,
        user=user,
        password=password,
    )
    LOG.debug(
        "parsed %s location bucket=%s key=%s region=%s endpoint=%s",
        shape,
        descriptor.bucket,
        descriptor.key,
        descriptor.region,
        descriptor.endpoint,
    )
    return descriptor
