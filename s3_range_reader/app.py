from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Annotated

from anyio import to_thread
from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.params import Parameter
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response

from .context import S3Context
from .errors import (
    BackendReadError,
    NotFoundError,
    ParseError,
    RangeNotSatisfiableError,
    ReadTimeoutError,
    ResolutionError,
)
from .reader import S3RangeReader

if TYPE_CHECKING:
    from collections.abc import Callable

LOG = logging.getLogger("s3_range_reader.app")

DEFAULT_HEADER_LENGTH = 16 * 1024

prometheus_config = PrometheusConfig(
    app_name="s3_range_reader", prefix="s3_range_reader"
)


def parse_range_header(range_header: str | None) -> tuple[int, int] | None:
    """Parse the first ``bytes=<start>-<end>`` range of a Range header.

    Open-ended and suffix ranges need the object size, which the reader never
    asks for, so they are rejected along with malformed headers.
    """
    if not range_header:
        return None
    try:
        unit, ranges = range_header.split("=", 1)
        if unit.strip().lower() != "bytes":
            return None
        first = ranges.split(",")[0].strip()
        start_str, end_str = first.split("-", 1)
        if not start_str or not end_str:
            return None
        start, end = int(start_str), int(end_str)
    except ValueError:
        return None
    if start < 0 or start > end:
        return None
    return start, end


def _error_response(status_code: int) -> Callable[[Request, Exception], Response]:
    def handler(request: Request, exc: Exception) -> Response:
        if status_code >= 500:
            LOG.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return Response(content={"detail": str(exc)}, status_code=status_code)

    return handler


def create_app(context: S3Context | None = None) -> Litestar:
    """Create the ASGI application serving byte ranges of S3 objects."""
    context = context or S3Context.from_env()

    async def open_reader(location: str, header_length: int) -> S3RangeReader:
        return await to_thread.run_sync(
            partial(S3RangeReader, location, header_length, context=context)
        )

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @get("/header")
    async def header(
        location: Annotated[str, Parameter(query="location")],
        length: Annotated[int, Parameter(gt=0)] = DEFAULT_HEADER_LENGTH,
    ) -> Response:
        reader = await open_reader(location, length)
        body = await to_thread.run_sync(reader.read_header)
        return Response(content=body[:length], media_type="application/octet-stream")

    @get("/object")
    async def read_object(
        request: Request, location: Annotated[str, Parameter(query="location")]
    ) -> Response:
        byte_range = parse_range_header(request.headers.get("range"))
        if byte_range is None:
            return Response(
                content={"detail": "a closed byte range (bytes=<start>-<end>) is required"},
                status_code=416,
            )
        reader = await open_reader(location, DEFAULT_HEADER_LENGTH)
        values = await to_thread.run_sync(reader.read, [byte_range])
        start, _ = byte_range
        body = values[start]
        return Response(
            content=body,
            status_code=206,
            media_type="application/octet-stream",
            headers={
                "Accept-Ranges": "bytes",
                "Content-Range": f"bytes {start}-{start + len(body) - 1}/*",
            },
        )

    async def startup(app: Litestar) -> None:
        LOG.info(
            "S3 range gateway ready (client cache max=%d, ttl=%ss)",
            context.clients.max_size,
            context.clients.ttl,
        )

    async def shutdown(app: Litestar) -> None:
        context.close()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges"],
    )

    return Litestar(
        route_handlers=[health, header, read_object, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        exception_handlers={
            ParseError: _error_response(400),
            ResolutionError: _error_response(400),
            NotFoundError: _error_response(404),
            RangeNotSatisfiableError: _error_response(416),
            ReadTimeoutError: _error_response(504),
            BackendReadError: _error_response(502),
        },
    )
