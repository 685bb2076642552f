from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import urlsplit, urlunsplit

from botocore.exceptions import BotoCoreError, ClientError

from .context import get_default_context
from .errors import (
    BackendReadError,
    NotFoundError,
    RangeNotSatisfiableError,
    ReadTimeoutError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from .context import S3Context
    from .resolver import ResolvedConfig

LOG = logging.getLogger("s3_range_reader.reader")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
INVALID_RANGE_CODES = {"416", "InvalidRange"}

ReaderState = Literal["header-pending", "ready"]


def reconcile_ranges(ranges: Iterable[Sequence[int]]) -> list[tuple[int, int]]:
    """Validate inclusive ``[start, end]`` ranges, drop duplicate starts, sort.

    When two ranges share a start offset the wider one is kept. Adjacent or
    overlapping ranges with different starts are left alone so every start
    offset still gets its own entry in :meth:`S3RangeReader.read`.
    """
    widest: dict[int, int] = {}
    for byte_range in ranges:
        start, end = int(byte_range[0]), int(byte_range[1])
        if start < 0 or end < start:
            msg = f"invalid byte range [{start}, {end}]"
            raise ValueError(msg)
        if end > widest.get(start, -1):
            widest[start] = end
    return sorted(widest.items())


class S3RangeReader:
    """Byte-range reader for one object in an S3-compatible store.

    Construction resolves the connection configuration and acquires a client
    from the context's client cache; failures there are fatal and propagate.
    Fetched ranges are kept for the lifetime of the reader, keyed by start
    offset, so repeated reads of the same ranges never reach the backend.
    """

    def __init__(
        self,
        location: str,
        header_length: int,
        *,
        context: S3Context | None = None,
        range_reconciler: Callable[
            [Iterable[Sequence[int]]], list[tuple[int, int]]
        ] = reconcile_ranges,
    ) -> None:
        if header_length <= 0:
            msg = "header_length must be positive"
            raise ValueError(msg)
        self.location = location
        self.header_length = header_length
        self.header_offset = 0
        self.data: dict[int, bytes] = {}
        self._data_lock = threading.Lock()
        self._context = context or get_default_context()
        self._reconcile = range_reconciler
        self._state: ReaderState = "header-pending"

        LOG.debug("creating S3 range reader for %s", location)
        try:
            self.config: ResolvedConfig = self._context.resolve(location)
        except Exception:
            LOG.exception("failed to resolve S3 configuration for %s", location)
            raise
        try:
            self.client: Any = self._context.client_for(self.config)
        except Exception:
            LOG.exception("failed to create S3 client for %s", location)
            raise

    @property
    def bucket(self) -> str:
        return self.config.bucket

    @property
    def key(self) -> str:
        return self.config.key

    @property
    def filename(self) -> str:
        return self.config.filename

    @property
    def state(self) -> ReaderState:
        return self._state

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(bucket={self.bucket!r}, key={self.key!r}, "
            f"state={self._state!r}, cached_ranges={len(self.data)})"
        )

    def read_header(self) -> bytes:
        """Return the header, from the shared header cache when possible.

        A cached header shorter than ``header_length`` is fetched again.
        """
        header = self._context.headers.get(self.location)
        if header is not None and len(header) >= self.header_length:
            LOG.debug("header cache hit for %s", self.location)
            self._store(0, header)
            self._state = "ready"
            return header

        start = self.header_offset
        header = self._get_object_range(
            start,
            start + self.header_length - 1,
            f"Error reading header for {self.location}",
        )
        self._store(0, header)
        self._context.headers.put(self.location, header)
        self._state = "ready"
        return header

    def fetch_header(self) -> bytes:
        """Fetch the next ``header_length`` bytes and append them to the header.

        The first call fetches the header itself; every further call extends
        the header already held at offset 0.
        """
        with self._data_lock:
            current = self.data.get(0)
        if current is not None:
            self.header_offset = len(current)

        start = self.header_offset
        fetched = self._get_object_range(
            start,
            start + self.header_length - 1,
            f"Error reading header for {self.location}",
        )
        header = current + fetched if current is not None and start else fetched
        self._store(0, header)
        self._context.headers.put(self.location, header)
        self._state = "ready"
        return header

    def read(self, ranges: Iterable[Sequence[int]]) -> dict[int, bytes]:
        """Read inclusive ``[start, end]`` byte ranges.

        Returns a mapping with one entry per range start offset. Ranges not
        yet cached are fetched on the calling thread when there is only one,
        otherwise in parallel on the context's worker pool.

        Raises:
            BackendReadError: for the first range that fails.
            ReadTimeoutError: if parallel fetches exceed the read timeout.
        """
        reconciled = self._reconcile(ranges)
        started = time.perf_counter()

        values: dict[int, bytes] = {}
        missing: list[tuple[int, int]] = []
        with self._data_lock:
            for start, end in reconciled:
                cached = self.data.get(start)
                if cached is not None:
                    values[start] = cached
                else:
                    missing.append((start, end))

        if len(missing) == 1:
            start, end = missing[0]
            values[start] = self._fetch_and_store(start, end)
        elif missing:
            values.update(self._read_parallel(missing))

        LOG.debug(
            "read %d ranges (%d fetched) in %.1f ms",
            len(reconciled),
            len(missing),
            (time.perf_counter() - started) * 1000,
        )
        return values

    def read_range(self, start: int, end: int) -> bytes:
        """Fetch one inclusive byte range from the backend, bypassing the cache."""
        return self._get_object_range(
            start,
            end,
            f"Error reading range {start}-{end} from {self.bucket}/{self.key}",
        )

    def _read_parallel(self, ranges: list[tuple[int, int]]) -> dict[int, bytes]:
        settings = self._context.settings
        executor = self._context.executor
        deadline = time.monotonic() + settings.read_timeout
        queue = deque(ranges)
        in_flight: dict[Future[bytes], tuple[int, int]] = {}
        results: dict[int, bytes] = {}

        try:
            while queue or in_flight:
                while queue and len(in_flight) < settings.max_parallel_reads:
                    start, end = queue.popleft()
                    future = executor.submit(self._fetch_and_store, start, end)
                    in_flight[future] = (start, end)

                remaining = deadline - time.monotonic()
                done: set[Future[bytes]] = set()
                if remaining > 0:
                    done, _ = wait(
                        in_flight, timeout=remaining, return_when=FIRST_COMPLETED
                    )
                if not done:
                    msg = f"Timeout reading ranges from {self.location}"
                    raise ReadTimeoutError(
                        msg, location=self.location, bucket=self.bucket, key=self.key
                    )

                for future in done:
                    start, end = in_flight.pop(future)
                    error = future.exception()
                    if error is not None:
                        LOG.warning(
                            "error reading range %d-%d of %s",
                            start,
                            end,
                            self.location,
                            exc_info=error,
                        )
                        if isinstance(error, BackendReadError):
                            raise error
                        msg = f"Error reading ranges from {self.location}"
                        raise BackendReadError(
                            msg,
                            location=self.location,
                            bucket=self.bucket,
                            key=self.key,
                            start=start,
                            end=end,
                        ) from error
                    results[start] = future.result()
        finally:
            for future in in_flight:
                future.cancel()
        return results

    def _fetch_and_store(self, start: int, end: int) -> bytes:
        payload = self.read_range(start, end)
        self._store(start, payload)
        return payload

    def _store(self, start: int, payload: bytes) -> None:
        with self._data_lock:
            self.data[start] = payload

    def _get_object_range(self, start: int, end: int, message: str) -> bytes:
        try:
            result = self.client.get_object(
                Bucket=self.bucket, Key=self.key, Range=f"bytes={start}-{end}"
            )
            body = result["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            error_cls = BackendReadError
            if code in NOT_FOUND_CODES:
                error_cls = NotFoundError
            elif code in INVALID_RANGE_CODES:
                error_cls = RangeNotSatisfiableError
            raise error_cls(
                message,
                location=self.location,
                bucket=self.bucket,
                key=self.key,
                start=start,
                end=end,
            ) from error
        except BotoCoreError as error:
            raise BackendReadError(
                message,
                location=self.location,
                bucket=self.bucket,
                key=self.key,
                start=start,
                end=end,
            ) from error

    def get_url(self) -> str:
        """Return an HTTP(S) URL addressing this object."""
        location = self.config.location
        if not location.scheme.startswith("s3"):
            netloc = location.host
            if location.port is not None:
                netloc = f"{netloc}:{location.port}"
            return urlunsplit(
                (location.scheme, netloc, urlsplit(location.location).path, "", "")
            )

        endpoint = self.config.endpoint
        if not endpoint:
            return (
                f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/"
                f"{self.key}"
            )

        endpoint = endpoint.rstrip("/")
        if self.config.force_path_style:
            url = f"{endpoint}/{self.bucket}/{self.key}"
        else:
            parts = urlsplit(endpoint)
            if parts.netloc:
                url = f"{parts.scheme or 'https'}://{self.bucket}.{parts.netloc}/{self.key}"
            else:
                LOG.warning(
                    "could not parse endpoint %s, using path-style URL", endpoint
                )
                url = f"{endpoint}/{self.bucket}/{self.key}"
        LOG.debug("generated S3-compatible URL %s", url)
        return url
