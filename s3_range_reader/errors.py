"""Exception hierarchy for location parsing, configuration and range reads."""

from __future__ import annotations

__all__ = [
    "BackendReadError",
    "InvalidArgumentError",
    "NotFoundError",
    "ParseError",
    "RangeNotSatisfiableError",
    "ReadTimeoutError",
    "ResolutionError",
    "S3RangeReaderError",
]


class S3RangeReaderError(RuntimeError):
    """Base exception for all failures raised by this package."""


class ParseError(S3RangeReaderError, ValueError):
    """Raised when a location string matches none of the supported URL shapes."""


class ResolutionError(S3RangeReaderError):
    """Raised when a required connection attribute (the region) never resolves."""


class InvalidArgumentError(S3RangeReaderError, ValueError):
    """Raised on registry misuse, e.g. an empty bucket name."""


class BackendReadError(S3RangeReaderError):
    """Raised when a header or range fetch fails in the backend."""

    def __init__(
        self,
        message: str,
        *,
        location: str | None = None,
        bucket: str | None = None,
        key: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> None:
        super().__init__(message)
        self.location = location
        self.bucket = bucket
        self.key = key
        self.start = start
        self.end = end


class NotFoundError(BackendReadError):
    """The object (or its bucket) does not exist.

    Callers probing optional sidecar objects can catch this and carry on.
    """


class ReadTimeoutError(BackendReadError, TimeoutError):
    """Parallel range fetches did not finish within the configured bound."""


class RangeNotSatisfiableError(BackendReadError):
    """The requested range starts past the end of the object."""
