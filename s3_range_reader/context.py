"""Process-wide state shared by readers.

An :class:`S3Context` owns the config registry, the client cache, the header
cache and the worker pool used for parallel range reads. Build one explicitly
for isolation (tests, multiple tenants) or use :func:`get_default_context`,
which is created on first use and closed at interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from .clients import ClientCache
from .config import ConfigRegistry, ReaderSettings, load_reader_settings_from_env
from .resolver import resolve_config

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import EnvironmentOverlay
    from .location import LocationDescriptor
    from .resolver import ResolvedConfig

LOG = logging.getLogger("s3_range_reader.context")


class HeaderCache:
    """Bounded LRU of location string -> header bytes."""

    def __init__(self, max_entries: int = 1024) -> None:
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._headers: OrderedDict[str, bytes] = OrderedDict()

    def get(self, location: str) -> bytes | None:
        with self._lock:
            header = self._headers.get(location)
            if header is not None:
                self._headers.move_to_end(location)
            return header

    def put(self, location: str, header: bytes) -> None:
        with self._lock:
            self._headers[location] = header
            self._headers.move_to_end(location)
            while len(self._headers) > self._max_entries:
                self._headers.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._headers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._headers)


class S3Context:
    def __init__(
        self,
        settings: ReaderSettings | None = None,
        *,
        registry: ConfigRegistry | None = None,
        clients: ClientCache | None = None,
        client_factory: Callable[[ResolvedConfig], Any] | None = None,
    ) -> None:
        self.settings = settings or ReaderSettings()
        self.registry = registry or ConfigRegistry()
        self.clients = clients or ClientCache(
            self.settings, client_factory=client_factory
        )
        self.headers = HeaderCache(self.settings.header_cache_size)
        self.executor = ThreadPoolExecutor(
            max_workers=self.settings.range_read_pool_size,
            thread_name_prefix="s3-range-reader",
        )
        self._closed = False

    @classmethod
    def from_env(cls, **kwargs: Any) -> S3Context:
        return cls(load_reader_settings_from_env(), **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    def resolve(
        self,
        location: str | LocationDescriptor,
        environment: EnvironmentOverlay | None = None,
    ) -> ResolvedConfig:
        return resolve_config(location, self.registry, environment)

    def client_for(self, config: ResolvedConfig) -> Any:
        return self.clients.get_or_create(config)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.executor.shutdown(wait=False, cancel_futures=True)
        self.clients.close()
        self.headers.clear()
        LOG.debug("S3 context closed")

    def __enter__(self) -> S3Context:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


_default_lock = threading.Lock()
_default_context: S3Context | None = None


def get_default_context() -> S3Context:
    global _default_context
    with _default_lock:
        if _default_context is None or _default_context.closed:
            _default_context = S3Context.from_env()
        return _default_context


def reset_default_context() -> None:
    """Close the process-wide context; the next call builds a fresh one."""
    global _default_context
    with _default_lock:
        context, _default_context = _default_context, None
    if context is not None:
        context.close()


atexit.register(reset_default_context)
