from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from functools import partial
from typing import TYPE_CHECKING, Any

from boto3.session import Session
from botocore import UNSIGNED
from botocore.config import Config as BotoConfig

from .config import ReaderSettings

if TYPE_CHECKING:
    from collections.abc import Callable

    from botocore.client import BaseClient

    from .resolver import ResolvedConfig

LOG = logging.getLogger("s3_range_reader.clients")

_STALE_LOCK = object()


def _normalise_endpoint(endpoint: str | None) -> str | None:
    if not endpoint:
        return None
    if "://" not in endpoint:
        return f"https://{endpoint}"
    return endpoint


def build_client(
    config: ResolvedConfig, settings: ReaderSettings | None = None
) -> BaseClient:
    """Create a boto3 S3 client for a resolved descriptor."""
    settings = settings or ReaderSettings()
    mode = config.credentials_mode
    if mode == "explicit":
        LOG.debug("using explicit credentials for user %s", config.user)
        session = Session(
            aws_access_key_id=config.user,
            aws_secret_access_key=config.password,
            region_name=config.region,
        )
    else:
        LOG.debug(
            "using %s credentials",
            "anonymous" if mode == "anonymous" else "default provider chain",
        )
        session = Session(region_name=config.region)

    endpoint = _normalise_endpoint(config.endpoint)
    if endpoint:
        LOG.debug("using custom S3 endpoint %s", endpoint)
    return session.client(
        "s3",
        endpoint_url=endpoint,
        config=BotoConfig(
            signature_version=UNSIGNED if mode == "anonymous" else "s3v4",
            retries={"max_attempts": 3},
            max_pool_connections=min(config.max_pool_size, settings.max_connections),
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.socket_timeout,
            s3={"addressing_style": "path" if config.force_path_style else "auto"},
        ),
    )


class _CacheEntry:
    __slots__ = ("client", "last_access")

    def __init__(self, client: Any, now: float) -> None:
        self.client = client
        self.last_access = now

    def idle(self, now: float) -> float:
        return now - self.last_access


class ClientCache:
    """Bounded, TTL-evicting cache of S3 clients keyed by endpoint and region.

    A client is built at most once per key even when many threads ask for it
    at the same time. Idle clients are closed by a background sweep that
    first runs after one TTL and then every half TTL.
    """

    def __init__(
        self,
        settings: ReaderSettings | None = None,
        *,
        client_factory: Callable[[ResolvedConfig], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        start_sweeper: bool = True,
    ) -> None:
        self._settings = settings or ReaderSettings()
        self._max_size = self._settings.client_cache_max_size
        self._ttl = self._settings.client_cache_ttl
        self._client_factory = client_factory or partial(
            build_client, settings=self._settings
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if start_sweeper:
            self._sweeper = threading.Thread(
                target=self._run_sweeper,
                name="s3-client-cache-cleanup",
                daemon=True,
            )
            self._sweeper.start()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl

    def get_or_create(self, config: ResolvedConfig) -> Any:
        key = config.cache_key
        while True:
            with self._lock:
                key_lock = self._key_locks.setdefault(key, threading.Lock())
            with key_lock:
                client = self._get_or_build(key, key_lock, config)
            if client is not _STALE_LOCK:
                return client

    def _get_or_build(
        self, key: str, key_lock: threading.Lock, config: ResolvedConfig
    ) -> Any:
        now = self._clock()
        stale = None
        with self._lock:
            # the lock was dropped while we waited for it; start over
            if self._key_locks.get(key) is not key_lock:
                return _STALE_LOCK
            entry = self._entries.get(key)
            if entry is not None and entry.idle(now) <= self._ttl:
                entry.last_access = now
                self._entries.move_to_end(key)
                LOG.debug("reusing S3 client for %s", key)
                return entry.client
            if entry is not None:
                stale = self._entries.pop(key)
        if stale is not None:
            self._close_safely(stale.client, key)

        LOG.info("creating new S3 client for %s", key)
        client = self._client_factory(config)

        with self._lock:
            evicted = self._evict_for_insert()
            self._entries[key] = _CacheEntry(client, self._clock())
        for evicted_key, evicted_entry in evicted:
            LOG.debug("evicting S3 client %s", evicted_key)
            self._close_safely(evicted_entry.client, evicted_key)
        return client

    def _evict_for_insert(self) -> list[tuple[str, _CacheEntry]]:
        evicted = []
        while self._entries and len(self._entries) >= self._max_size:
            key, entry = self._entries.popitem(last=False)
            self._discard_key_lock(key)
            evicted.append((key, entry))
        return evicted

    def _discard_key_lock(self, key: str) -> None:
        # callers hold self._lock; a held key lock belongs to a build in progress
        key_lock = self._key_locks.get(key)
        if key_lock is not None and not key_lock.locked():
            del self._key_locks[key]

    def sweep(self) -> int:
        """Close and remove every client idle for longer than the TTL."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items() if entry.idle(now) > self._ttl
            ]
            removed = [(key, self._entries.pop(key)) for key in expired]
            for key in expired:
                self._discard_key_lock(key)
        for key, entry in removed:
            self._close_safely(entry.client, key)
        if removed:
            LOG.debug("cleaned up %d expired S3 clients", len(removed))
        return len(removed)

    def _run_sweeper(self) -> None:
        delay = self._ttl
        while not self._stop.wait(delay):
            self.sweep()
            delay = self._ttl / 2

    def clear_cache(self) -> None:
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
            for key, _ in entries:
                self._discard_key_lock(key)
        LOG.info("clearing S3 client cache (%d clients)", len(entries))
        for key, entry in entries:
            self._close_safely(entry.client, key)

    def close(self) -> None:
        """Stop the sweeper and close every cached client."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=5)
        self._sweeper = None
        self.clear_cache()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def stats(self) -> dict[str, float]:
        now = self._clock()
        with self._lock:
            idle_times = [entry.idle(now) for entry in self._entries.values()]
        active = sum(1 for idle in idle_times if idle < self._ttl / 2)
        return {
            "size": len(idle_times),
            "active": active,
            "expiring": len(idle_times) - active,
            "max_size": self._max_size,
            "ttl_minutes": self._settings.client_cache_ttl_minutes,
        }

    @staticmethod
    def _close_safely(client: Any, key: str) -> None:
        try:
            client.close()
        except Exception:
            LOG.warning("error closing S3 client %s", key, exc_info=True)
        else:
            LOG.debug("closed S3 client %s", key)
