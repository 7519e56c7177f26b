"""
Cache-aside layer over the shared key-value store.

Values are stored as JSON under ``<namespace>:<key>`` and every write
carries a TTL. The cache never fails a request: store errors and
unparseable entries are treated as misses and write failures are logged.

There is no stampede protection. Concurrent misses for the same key each
call the factory once and the last write wins.
"""

import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

from shared.errors import StoreUnavailableError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.store import KeyValueStore


Factory = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class CacheResult:
    """Value served by the cache layer and whether it came from the cache."""
    value: Any
    hit: bool


class CacheLayer:
    """Namespaced JSON cache with TTLs."""

    def __init__(self, store: KeyValueStore, namespace: str = "fluxsight", *,
                 prefix_scan: bool = True, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.namespace = namespace
        self.prefix_scan = prefix_scan
        self.metrics = metrics
        self.logger = get_logger("gateway.cache")

    @property
    def scans_prefixes(self) -> bool:
        """Whether delete_by_prefix() can enumerate keys exactly."""
        return self.prefix_scan and self.store.supports_prefix_scan

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @staticmethod
    def _ttl_ms(ttl: float) -> int:
        if ttl is None or ttl <= 0:
            raise ValidationError("Cache TTL must be greater than zero", {"ttl": ttl})
        return max(1, int(ttl * 1000))

    def _record_lookup(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_lookups_total", result=result)

    def _record_store_error(self, operation: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("store_errors_total", operation=operation)

    async def get(self, key: str) -> Optional[Any]:
        """Get a cached value, or None on miss."""
        try:
            raw = await self.store.get(self._full_key(key))
        except StoreUnavailableError as e:
            self.logger.warning("Cache get failed, treating as miss", key=key, error=str(e.cause))
            self._record_store_error("cache_get")
            self._record_lookup("error")
            return None

        if raw is None:
            self._record_lookup("miss")
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("Unparseable cache entry, treating as miss", key=key)
            self._record_lookup("error")
            return None

        self._record_lookup("hit")
        return value

    async def set(self, key: str, value: Any, ttl: float) -> bool:
        """Cache a value for ``ttl`` seconds. None is never cached."""
        ttl_ms = self._ttl_ms(ttl)
        if value is None:
            return False

        try:
            await self.store.set(self._full_key(key), json.dumps(value, default=str), ttl_ms)
            return True
        except StoreUnavailableError as e:
            self.logger.warning("Cache set failed", key=key, error=str(e.cause))
            self._record_store_error("cache_set")
            return False

    async def delete(self, key: str) -> bool:
        return await self.delete_many([key]) > 0

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys, returning how many existed."""
        full_keys = [self._full_key(key) for key in keys]
        if not full_keys:
            return 0
        try:
            return await self.store.delete(*full_keys)
        except StoreUnavailableError as e:
            self.logger.error("Cache delete failed", keys=full_keys, error=str(e.cause))
            self._record_store_error("cache_delete")
            return 0

    async def delete_by_prefix(self, prefix: str, candidates: Optional[Iterable[str]] = None) -> int:
        """
        Delete every key under ``prefix``.

        Without prefix scanning only the given candidate keys are deleted,
        so keys outside the candidate list survive until their TTL.
        """
        if self.scans_prefixes:
            full_prefix = self._full_key(prefix)
            try:
                keys = await self.store.scan_prefix(full_prefix)
            except StoreUnavailableError as e:
                self.logger.error("Cache prefix scan failed", prefix=prefix, error=str(e.cause))
                self._record_store_error("cache_scan")
                return 0
            if not keys:
                return 0
            try:
                return await self.store.delete(*keys)
            except StoreUnavailableError as e:
                self.logger.error("Cache delete failed", prefix=prefix, error=str(e.cause))
                self._record_store_error("cache_delete")
                return 0

        matching: List[str] = [key for key in (candidates or []) if key.startswith(prefix)]
        return await self.delete_many(matching)

    async def fetch(self, key: str, ttl: float, factory: Factory) -> CacheResult:
        """Cache-aside lookup reporting whether the value was a hit."""
        self._ttl_ms(ttl)
        cached = await self.get(key)
        if cached is not None:
            return CacheResult(cached, True)

        value = factory()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            await self.set(key, value, ttl)
        return CacheResult(value, False)

    async def get_or_compute(self, key: str, ttl: float, factory: Factory) -> Any:
        """Return the cached value, or compute, cache and return it."""
        return (await self.fetch(key, ttl, factory)).value

