"""
Fragment cache store.

Named byte blobs addressed by cache keys. Keys embed version tokens, so stale
fragments simply become unreachable; deletes only reclaim space. Every backend
call is bounded by a timeout and read-path failures fail open to a miss.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger

from .backends import CacheEntry, CacheStoreBackend
from .keys import CacheKey

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


KeyLike = Union[CacheKey, str]
Renderer = Callable[[], Awaitable[bytes]]


class FragmentCacheStore:
    """Store/retrieve/evict rendered fragments through a pluggable backend."""

    def __init__(
        self,
        backend: CacheStoreBackend,
        *,
        default_ttl: Optional[int] = 3600,
        timeout: float = 0.25,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("cache.fragment_store")

    async def get(self, key: KeyLike) -> Optional[bytes]:
        """Return the payload stored under ``key``; failures count as a miss."""
        cache_key = str(key)
        try:
            entry = await self._call("get", self.backend.get(cache_key))
        except StoreUnavailableError as e:
            self.logger.warning("Fragment read failed open", key=cache_key, error=e.message)
            self._record_miss()
            return None

        if entry is None:
            self._record_miss()
            return None

        self._record_hit()
        return entry.payload

    async def entry(self, key: KeyLike) -> Optional[CacheEntry]:
        """Return the full entry, propagating StoreUnavailableError."""
        return await self._call("get", self.backend.get(str(key)))

    async def put(self, key: KeyLike, payload: bytes, ttl: Optional[int] = None) -> bool:
        """Store ``payload``; a failed write is logged and reported as False."""
        if not isinstance(payload, (bytes, bytearray)):
            raise TypeError("Fragment payloads must be bytes")

        cache_key = str(key)
        now = time.time()
        lifetime = self.default_ttl if ttl is None else ttl
        entry = CacheEntry(
            key=cache_key,
            payload=bytes(payload),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + lifetime if lifetime else None,
        )
        try:
            await self._call("put", self.backend.put(entry))
        except StoreUnavailableError as e:
            self.logger.warning("Fragment write skipped", key=cache_key, error=e.message)
            return False

        self.logger.debug("Cached fragment", key=cache_key, ttl=lifetime, size=len(entry.payload))
        return True

    async def delete(self, key: KeyLike) -> bool:
        cache_key = str(key)
        try:
            return await self._call("delete", self.backend.delete(cache_key))
        except StoreUnavailableError as e:
            self.logger.warning("Fragment delete skipped", key=cache_key, error=e.message)
            return False

    async def delete_by_prefix(self, namespace: str) -> int:
        """
        Administrative purge of every key starting with ``namespace``.

        Raises:
            StoreUnavailableError: the backend could not be reached.
        """
        if not namespace:
            raise ValueError("Refusing to purge with an empty prefix")
        deleted = await self._call("delete_prefix", self.backend.delete_prefix(namespace))
        if self.metrics:
            self.metrics.increment_counter("cache_invalidations_total", kind="prefix")
        self.logger.info("Purged fragments by prefix", prefix=namespace, deleted=deleted)
        return deleted

    async def fetch(self, key: KeyLike, render: Renderer, ttl: Optional[int] = None) -> bytes:
        """Return the cached payload or render, store and return a fresh one."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        payload = await render()
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        await self.put(key, payload, ttl=ttl)
        return payload

    async def stats(self) -> Dict[str, Any]:
        try:
            stats = await self._call("stats", self.backend.stats())
        except StoreUnavailableError as e:
            return {"backend": self.backend.name, "error": e.message}
        if self.metrics and "entries" in stats:
            self.metrics.set_gauge("cache_entries", stats["entries"], backend=self.backend.name)
        return stats

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self.backend.ping()))
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self.backend.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._record_error(operation)
            raise StoreUnavailableError(operation, f"timed out after {self.timeout}s") from e
        except (RedisError, ConnectionError, OSError) as e:
            self._record_error(operation)
            raise StoreUnavailableError(operation, str(e) or type(e).__name__) from e
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "cache_store_duration_seconds",
                    time.perf_counter() - start,
                    operation=operation,
                )

    def _record_hit(self):
        if self.metrics:
            self.metrics.increment_counter("cache_hits_total", cache_type="fragment")

    def _record_miss(self):
        if self.metrics:
            self.metrics.increment_counter("cache_misses_total", cache_type="fragment")

    def _record_error(self, operation: str):
        if self.metrics:
            self.metrics.increment_counter("cache_store_errors_total", operation=operation)

