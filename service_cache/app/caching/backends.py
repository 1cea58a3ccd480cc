"""
Storage backends for the fragment cache.

Backends deal in ``CacheEntry`` objects addressed by string keys. The
in-process backend is fast but private to one worker; the Redis backend is
shared across every serving instance and is what horizontally scaled
deployments need.
"""

from __future__ import annotations

import abc
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig


@dataclass
class CacheEntry:
    """Stored fragment with bookkeeping timestamps (epoch seconds)."""

    key: str
    payload: bytes
    created_at: float
    last_accessed_at: float
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def ttl_remaining(self, now: Optional[float] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        remaining = self.expires_at - (now if now is not None else time.time())
        return max(1, int(remaining + 0.999))


class CacheStoreBackend(abc.ABC):
    """Capability set every fragment store backend provides."""

    name = "abstract"

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None."""

    @abc.abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Store ``entry``, replacing any previous value atomically."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; return whether something was deleted."""

    @abc.abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``; return the count."""

    async def ping(self) -> bool:
        return True

    async def stats(self) -> Dict[str, Any]:
        return {"backend": self.name}

    async def close(self) -> None:
        return None


class InMemoryBackend(CacheStoreBackend):
    """
    Capacity-bounded LRU store living inside one process.

    Not shared between server processes; each worker keeps its own copy.
    """

    name = "memory"

    def __init__(self, max_entries: int = 10000):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0
        self.logger = get_logger("cache.backend.memory")

    async def get(self, key: str) -> Optional[CacheEntry]:
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            return entry

    async def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry
            self._entries.move_to_end(entry.key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                self.logger.debug("Evicted cache entry", key=evicted)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    async def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        return {
            "backend": self.name,
            "entries": size,
            "max_entries": self.max_entries,
            "evictions": self.evictions,
        }

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisBackend(CacheStoreBackend):
    """
    Shared store on Redis.

    Entries are hashes written in a single MULTI/EXEC together with their
    expiry, so readers never see a half-written payload. Capacity eviction is
    left to the server's ``maxmemory-policy`` (allkeys-lru recommended).
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "access-cache:",
        socket_timeout: float = 1.0,
        scan_count: int = 500,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self.scan_count = scan_count
        self.logger = get_logger("cache.backend.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[CacheEntry]:
        client = await self._get_redis()
        data = await client.hgetall(self._make_key(key))
        if not data:
            return None
        fields = {_text(name): value for name, value in data.items()}
        payload = fields.get("payload")
        if payload is None:
            return None
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        expires_at = fields.get("expires_at")
        return CacheEntry(
            key=key,
            payload=payload,
            created_at=float(_text(fields.get("created_at", b"0"))),
            last_accessed_at=time.time(),
            expires_at=float(_text(expires_at)) if expires_at not in (None, b"", "") else None,
        )

    async def put(self, entry: CacheEntry) -> None:
        client = await self._get_redis()
        redis_key = self._make_key(entry.key)
        mapping = {
            "payload": entry.payload,
            "created_at": repr(entry.created_at),
            "expires_at": repr(entry.expires_at) if entry.expires_at is not None else "",
        }
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(redis_key)
            pipe.hset(redis_key, mapping=mapping)
            ttl = entry.ttl_remaining()
            if ttl is not None:
                pipe.expire(redis_key, ttl)
            await pipe.execute()

    async def delete(self, key: str) -> bool:
        client = await self._get_redis()
        return bool(await client.delete(self._make_key(key)))

    async def delete_prefix(self, prefix: str) -> int:
        client = await self._get_redis()
        pattern = f"{self._make_key(_escape_glob(prefix))}*"
        deleted = 0
        batch = []
        async for redis_key in client.scan_iter(match=pattern, count=self.scan_count):
            batch.append(redis_key)
            if len(batch) >= self.scan_count:
                deleted += await client.delete(*batch)
                batch = []
        if batch:
            deleted += await client.delete(*batch)
        self.logger.info("Cleared cache prefix", prefix=prefix, keys_count=deleted)
        return deleted

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def stats(self) -> Dict[str, Any]:
        client = await self._get_redis()
        info = await client.info("memory")
        return {
            "backend": self.name,
            "used_memory": info.get("used_memory"),
            "maxmemory_policy": _text(info.get("maxmemory_policy", "")),
        }

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis backend closed")


def create_backend(config: "BaseConfig") -> CacheStoreBackend:
    """Build the backend selected by ``cache_backend``."""
    backend = (config.cache_backend or "memory").lower()
    if backend == "memory":
        return InMemoryBackend(max_entries=config.cache_max_entries)
    if backend == "redis":
        return RedisBackend(
            config.redis_url,
            key_prefix=f"{config.cache_namespace}-store:",
            socket_timeout=max(config.cache_operation_timeout, 0.05),
        )
    raise ValueError(f"Unknown cache backend: {config.cache_backend}")


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _escape_glob(value: str) -> str:
    for char in ("\\", "*", "?", "[", "]"):
        value = value.replace(char, f"\\{char}")
    return value
