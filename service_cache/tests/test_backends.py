"""
Unit tests for fragment store backends.
"""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from service_cache.app.caching.backends import (
    CacheEntry,
    InMemoryBackend,
    RedisBackend,
    create_backend,
)


def make_entry(key: str, payload: bytes = b"<p>fragment</p>", ttl=None) -> CacheEntry:
    now = time.time()
    return CacheEntry(
        key=key,
        payload=payload,
        created_at=now,
        last_accessed_at=now,
        expires_at=now + ttl if ttl is not None else None,
    )


class TestCacheEntry:
    """Test cases for CacheEntry bookkeeping."""

    def test_entry_without_expiry_never_expires(self):
        entry = make_entry("views:a")
        assert not entry.is_expired()
        assert entry.ttl_remaining() is None

    def test_expired_entry(self):
        entry = make_entry("views:a", ttl=10)
        assert entry.is_expired(now=entry.created_at + 10)
        assert not entry.is_expired(now=entry.created_at + 9)

    def test_ttl_remaining_rounds_up(self):
        entry = make_entry("views:a", ttl=10)
        assert entry.ttl_remaining(now=entry.created_at + 9.5) == 1


class TestInMemoryBackend:
    """Test cases for InMemoryBackend."""

    @pytest.fixture
    def backend(self):
        """Create a small backend so eviction is easy to trigger."""
        return InMemoryBackend(max_entries=2)

    @pytest.mark.asyncio
    async def test_put_then_get(self, backend):
        await backend.put(make_entry("views:a", b"A"))

        entry = await backend.get("views:a")

        assert entry.payload == b"A"
        assert await backend.get("views:missing") is None

    @pytest.mark.asyncio
    async def test_put_replaces_previous_value(self, backend):
        await backend.put(make_entry("views:a", b"old"))
        await backend.put(make_entry("views:a", b"new"))

        assert (await backend.get("views:a")).payload == b"new"
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_least_recently_used_is_evicted(self, backend):
        await backend.put(make_entry("views:a"))
        await backend.put(make_entry("views:b"))
        await backend.get("views:a")
        await backend.put(make_entry("views:c"))

        assert await backend.get("views:b") is None
        assert await backend.get("views:a") is not None
        assert backend.evictions == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_dropped_on_read(self, backend):
        entry = make_entry("views:a", ttl=10)
        entry.expires_at = time.time() - 1
        await backend.put(entry)

        assert await backend.get("views:a") is None
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_delete(self, backend):
        await backend.put(make_entry("views:a"))

        assert await backend.delete("views:a") is True
        assert await backend.delete("views:a") is False

    @pytest.mark.asyncio
    async def test_delete_prefix_only_removes_matching_keys(self):
        backend = InMemoryBackend(max_entries=10)
        await backend.put(make_entry("views:company/1-1:ctx=none"))
        await backend.put(make_entry("views:company/2-1:ctx=none"))
        await backend.put(make_entry("reports:company/1-1:ctx=none"))

        deleted = await backend.delete_prefix("views:")

        assert deleted == 2
        assert await backend.get("reports:company/1-1:ctx=none") is not None

    @pytest.mark.asyncio
    async def test_stats(self, backend):
        await backend.put(make_entry("views:a"))

        stats = await backend.stats()

        assert stats == {"backend": "memory", "entries": 1, "max_entries": 2, "evictions": 0}

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            InMemoryBackend(max_entries=0)


class TestRedisBackend:
    """Test cases for RedisBackend with a mocked client."""

    @pytest.fixture
    def mock_redis(self):
        """Mock redis.asyncio client."""
        client = MagicMock()
        client.hgetall = AsyncMock()
        client.delete = AsyncMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def backend(self, mock_redis):
        """Create RedisBackend bound to the mocked client."""
        backend = RedisBackend("redis://localhost:6379/0", key_prefix="views-store:", scan_count=2)
        backend._redis = mock_redis
        return backend

    @pytest.mark.asyncio
    async def test_get_decodes_hash(self, backend, mock_redis):
        mock_redis.hgetall.return_value = {
            b"payload": b"<p>A</p>",
            b"created_at": b"1700000000.5",
            b"expires_at": b"",
        }

        entry = await backend.get("views:a")

        mock_redis.hgetall.assert_called_once_with("views-store:views:a")
        assert entry.payload == b"<p>A</p>"
        assert entry.created_at == 1700000000.5
        assert entry.expires_at is None

    @pytest.mark.asyncio
    async def test_get_miss(self, backend, mock_redis):
        mock_redis.hgetall.return_value = {}
        assert await backend.get("views:a") is None

    @pytest.mark.asyncio
    async def test_put_writes_hash_and_expiry_in_one_transaction(self, backend, mock_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 3, True])
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe

        await backend.put(make_entry("views:a", b"A", ttl=60))

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.delete.assert_called_once_with("views-store:views:a")
        args, kwargs = pipe.hset.call_args
        assert args == ("views-store:views:a",)
        assert kwargs["mapping"]["payload"] == b"A"
        pipe.expire.assert_called_once()
        assert pipe.expire.call_args[0][1] == 60
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_put_without_ttl_sets_no_expiry(self, backend, mock_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 3])
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe

        await backend.put(make_entry("views:a"))

        pipe.expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_prefix_scans_and_deletes_in_batches(self, backend, mock_redis):
        keys = [b"views-store:views:a", b"views-store:views:b", b"views-store:views:c"]

        async def scan_iter(match=None, count=None):
            for key in keys:
                yield key

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)
        mock_redis.delete.side_effect = lambda *batch: len(batch)

        deleted = await backend.delete_prefix("views:")

        assert deleted == 3
        assert mock_redis.delete.await_count == 2
        assert mock_redis.scan_iter.call_args.kwargs["match"] == "views-store:views:*"

    @pytest.mark.asyncio
    async def test_delete_prefix_escapes_glob_characters(self, backend, mock_redis):
        async def scan_iter(match=None, count=None):
            return
            yield

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)

        await backend.delete_prefix("views:company/[1]")

        assert mock_redis.scan_iter.call_args.kwargs["match"] == "views-store:views:company/\\[1\\]*"

    @pytest.mark.asyncio
    async def test_close_releases_client(self, backend, mock_redis):
        await backend.close()

        mock_redis.aclose.assert_awaited_once()
        assert backend._redis is None


class TestCreateBackend:
    """Backend selection from configuration."""

    def test_memory_backend(self):
        config = SimpleNamespace(cache_backend="memory", cache_max_entries=5)
        backend = create_backend(config)
        assert isinstance(backend, InMemoryBackend)
        assert backend.max_entries == 5

    def test_redis_backend(self):
        config = SimpleNamespace(
            cache_backend="redis",
            redis_url="redis://cache:6379/1",
            cache_namespace="views",
            cache_operation_timeout=0.25,
        )
        backend = create_backend(config)
        assert isinstance(backend, RedisBackend)
        assert backend.key_prefix == "views-store:"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_backend(SimpleNamespace(cache_backend="memcached"))
