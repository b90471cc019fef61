"""
Tests for counter stores.

Tests cover:
- MemoryCounterStore Redis-compatible semantics (TTL sentinels, fixed expiry)
- RedisCounterStore command mapping and key prefixing
- build_counter_store selection
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.core.counter_store import (
    TTL_MISSING,
    TTL_NO_EXPIRY,
    MemoryCounterStore,
    RedisCounterStore,
    build_counter_store,
)


class TestMemoryCounterStore:
    @pytest.mark.asyncio
    async def test_get_missing_key_returns_none(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        await store.set("k", "1", 60000)
        assert await store.get("k") == "1"

    @pytest.mark.asyncio
    async def test_ttl_sentinels(self, store):
        assert await store.ttl("missing") == TTL_MISSING

        await store.set("forever", "1")
        assert await store.ttl("forever") == TTL_NO_EXPIRY

    @pytest.mark.asyncio
    async def test_ttl_counts_down(self, store, clock):
        await store.set("k", "1", 60000)
        assert await store.ttl("k") == 60

        clock.advance(20)
        assert await store.ttl("k") == 40

    @pytest.mark.asyncio
    async def test_incr_does_not_extend_expiry(self, store, clock):
        await store.set("k", "1", 10000)
        clock.advance(6)

        assert await store.incr("k") == 2
        assert await store.incr("k") == 3
        assert await store.ttl("k") == 4

    @pytest.mark.asyncio
    async def test_key_expires(self, store, clock):
        await store.set("k", "5", 1000)
        clock.advance(1.0)

        assert await store.get("k") is None
        assert await store.ttl("k") == TTL_MISSING

    @pytest.mark.asyncio
    async def test_incr_missing_key_starts_at_one_without_expiry(self, store):
        assert await store.incr("fresh") == 1
        assert await store.ttl("fresh") == TTL_NO_EXPIRY

    @pytest.mark.asyncio
    async def test_incr_non_integer_raises(self, store):
        await store.set("k", "abc")
        with pytest.raises(ValueError):
            await store.incr("k")

    @pytest.mark.asyncio
    async def test_delete_counts_only_existing_keys(self, store):
        await store.set("a", "1")
        await store.set("b", "1")

        assert await store.delete("a", "b", "c") == 2
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.set("a", "1")
        store.clear()
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_expired_keys_swept_without_being_read(self, clock):
        store = MemoryCounterStore(clock=clock, sweep_interval=3)
        await store.set("rl:ip:10.0.0.1", "1", 1000)
        await store.set("rl:ip:10.0.0.2", "1", 1000)
        await store.set("forever", "1")
        clock.advance(2)

        await store.set("rl:ip:10.0.0.3", "1", 60000)
        await store.set("rl:ip:10.0.0.4", "1", 60000)
        assert len(store._data) == 5

        await store.set("rl:ip:10.0.0.5", "1", 60000)

        assert sorted(store._data) == ["forever", "rl:ip:10.0.0.3", "rl:ip:10.0.0.4", "rl:ip:10.0.0.5"]


class TestRedisCounterStore:
    def _make(self, prefix: str = "") -> tuple:
        client = MagicMock()
        client.get = AsyncMock(return_value="3")
        client.set = AsyncMock(return_value=True)
        client.incr = AsyncMock(return_value=4)
        client.ttl = AsyncMock(return_value=42)
        client.delete = AsyncMock(return_value=2)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client, RedisCounterStore(client, key_prefix=prefix)

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_expiry(self):
        client, store = self._make()
        await store.set("throttle:ip:1.2.3.4", "1", 60000)
        client.set.assert_awaited_once_with("throttle:ip:1.2.3.4", "1", px=60000)

    @pytest.mark.asyncio
    async def test_commands_are_prefixed(self):
        client, store = self._make(prefix="prod:")

        assert await store.get("k") == "3"
        assert await store.incr("k") == 4
        assert await store.ttl("k") == 42

        client.get.assert_awaited_once_with("prod:k")
        client.incr.assert_awaited_once_with("prod:k")
        client.ttl.assert_awaited_once_with("prod:k")

    @pytest.mark.asyncio
    async def test_delete_many(self):
        client, store = self._make(prefix="p:")
        assert await store.delete("a", "b") == 2
        client.delete.assert_awaited_once_with("p:a", "p:b")

    @pytest.mark.asyncio
    async def test_delete_nothing_skips_round_trip(self):
        client, store = self._make()
        assert await store.delete() == 0
        client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        client, store = self._make()
        client.get.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_close(self):
        client, store = self._make()
        await store.close()
        client.aclose.assert_awaited_once()

    def test_from_url(self):
        with patch("app.core.counter_store.redis.from_url") as from_url:
            store = RedisCounterStore.from_url("redis://localhost:6379/0", key_prefix="x:")

        from_url.assert_called_once()
        assert from_url.call_args[0][0] == "redis://localhost:6379/0"
        assert from_url.call_args[1]["decode_responses"] is True
        assert store.client is from_url.return_value


class TestBuildCounterStore:
    def test_empty_url_uses_memory_store(self):
        assert isinstance(build_counter_store(""), MemoryCounterStore)

    def test_url_uses_redis_store(self):
        with patch("app.core.counter_store.redis.from_url"):
            store = build_counter_store("redis://localhost:6379/0", key_prefix="a:")
        assert isinstance(store, RedisCounterStore)
