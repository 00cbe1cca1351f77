"""
Tests for the single-use key-value stores.

Tests cover:
- take_once returning a value exactly once
- Expiry after the configured TTL
- purge_expired dropping only expired entries
- Redis store keys, TTL and GETDEL usage
"""

import json
from unittest.mock import AsyncMock

import pytest

from identity_core.core.kv_store import InMemoryKeyValueStore, RedisKeyValueStore


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# In-memory store
# =============================================================================


class TestInMemoryKeyValueStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_take_once_returns_value_once(self):
        store = InMemoryKeyValueStore(clock=ManualClock())
        await store.put("state-1", {"config_id": "abc"}, ttl=600)

        assert await store.take_once("state-1") == {"config_id": "abc"}
        assert await store.take_once("state-1") is None

    @pytest.mark.asyncio
    async def test_unknown_key(self):
        store = InMemoryKeyValueStore()
        assert await store.take_once("missing") is None

    @pytest.mark.asyncio
    async def test_value_expires_after_ttl(self):
        clock = ManualClock()
        store = InMemoryKeyValueStore(clock=clock)
        await store.put("state-1", {"n": 1}, ttl=600)

        clock.now += 600

        assert await store.take_once("state-1") is None

    @pytest.mark.asyncio
    async def test_value_valid_just_before_expiry(self):
        clock = ManualClock()
        store = InMemoryKeyValueStore(clock=clock)
        await store.put("state-1", {"n": 1}, ttl=600)

        clock.now += 599

        assert await store.take_once("state-1") == {"n": 1}

    @pytest.mark.asyncio
    async def test_put_replaces_previous_value(self):
        store = InMemoryKeyValueStore(clock=ManualClock())
        await store.put("k", {"v": 1}, ttl=60)
        await store.put("k", {"v": 2}, ttl=60)

        assert await store.take_once("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        clock = ManualClock()
        store = InMemoryKeyValueStore(clock=clock)
        await store.put("old", {"n": 1}, ttl=10)
        await store.put("new", {"n": 2}, ttl=600)

        clock.now += 11
        purged = await store.purge_expired()

        assert purged == 1
        assert len(store) == 1
        assert await store.take_once("new") == {"n": 2}


# =============================================================================
# Redis store
# =============================================================================


class TestRedisKeyValueStore:
    """Tests for the Redis-backed store against a mocked client."""

    @pytest.mark.asyncio
    async def test_put_uses_prefix_and_ttl(self):
        redis = AsyncMock()
        store = RedisKeyValueStore(redis, prefix="sso_state:")

        await store.put("abc", {"protocol": "oidc"}, ttl=600)

        redis.set.assert_awaited_once_with("sso_state:abc", json.dumps({"protocol": "oidc"}), ex=600)

    @pytest.mark.asyncio
    async def test_take_once_uses_getdel(self):
        redis = AsyncMock()
        redis.getdel.return_value = b'{"protocol": "saml"}'
        store = RedisKeyValueStore(redis, prefix="sso_state:")

        assert await store.take_once("abc") == {"protocol": "saml"}
        redis.getdel.assert_awaited_once_with("sso_state:abc")

    @pytest.mark.asyncio
    async def test_take_once_missing(self):
        redis = AsyncMock()
        redis.getdel.return_value = None
        store = RedisKeyValueStore(redis)

        assert await store.take_once("abc") is None
        assert await store.purge_expired() == 0
