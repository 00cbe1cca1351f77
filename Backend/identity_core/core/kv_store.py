"""
Key-value stores for short-lived, single-use values.

SSO correlation state lives here. The in-memory store serves a single
process; the Redis store is shared between instances.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis


logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Expiring key-value store with take-once reads."""

    @abstractmethod
    async def put(self, key: str, value: dict, ttl: int) -> None:
        """Store value under key for ttl seconds, replacing any previous value."""

    @abstractmethod
    async def take_once(self, key: str) -> Optional[dict]:
        """
        Atomically read and remove a value.

        Returns None when the key is absent, already taken or expired.
        """

    async def purge_expired(self) -> int:
        """Drop expired entries. Stores with native expiry have nothing to do."""
        return 0


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Expiry is checked on read and by purge_expired."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, dict]] = {}

    async def put(self, key: str, value: dict, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    async def take_once(self, key: str) -> Optional[dict]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            return None
        return value

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged expired state entries", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store using SET EX and GETDEL."""

    def __init__(self, redis: Redis, prefix: str = ""):
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def put(self, key: str, value: dict, ttl: int) -> None:
        await self._redis.set(self._key(key), json.dumps(value), ex=ttl)

    async def take_once(self, key: str) -> Optional[dict]:
        raw: Any = await self._redis.getdel(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
