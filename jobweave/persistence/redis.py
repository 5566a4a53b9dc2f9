"""Redis implementation of the key-value store."""

from __future__ import annotations

import json
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .repository import KeyValueStore


class RedisKeyValueStore(KeyValueStore):
    """Store records in Redis, relying on native key expiry."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "jobweave",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisKeyValueStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Any | None:
        client = await self._client()
        raw = await client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        client = await self._client()
        px = int(ttl * 1000) if ttl is not None else None
        await client.set(self._key(key), json.dumps(value), px=px)

    async def increment(
        self, key: str, amount: int = 1, ttl: Optional[float] = None
    ) -> int:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incrby(self._key(key), amount)
            if ttl is not None:
                pipe.pexpire(self._key(key), int(ttl * 1000))
            results = await pipe.execute()
        return int(results[0])

    async def delete(self, key: str) -> None:
        client = await self._client()
        await client.delete(self._key(key))

    async def keys(self, prefix: str = "") -> list[str]:
        client = await self._client()
        strip = len(self.key_prefix) + 1
        found = [k[strip:] async for k in client.scan_iter(match=f"{self._key(prefix)}*")]
        return sorted(found)

    async def purge_expired(self) -> int:
        # Redis evicts expired keys itself.
        return 0
