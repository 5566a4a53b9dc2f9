"""Redis pub/sub transport for cross-process notifications."""

from __future__ import annotations

import logging
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import Notification
from .base import BaseTransport, Subscription

logger = logging.getLogger(__name__)


class RedisSubscription(Subscription):
    def __init__(self, pubsub: Any, topic: str, lifespan: Optional[float] = None) -> None:
        super().__init__(topic, lifespan)
        self._pubsub = pubsub

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        if self.closed:
            return None
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True, timeout=timeout
        )
        if not message or message.get("type") != "message":
            return None
        try:
            return Notification.from_json(message["data"])
        except ValueError as e:
            logger.warning(f"Failed to parse notification on {self.topic}: {e}")
            return None

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._pubsub.unsubscribe(self.topic)
            await self._pubsub.aclose()


class RedisTransport(BaseTransport):
    """Redis-based transport for distributed notifications."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
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

    async def publish(self, topic: str, notification: Notification) -> None:
        """Publish notification on a Redis channel."""
        if not self._redis:
            await self.connect()
        await self._redis.publish(f"jobweave:{topic}", notification.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> RedisSubscription:
        """Subscribe to a Redis channel."""
        if not self._redis:
            await self.connect()
        pubsub = self._redis.pubsub()
        channel = f"jobweave:{topic}"
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, lifespan)
