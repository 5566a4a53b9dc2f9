"""In-memory publish/subscribe transport."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional

from ..contracts import Notification
from .base import BaseTransport, Subscription


class InMemorySubscription(Subscription):
    def __init__(
        self, transport: "InMemoryTransport", topic: str, lifespan: Optional[float] = None
    ) -> None:
        super().__init__(topic, lifespan)
        self._transport = transport
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()

    def deliver(self, notification: Notification) -> None:
        self._queue.put_nowait(notification)

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        if self.closed:
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._transport._unsubscribe(self)


class InMemoryTransport(BaseTransport):
    """Simple in-process fan-out, one queue per subscriber."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[InMemorySubscription]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, notification: Notification) -> None:
        """Publish notification to every subscriber of ``topic``."""
        async with self._lock:
            for subscription in self._subscribers.get(topic, []):
                subscription.deliver(notification)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> InMemorySubscription:
        subscription = InMemorySubscription(self, topic, lifespan)
        async with self._lock:
            self._subscribers[topic].append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: InMemorySubscription) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))
