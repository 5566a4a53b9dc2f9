"""Base publish/subscribe interface for jobweave notifications."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Optional

from ..contracts import Notification


class Subscription(metaclass=abc.ABCMeta):
    """Handle to a live topic subscription.

    The subscription is registered as soon as it is created, so
    notifications published afterwards are never missed. Iterating yields
    notifications in publish order until the subscription is closed or its
    lifespan elapses.
    """

    def __init__(self, topic: str, lifespan: Optional[float] = None) -> None:
        self.topic = topic
        self._lifespan = lifespan
        self._started = asyncio.get_event_loop().time()
        self.closed = False

    def _remaining(self) -> Optional[float]:
        if self._lifespan is None:
            return None
        return self._lifespan - (asyncio.get_event_loop().time() - self._started)

    @abc.abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Wait for the next notification; ``None`` on timeout or close."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        """Stop receiving notifications."""
        raise NotImplementedError

    async def __aiter__(self) -> AsyncIterator[Notification]:
        while not self.closed:
            remaining = self._remaining()
            if remaining is not None and remaining <= 0:
                break
            timeout = 1.0 if remaining is None else min(1.0, remaining)
            notification = await self.get(timeout=timeout)
            if notification is not None:
                yield notification


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract base transport for notification brokers."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, notification: Notification) -> None:
        """Deliver a notification to every current subscriber of ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> Subscription:
        """Register a subscription to ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        raise NotImplementedError
