"""In-memory implementation of the key-value store."""

from __future__ import annotations

import copy
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .repository import KeyValueStore


class InMemoryKeyValueStore(KeyValueStore):
    """Store records in local memory.

    Useful for tests or single-process deployments. Data is not persisted
    across process restarts. Values are deep-copied on the way in and out so
    callers only ever hold snapshots.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._clock = clock

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return copy.deepcopy(value)

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._data[key] = (copy.deepcopy(value), self._deadline(ttl))

    async def increment(
        self, key: str, amount: int = 1, ttl: Optional[float] = None
    ) -> int:
        current = await self.get(key) or 0
        new_value = int(current) + amount
        self._data[key] = (new_value, self._deadline(ttl))
        return new_value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [
            key
            for key, (_, expires_at) in list(self._data.items())
            if key.startswith(prefix) and not self._expired(expires_at)
        ]

    async def purge_expired(self) -> int:
        expired = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
        for key in expired:
            del self._data[key]
        return len(expired)
