"""Key-value store abstraction for orchestration state."""

from __future__ import annotations

from typing import Any, Optional, Protocol


class KeyValueStore(Protocol):
    """Protocol for key-value backends holding workflow, batch and progress records.

    Values are JSON-compatible. ``ttl`` is expressed in seconds; ``None``
    keeps the key until it is deleted.
    """

    async def get(self, key: str) -> Any | None:
        """Return the stored value or ``None`` if missing or expired."""

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    async def increment(
        self, key: str, amount: int = 1, ttl: Optional[float] = None
    ) -> int:
        """Atomically add ``amount`` to an integer value and return the new value."""

    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    async def keys(self, prefix: str = "") -> list[str]:
        """Return the live keys starting with ``prefix``."""

    async def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
