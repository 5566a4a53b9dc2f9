"""Persistence layer for jobweave orchestration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import JobweaveConfig, load_config
from .inmemory import InMemoryKeyValueStore
from .repository import KeyValueStore
from .sqlite import SQLiteKeyValueStore


def get_store(
    backend: Optional[str] = None, config: Optional[JobweaveConfig] = None
) -> KeyValueStore:
    """Factory function to obtain the configured key-value store.

    The backend can be provided explicitly, via the ``JOBWEAVE_STORE``
    environment variable, or from loaded configuration. Without any
    configuration an in-memory store is returned.
    """

    config = config or load_config()
    backend = (backend or os.getenv("JOBWEAVE_STORE") or config.store.backend).lower()

    if backend == "inmemory":
        return InMemoryKeyValueStore()
    elif backend == "sqlite":
        return SQLiteKeyValueStore(config.store.sqlite_path)
    elif backend == "redis":
        from .redis import RedisKeyValueStore

        redis_conf = config.store.redis
        return RedisKeyValueStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=config.store.key_prefix,
        )
    else:
        raise ValueError(f"Unsupported store backend: {backend}")


__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
    "get_store",
]
