"""Job queue collaborator interface and implementations."""

from __future__ import annotations

import os
from typing import Optional

from ..config import JobweaveConfig, load_config
from ..persistence import KeyValueStore
from .base import BaseJobQueue, LifecycleListener
from .inmemory import InMemoryJobQueue
from .store import StoreJobQueue


def get_queue(
    store: KeyValueStore,
    backend: Optional[str] = None,
    config: Optional[JobweaveConfig] = None,
) -> BaseJobQueue:
    """Factory function to obtain the configured job queue.

    The ``store`` backend keeps jobs in ``store`` so that every process using
    the same store shares them. The backend can be provided explicitly, via
    the ``JOBWEAVE_QUEUE`` environment variable, or from loaded configuration.
    """

    config = config or load_config()
    backend = (backend or os.getenv("JOBWEAVE_QUEUE") or config.queue.backend).lower()

    if backend == "inmemory":
        return InMemoryJobQueue()
    elif backend == "store":
        return StoreJobQueue(store, job_ttl=config.queue.job_ttl)
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseJobQueue", "InMemoryJobQueue", "LifecycleListener", "StoreJobQueue", "get_queue"]
