"""Counters and latency aggregates built from job lifecycle events."""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Optional

from .contracts import TERMINAL_JOB_STATES, Job, JobState, LifecycleEvent, utcnow
from .coordinator import Coordinator

logger = logging.getLogger(__name__)

PREFIX = "stats:"


def _error_signature(error: str) -> str:
    return (error.splitlines() or [""])[0][:200]


class StatsCollector:
    """Maintains job statistics in the key-value store.

    Plain counters use the store's atomic increment. Duration and error
    aggregates need read-modify-write and go through the coordinator lock.
    """

    def __init__(self, coordinator: Coordinator) -> None:
        self._coordinator = coordinator

    @property
    def _store(self):
        return self._coordinator.store

    @property
    def _ttl(self) -> float:
        return self._coordinator.config.stats_ttl

    async def _bump(self, name: str) -> None:
        await self._store.increment(f"{PREFIX}{name}", 1, ttl=self._ttl)

    async def track_enqueue(self, job: Job) -> None:
        await self._bump("enqueued")
        await self._bump(f"worker:{job.worker}")
        await self._bump(f"queue:{job.queue}")

    async def handle_event(self, event: LifecycleEvent) -> None:
        job = event.job
        if event.event == "start":
            await self._bump("started")
            logger.debug(f"Started job {job.id} ({job.worker})")
        elif event.event == "stop":
            await self._bump(f"state:{JobState.COMPLETED.value}")
            await self._record_duration(job, event.measurements.get("duration_ms"))
        elif job.state == JobState.DISCARDED:
            await self._bump(f"state:{JobState.DISCARDED.value}")
            await self._record_error(event.error or job.last_error or "unknown")
        elif job.state == JobState.CANCELLED:
            await self._bump(f"state:{JobState.CANCELLED.value}")
        else:
            # Failed attempt that will be retried.
            await self._bump("retried")

    async def _record_duration(self, job: Job, duration_ms: Optional[float]) -> None:
        if duration_ms is None and job.attempted_at and job.completed_at:
            duration_ms = (job.completed_at - job.attempted_at).total_seconds() * 1000
        if duration_ms is None:
            return
        key = f"{PREFIX}duration:{job.worker}"
        async with self._coordinator.lock:
            agg = await self._store.get(key) or {
                "worker": job.worker,
                "count": 0,
                "total_ms": 0.0,
                "min_ms": None,
                "max_ms": None,
            }
            agg["count"] += 1
            agg["total_ms"] += duration_ms
            agg["min_ms"] = duration_ms if agg["min_ms"] is None else min(agg["min_ms"], duration_ms)
            agg["max_ms"] = duration_ms if agg["max_ms"] is None else max(agg["max_ms"], duration_ms)
            await self._store.put(key, agg, ttl=self._ttl)

    async def _record_error(self, error: str) -> None:
        signature = _error_signature(error)
        digest = hashlib.sha1(signature.encode()).hexdigest()[:16]
        key = f"{PREFIX}error:{digest}"
        async with self._coordinator.lock:
            agg = await self._store.get(key) or {"error": signature, "count": 0}
            agg["count"] += 1
            agg["last_seen"] = utcnow().isoformat()
            await self._store.put(key, agg, ttl=self._ttl)

    # ------------------------------------------------------------------
    # Queries
    async def _counters(self, group: str) -> Dict[str, int]:
        prefix = f"{PREFIX}{group}:"
        counters: Dict[str, int] = {}
        for key in await self._store.keys(prefix):
            value = await self._store.get(key)
            if value is not None:
                counters[key[len(prefix):]] = int(value)
        return counters

    async def get_stats(self) -> Dict[str, Any]:
        by_state = await self._counters("state")
        return {
            "enqueued": int(await self._store.get(f"{PREFIX}enqueued") or 0),
            "started": int(await self._store.get(f"{PREFIX}started") or 0),
            "retried": int(await self._store.get(f"{PREFIX}retried") or 0),
            "by_state": by_state,
            "by_queue": await self._counters("queue"),
            "by_worker": await self._counters("worker"),
            "total": sum(by_state.get(state.value, 0) for state in TERMINAL_JOB_STATES),
        }

    async def get_error_stats(self, limit: int = 20) -> List[Dict[str, Any]]:
        errors = [
            value
            for key in await self._store.keys(f"{PREFIX}error:")
            if (value := await self._store.get(key)) is not None
        ]
        errors.sort(key=lambda e: e["count"], reverse=True)
        return errors[:limit]

    async def get_worker_performance(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = []
        for key in await self._store.keys(f"{PREFIX}duration:"):
            agg = await self._store.get(key)
            if not agg or not agg["count"]:
                continue
            rows.append(
                {
                    "worker": agg["worker"],
                    "count": agg["count"],
                    "avg_duration_ms": agg["total_ms"] / agg["count"],
                    "min_duration_ms": agg["min_ms"],
                    "max_duration_ms": agg["max_ms"],
                }
            )
        rows.sort(key=lambda r: r["count"], reverse=True)
        return rows[:limit]

    async def reset_stats(self) -> None:
        async with self._coordinator.lock:
            for key in await self._store.keys(PREFIX):
                await self._store.delete(key)
