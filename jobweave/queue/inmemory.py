"""In-memory job queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..contracts import Job, JobOptions, JobSpec, JobState, LifecycleEvent, utcnow
from ..errors import NotFoundError
from .base import (
    BaseJobQueue,
    build_job,
    check_unique,
    fetch_order,
    is_fetchable,
    record_failure,
    reset_for_retry,
)

logger = logging.getLogger(__name__)


class InMemoryJobQueue(BaseJobQueue):
    """Job table held in a dict, guarded by an asyncio lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__()
        self._jobs: Dict[int, Job] = {}
        self._ids = itertools.count(1)
        self._paused: Set[str] = set()
        self._lock = asyncio.Lock()
        self._clock = clock

    # ------------------------------------------------------------------
    # Insertion
    async def enqueue(self, spec: JobSpec, options: JobOptions) -> Job:
        return (await self.enqueue_all([(spec, options)]))[0]

    async def enqueue_all(self, items: Sequence[Tuple[JobSpec, JobOptions]]) -> List[Job]:
        async with self._lock:
            now = self._clock()
            check_unique(self._jobs.values(), items, now)
            jobs = [build_job(next(self._ids), spec, options, now) for spec, options in items]
            for job in jobs:
                self._jobs[job.id] = job
        for job in jobs:
            logger.debug(f"Inserted job {job.id} ({job.worker}) on queue {job.queue}")
        return [job.model_copy(deep=True) for job in jobs]

    # ------------------------------------------------------------------
    # Queries and management
    async def get_job(self, job_id: int) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self, queue: Optional[str] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        return [
            job.model_copy(deep=True)
            for job in sorted(self._jobs.values(), key=lambda j: j.id)
            if (queue is None or job.queue == queue)
            and (state is None or job.state == state)
        ]

    async def cancel_job(self, job_id: int) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state.is_terminal:
                return False
            job.state = JobState.CANCELLED
            job.cancelled_at = self._clock()
            snapshot = job.model_copy(deep=True)
        logger.debug(f"Cancelled job {job_id}")
        await self.emit(LifecycleEvent(event="exception", job=snapshot, error="cancelled"))
        return True

    async def retry_job(self, job_id: int) -> Job:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("job", job_id)
            if reset_for_retry(job):
                logger.info(f"Job {job_id} made available for retry")
            return job.model_copy(deep=True)

    async def pause_queue(self, queue: str) -> None:
        self._paused.add(queue)

    async def resume_queue(self, queue: str) -> None:
        self._paused.discard(queue)

    async def paused_queues(self) -> Set[str]:
        return set(self._paused)

    # ------------------------------------------------------------------
    # Execution hooks
    async def fetch_available(
        self,
        queues: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Claim runnable jobs, marking them executing."""
        wanted = set(queues) if queues is not None else None
        excluded = set(exclude) | self._paused
        async with self._lock:
            now = self._clock()
            ready = [
                job
                for job in self._jobs.values()
                if is_fetchable(job, now)
                and (wanted is None or job.queue in wanted)
                and job.queue not in excluded
            ]
            ready.sort(key=fetch_order)
            if limit is not None:
                ready = ready[:limit]
            for job in ready:
                job.state = JobState.EXECUTING
                job.attempt += 1
                job.attempted_at = now
            return [job.model_copy(deep=True) for job in ready]

    async def complete(self, job_id: int, result=None, duration_ms: float = 0.0) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.EXECUTING:
                return
            job.state = JobState.COMPLETED
            job.completed_at = self._clock()
            job.result = result
            snapshot = job.model_copy(deep=True)
        await self.emit(
            LifecycleEvent(
                event="stop",
                job=snapshot,
                result=result,
                measurements={"duration_ms": duration_ms},
            )
        )

    async def fail(self, job_id: int, error: str, backoff: float = 0.0, duration_ms: float = 0.0) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.EXECUTING:
                return
            record_failure(job, error, backoff, self._clock())
            snapshot = job.model_copy(deep=True)
        await self.emit(
            LifecycleEvent(
                event="exception",
                job=snapshot,
                error=error,
                measurements={"duration_ms": duration_ms},
            )
        )
