"""Job queue persisted in the key-value store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, Set, Tuple

from ..constants import DEFAULT_JOB_TTL
from ..contracts import Job, JobOptions, JobSpec, JobState, LifecycleEvent, utcnow
from ..errors import NotFoundError
from ..persistence import KeyValueStore
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

JOB_NAMESPACE = "job"
JOB_SEQUENCE_KEY = "job_seq"
CLAIM_NAMESPACE = "job_claim"
PAUSED_NAMESPACE = "queue_paused"


class StoreJobQueue(BaseJobQueue):
    """Jobs kept as JSON records in a :class:`KeyValueStore`.

    Every process pointed at the same SQLite file or Redis database sees the
    same jobs, so a CLI can list dead letters or cancel the jobs of a
    workflow that a worker process is running. Ids come from an atomic
    counter. An attempt is claimed by atomically incrementing a key named
    after the job and attempt number; only the caller reading ``1`` runs it.

    Terminal jobs expire after ``job_ttl`` seconds. Other writes are
    last-writer-wins across processes; the asyncio lock only orders the
    callers of one process.
    """

    def __init__(
        self,
        store: KeyValueStore,
        job_ttl: float = DEFAULT_JOB_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__()
        self.store = store
        self._job_ttl = job_ttl
        self._lock = asyncio.Lock()
        self._clock = clock

    @staticmethod
    def _key(job_id: int) -> str:
        return f"{JOB_NAMESPACE}:{job_id}"

    async def _load(self, job_id: int) -> Optional[Job]:
        data = await self.store.get(self._key(job_id))
        return Job.model_validate(data) if data is not None else None

    async def _save(self, job: Job) -> None:
        ttl = self._job_ttl if job.state.is_terminal else None
        await self.store.put(self._key(job.id), job.model_dump(mode="json"), ttl=ttl)

    async def _all(self) -> List[Job]:
        jobs: List[Job] = []
        for key in await self.store.keys(f"{JOB_NAMESPACE}:"):
            data = await self.store.get(key)
            if data is not None:
                jobs.append(Job.model_validate(data))
        jobs.sort(key=lambda j: j.id)
        return jobs

    # ------------------------------------------------------------------
    # Insertion
    async def enqueue(self, spec: JobSpec, options: JobOptions) -> Job:
        return (await self.enqueue_all([(spec, options)]))[0]

    async def enqueue_all(self, items: Sequence[Tuple[JobSpec, JobOptions]]) -> List[Job]:
        async with self._lock:
            now = self._clock()
            if any(options.unique is not None for _, options in items):
                check_unique(await self._all(), items, now)
            jobs = [
                build_job(await self.store.increment(JOB_SEQUENCE_KEY), spec, options, now)
                for spec, options in items
            ]
            for job in jobs:
                await self._save(job)
        for job in jobs:
            logger.debug(f"Inserted job {job.id} ({job.worker}) on queue {job.queue}")
        return jobs

    # ------------------------------------------------------------------
    # Queries and management
    async def get_job(self, job_id: int) -> Optional[Job]:
        return await self._load(job_id)

    async def list_jobs(
        self, queue: Optional[str] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        return [
            job
            for job in await self._all()
            if (queue is None or job.queue == queue)
            and (state is None or job.state == state)
        ]

    async def cancel_job(self, job_id: int) -> bool:
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.state.is_terminal:
                return False
            job.state = JobState.CANCELLED
            job.cancelled_at = self._clock()
            await self._save(job)
        logger.debug(f"Cancelled job {job_id}")
        await self.emit(LifecycleEvent(event="exception", job=job, error="cancelled"))
        return True

    async def retry_job(self, job_id: int) -> Job:
        async with self._lock:
            job = await self._load(job_id)
            if job is None:
                raise NotFoundError("job", job_id)
            if reset_for_retry(job):
                await self._save(job)
                logger.info(f"Job {job_id} made available for retry")
            return job

    async def pause_queue(self, queue: str) -> None:
        await self.store.put(f"{PAUSED_NAMESPACE}:{queue}", True)

    async def resume_queue(self, queue: str) -> None:
        await self.store.delete(f"{PAUSED_NAMESPACE}:{queue}")

    async def paused_queues(self) -> Set[str]:
        prefix = f"{PAUSED_NAMESPACE}:"
        return {key[len(prefix):] for key in await self.store.keys(prefix)}

    # ------------------------------------------------------------------
    # Execution hooks
    async def _claim(self, job: Job, now: datetime) -> Optional[Job]:
        attempt = job.attempt + 1
        claim_key = f"{CLAIM_NAMESPACE}:{job.id}:{attempt}"
        if await self.store.increment(claim_key, ttl=self._job_ttl) != 1:
            return None
        # Re-read: the job may have changed since it was listed.
        current = await self._load(job.id)
        if current is None or current.attempt + 1 != attempt or not is_fetchable(current, now):
            return None
        current.state = JobState.EXECUTING
        current.attempt = attempt
        current.attempted_at = now
        await self._save(current)
        return current

    async def fetch_available(
        self,
        queues: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Claim runnable jobs, marking them executing."""
        wanted = set(queues) if queues is not None else None
        excluded = set(exclude) | await self.paused_queues()
        async with self._lock:
            now = self._clock()
            ready = [
                job
                for job in await self._all()
                if is_fetchable(job, now)
                and (wanted is None or job.queue in wanted)
                and job.queue not in excluded
            ]
            ready.sort(key=fetch_order)
            claimed: List[Job] = []
            for job in ready:
                if limit is not None and len(claimed) >= limit:
                    break
                job = await self._claim(job, now)
                if job is not None:
                    claimed.append(job)
            return claimed

    async def complete(self, job_id: int, result: Any = None, duration_ms: float = 0.0) -> None:
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.state != JobState.EXECUTING:
                return
            job.state = JobState.COMPLETED
            job.completed_at = self._clock()
            job.result = result
            await self._save(job)
        await self.emit(
            LifecycleEvent(
                event="stop",
                job=job,
                result=result,
                measurements={"duration_ms": duration_ms},
            )
        )

    async def fail(self, job_id: int, error: str, backoff: float = 0.0, duration_ms: float = 0.0) -> None:
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.state != JobState.EXECUTING:
                return
            record_failure(job, error, backoff, self._clock())
            await self._save(job)
        await self.emit(
            LifecycleEvent(
                event="exception",
                job=job,
                error=error,
                measurements={"duration_ms": duration_ms},
            )
        )
