"""Base interface of the job queue collaborator."""

from __future__ import annotations

import abc
import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set, Tuple

from ..contracts import Job, JobOptions, JobSpec, JobState, LifecycleEvent, unique_key_for
from ..errors import UniqueViolationError

logger = logging.getLogger(__name__)

LifecycleListener = Callable[[LifecycleEvent], Awaitable[None]]

FETCHABLE_STATES = (JobState.AVAILABLE, JobState.SCHEDULED, JobState.RETRYABLE)


def build_job(job_id: int, spec: JobSpec, options: JobOptions, now: datetime) -> Job:
    """Create the stored form of a newly inserted job."""
    run_at = options.run_at(now)
    deferred = run_at is not None and run_at > now
    return Job(
        id=job_id,
        worker=spec.worker,
        args=copy.deepcopy(spec.args),
        queue=options.queue,
        priority=options.priority,
        max_attempts=options.max_attempts,
        state=JobState.SCHEDULED if deferred else JobState.AVAILABLE,
        scheduled_at=run_at,
        unique_key=unique_key_for(spec, options),
        tags=options.tags,
        meta=copy.deepcopy(options.meta),
        inserted_at=now,
    )


def find_conflict(jobs: Iterable[Job], unique_key: str, period: float, now: datetime) -> Optional[Job]:
    """Return a live job holding ``unique_key`` inserted within ``period`` seconds."""
    for job in jobs:
        if job.unique_key != unique_key:
            continue
        if job.state in (JobState.CANCELLED, JobState.DISCARDED):
            continue
        if now - job.inserted_at <= timedelta(seconds=period):
            return job
    return None


def check_unique(
    jobs: Iterable[Job], items: Iterable[Tuple[JobSpec, JobOptions]], now: datetime
) -> None:
    """Raise :class:`UniqueViolationError` if any item clashes with ``jobs`` or another item."""
    jobs = list(jobs)
    seen: Set[str] = set()
    for spec, options in items:
        key = unique_key_for(spec, options)
        if key is None:
            continue
        existing = find_conflict(jobs, key, options.unique.period, now)
        if existing is not None:
            raise UniqueViolationError(key, existing.id)
        if key in seen:
            raise UniqueViolationError(key, -1)
        seen.add(key)


def is_fetchable(job: Job, now: datetime) -> bool:
    return job.state in FETCHABLE_STATES and (job.scheduled_at is None or job.scheduled_at <= now)


def fetch_order(job: Job):
    return (job.priority, job.scheduled_at or job.inserted_at, job.id)


def record_failure(job: Job, error: str, backoff: float, now: datetime) -> None:
    """Append the error and move the job to RETRYABLE, or DISCARDED when out of attempts."""
    job.errors.append({"attempt": job.attempt, "error": error, "at": now.isoformat()})
    if job.attempt >= job.max_attempts:
        job.state = JobState.DISCARDED
        job.discarded_at = now
    else:
        job.state = JobState.RETRYABLE
        job.scheduled_at = now + timedelta(seconds=backoff)


def reset_for_retry(job: Job) -> bool:
    """Make a failed or cancelled job available again; returns whether it changed."""
    if job.state not in (JobState.DISCARDED, JobState.CANCELLED, JobState.RETRYABLE):
        return False
    if job.attempt >= job.max_attempts:
        job.max_attempts = job.attempt + 1
    job.state = JobState.AVAILABLE
    job.scheduled_at = None
    job.discarded_at = None
    job.cancelled_at = None
    return True


class BaseJobQueue(metaclass=abc.ABCMeta):
    """Abstract job queue: stores jobs, owns their lifecycle and retries.

    Implementations emit a :class:`LifecycleEvent` to every registered
    listener when a job starts, stops or raises.
    """

    def __init__(self) -> None:
        self._listeners: List[LifecycleListener] = []

    def add_listener(self, listener: LifecycleListener) -> None:
        """Register an async callable receiving lifecycle events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: LifecycleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, event: LifecycleEvent) -> None:
        """Deliver ``event`` to listeners; a failing listener never affects others."""
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    f"Lifecycle listener failed for job {event.job.id} ({event.event})"
                )

    @abc.abstractmethod
    async def enqueue(self, spec: JobSpec, options: JobOptions) -> Job:
        """Insert a single job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def enqueue_all(self, items: Sequence[Tuple[JobSpec, JobOptions]]) -> List[Job]:
        """Insert all jobs or none of them."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_job(self, job_id: int) -> Optional[Job]:
        """Return a snapshot of the job, or ``None`` if unknown."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_job(self, job_id: int) -> bool:
        """Cancel a non-terminal job and emit a final ``exception`` event.

        Returns ``False`` if nothing changed. Must not be awaited while
        holding the coordinator lock, since listeners take it.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def retry_job(self, job_id: int) -> Job:
        """Make a failed or cancelled job available again."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_jobs(
        self, queue: Optional[str] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        """Return jobs filtered by queue and state."""
        raise NotImplementedError

    async def pause_queue(self, queue: str) -> None:
        """Stop handing out jobs from ``queue`` (no-op by default)."""
        pass

    async def resume_queue(self, queue: str) -> None:
        """Resume a paused queue (no-op by default)."""
        pass

    async def paused_queues(self) -> Set[str]:
        return set()

    # ------------------------------------------------------------------
    # Execution hooks used by JobExecutor
    @abc.abstractmethod
    async def fetch_available(
        self,
        queues: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Claim runnable jobs, marking them executing and counting the attempt."""
        raise NotImplementedError

    async def start(self, job_id: int) -> None:
        """Emit the ``start`` event of a claimed job."""
        job = await self.get_job(job_id)
        if job is not None:
            await self.emit(LifecycleEvent(event="start", job=job))

    @abc.abstractmethod
    async def complete(self, job_id: int, result: Any = None, duration_ms: float = 0.0) -> None:
        """Mark an executing job completed and emit ``stop``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fail(
        self, job_id: int, error: str, backoff: float = 0.0, duration_ms: float = 0.0
    ) -> None:
        """Record a failed attempt, schedule a retry or discard, and emit ``exception``."""
        raise NotImplementedError
