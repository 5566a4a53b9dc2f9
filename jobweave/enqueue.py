"""Validation and submission of jobs to the job queue."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .config import QueueConfig
from .constants import CALLBACK_ARG, DEFAULT_POLL_INTERVAL, DEFAULT_WAIT_TIMEOUT
from .contracts import Job, JobOptions, JobSpec, JobState, Result
from .errors import JobValidationError
from .queue import BaseJobQueue
from .registry import WorkerRegistry

logger = logging.getLogger(__name__)

JobRequest = Union[
    JobSpec,
    Tuple[str, Dict[str, Any]],
    Tuple[str, Dict[str, Any], Dict[str, Any]],
]


class JobEnqueuer:
    """Turns (worker, args, options) into validated job-queue insertions."""

    def __init__(
        self,
        queue: BaseJobQueue,
        registry: WorkerRegistry,
        config: Optional[QueueConfig] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_enqueued: Optional[Callable[[Job], Awaitable[None]]] = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.config = config or QueueConfig()
        self.poll_interval = poll_interval
        self._on_enqueued = on_enqueued

    # ------------------------------------------------------------------
    # Building
    def build(
        self, worker: str, args: Optional[Dict[str, Any]] = None, options: Optional[Dict[str, Any]] = None
    ) -> Tuple[JobSpec, JobOptions]:
        """Validate a job request without submitting it."""
        descriptor = self.registry.resolve(worker)
        if args is not None and not isinstance(args, dict):
            raise JobValidationError("invalid_args", "Job args must be a mapping")

        merged: Dict[str, Any] = {
            "queue": self.config.default_queue,
            "priority": self.config.default_priority,
            "max_attempts": self.config.default_max_attempts,
        }
        merged.update(descriptor.defaults())
        merged.update({k: v for k, v in (options or {}).items() if v is not None})

        try:
            job_options = JobOptions.model_validate(merged)
        except PydanticValidationError as e:
            raise JobValidationError(
                "invalid_options",
                f"Invalid options for worker '{worker}': {e.error_count()} error(s)",
                detail=e.errors(include_url=False),
            ) from e
        return JobSpec(worker=worker, args=dict(args or {})), job_options

    def _build_request(self, request: JobRequest) -> Tuple[JobSpec, JobOptions]:
        if isinstance(request, JobSpec):
            return self.build(request.worker, request.args)
        if isinstance(request, tuple) and len(request) == 2:
            return self.build(request[0], request[1])
        if isinstance(request, tuple) and len(request) == 3:
            return self.build(request[0], request[1], request[2])
        raise JobValidationError("invalid_job", f"Unsupported job request: {request!r}")

    async def _track(self, jobs: Iterable[Job]) -> None:
        if self._on_enqueued is None:
            return
        for job in jobs:
            try:
                await self._on_enqueued(job)
            except Exception:
                logger.exception(f"Enqueue hook failed for job {job.id}")

    # ------------------------------------------------------------------
    # Submission
    async def enqueue(self, worker: str, args: Optional[Dict[str, Any]] = None, **options: Any) -> Job:
        """Validate and submit a single job.

        Raises:
            JobValidationError: If the worker is unknown or options are invalid.
            JobQueueError: Propagated unchanged from the job queue.
        """
        spec, job_options = self.build(worker, args, options)
        job = await self.queue.enqueue(spec, job_options)
        logger.debug(f"Job enqueued: {job.worker} id={job.id} queue={job.queue}")
        await self._track([job])
        return job

    async def enqueue_many(self, jobs: Iterable[JobRequest]) -> List[Job]:
        """Submit several jobs atomically: all are validated before any is inserted."""
        items = [self._build_request(request) for request in jobs]
        if not items:
            return []
        inserted = await self.queue.enqueue_all(items)
        logger.debug(f"Enqueued {len(inserted)} jobs atomically")
        await self._track(inserted)
        return inserted

    async def schedule(
        self, worker: str, args: Optional[Dict[str, Any]], scheduled_at: datetime, **options: Any
    ) -> Job:
        """Enqueue a job to run at a specific time."""
        options.pop("delay", None)
        return await self.enqueue(worker, args, scheduled_at=scheduled_at, **options)

    async def schedule_in(
        self, worker: str, args: Optional[Dict[str, Any]], delay_seconds: float, **options: Any
    ) -> Job:
        """Enqueue a job to run after a delay."""
        options.pop("scheduled_at", None)
        return await self.enqueue(worker, args, delay=delay_seconds, **options)

    async def enqueue_and_wait(
        self,
        worker: str,
        args: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
        **options: Any,
    ) -> Result:
        """Enqueue a job and poll until it reaches a terminal state or ``timeout`` elapses."""
        job = await self.enqueue(worker, args, **options)
        return await self.wait_for_job(job.id, timeout)

    async def wait_for_job(self, job_id: int, timeout: float) -> Result:
        loop = asyncio.get_event_loop()
        deadline = loop.time() + timeout

        while True:
            job = await self.queue.get_job(job_id)
            if job is None:
                return Result.failure("not_found", {"job_id": job_id})
            if job.state == JobState.COMPLETED:
                return Result.success(job.result)
            if job.state == JobState.DISCARDED:
                return Result.failure("discarded", {"job_id": job_id, "errors": job.errors})
            if job.state == JobState.CANCELLED:
                return Result.failure("cancelled", {"job_id": job_id})

            remaining = deadline - loop.time()
            if remaining <= 0:
                return Result.failure("timeout", {"job_id": job_id, "timeout": timeout})
            await asyncio.sleep(min(self.poll_interval, remaining))

    # ------------------------------------------------------------------
    # Callbacks
    async def dispatch_callback(
        self, callback: Optional[JobSpec], summary: Dict[str, Any]
    ) -> Optional[Job]:
        """Enqueue a completion/failure callback; errors are logged, never raised."""
        if callback is None:
            return None
        try:
            args = {**callback.args, CALLBACK_ARG: summary}
            return await self.enqueue(callback.worker, args)
        except Exception:
            logger.exception(f"Callback dispatch to {callback.worker} failed")
            return None
