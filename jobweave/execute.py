"""Job execution engine polling a job queue."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Iterable, Optional

from .constants import DEAD_LETTER_QUEUE
from .contracts import Job
from .errors import UnknownWorkerError
from .queue.base import BaseJobQueue
from .registry import REGISTRY, WorkerRegistry
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs jobs claimed from a :class:`BaseJobQueue` through registered handlers.

    Handlers receive ``(args, job)``. A returned value becomes the job
    result; a raised exception fails the attempt and the queue decides
    whether to retry or discard.
    """

    def __init__(
        self,
        queue: BaseJobQueue,
        registry: Optional[WorkerRegistry] = None,
        queues: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (DEAD_LETTER_QUEUE,),
        concurrency: int = 10,
        backoff_base: float = 1.5,
        max_backoff: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._queue = queue
        self._registry = registry or REGISTRY
        self._queues = list(queues) if queues is not None else None
        self._exclude = list(exclude)
        self._semaphore = asyncio.Semaphore(concurrency)
        self._concurrency = concurrency
        self._backoff_base = backoff_base
        self._max_backoff = max_backoff
        self._poll_interval = poll_interval
        self.executed_jobs: list[int] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll the queue and execute jobs until ``lifespan`` seconds elapse."""
        loop = asyncio.get_event_loop()
        start_time = loop.time() if lifespan else None
        in_flight: set[asyncio.Task] = set()

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            free = self._concurrency - len(in_flight)
            jobs = await self._fetch(limit=free) if free > 0 else []
            for job in jobs:
                task = asyncio.create_task(self._run(job))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)

            if not jobs:
                await asyncio.sleep(self._poll_interval)

        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def drain(self, max_rounds: int = 100) -> int:
        """Run every currently runnable job, including jobs they enqueue.

        Returns the number of executed jobs. Jobs deferred into the future
        (scheduled or waiting for a retry backoff) are left alone.
        """
        executed = 0
        for _ in range(max_rounds):
            jobs = await self._fetch()
            if not jobs:
                break
            await asyncio.gather(*(self._run(job) for job in jobs))
            executed += len(jobs)
        return executed

    async def _fetch(self, limit: Optional[int] = None) -> list[Job]:
        return await self._queue.fetch_available(
            queues=self._queues, exclude=self._exclude, limit=limit
        )

    async def _run(self, job: Job) -> None:
        async with self._semaphore:
            await self._queue.start(job.id)
            started = time.monotonic()
            try:
                result = await self._invoke(job)
            except Exception as e:
                duration_ms = (time.monotonic() - started) * 1000
                error = f"{type(e).__name__}: {e}"
                logger.error(f"Job {job.id} ({job.worker}) attempt {job.attempt} failed: {error}")
                await self._queue.fail(
                    job.id,
                    error,
                    backoff=compute_backoff(
                        job.attempt, base=self._backoff_base, max_delay=self._max_backoff
                    ),
                    duration_ms=duration_ms,
                )
            else:
                duration_ms = (time.monotonic() - started) * 1000
                logger.debug(f"Job {job.id} ({job.worker}) completed in {duration_ms:.1f}ms")
                await self._queue.complete(job.id, result, duration_ms=duration_ms)
            self.executed_jobs.append(job.id)

    async def _invoke(self, job: Job):
        try:
            descriptor = self._registry.resolve(job.worker)
        except UnknownWorkerError as e:
            raise RuntimeError(f"No handler registered for worker '{job.worker}'") from e

        handler = descriptor.handler
        if inspect.iscoroutinefunction(handler):
            call = handler(job.args, job)
        else:
            call = asyncio.to_thread(handler, job.args, job)

        if descriptor.timeout:
            return await asyncio.wait_for(call, descriptor.timeout)
        return await call
