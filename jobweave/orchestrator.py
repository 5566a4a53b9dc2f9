"""Public entry point wiring the orchestration components together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .batch import BatchProcessor
from .config import JobweaveConfig, load_config
from .constants import DEAD_LETTER_WORKER, DEFAULT_WAIT_TIMEOUT
from .contracts import BatchHandle, Job, JobSpec, JobState, LifecycleEvent, Result
from .coordinator import Coordinator
from .dead_letter import DeadLetterHandler, hold_dead_letter
from .enqueue import JobEnqueuer, JobRequest
from .errors import NotFoundError
from .execute import JobExecutor
from .models import Batch, Progress, RecurringJob, WorkflowSpec, WorkflowStatus
from .persistence import InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore, get_store
from .pipeline import PipelineExecutor, PipelineJob
from .progress import ProgressSubscription, ProgressTracker
from .queue import BaseJobQueue, InMemoryJobQueue, get_queue
from .recurring import RecurringScheduler
from .registry import REGISTRY, WorkerRegistry
from .stats import StatsCollector
from .transports import BaseTransport, InMemoryTransport, get_transport
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)


class Orchestrator:
    """Job orchestration on top of a job queue.

    Owns the coordinator and the components that share it, and listens to
    the queue's lifecycle events to drive workflows, progress, statistics
    and dead-lettering.

    Example:
        orchestrator = Orchestrator(registry=registry)
        await orchestrator.start_workflow({"steps": [{"worker": "fetch"}]})
        await orchestrator.executor().drain()
    """

    def __init__(
        self,
        queue: Optional[BaseJobQueue] = None,
        store: Optional[KeyValueStore] = None,
        transport: Optional[BaseTransport] = None,
        registry: Optional[WorkerRegistry] = None,
        config: Optional[JobweaveConfig] = None,
    ) -> None:
        self.config = config or JobweaveConfig()
        self.queue = queue if queue is not None else InMemoryJobQueue()
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.transport = transport if transport is not None else InMemoryTransport()
        self.registry = registry if registry is not None else REGISTRY

        settings = self.config.orchestrator
        if not self.registry.has_worker(DEAD_LETTER_WORKER):
            self.registry.register(
                DEAD_LETTER_WORKER,
                hold_dead_letter,
                queue=settings.dead_letter_queue,
                max_attempts=1,
                description="Holds jobs that exhausted their retries",
            )

        self.coordinator = Coordinator(self.store, settings)
        self.stats = StatsCollector(self.coordinator)
        self.enqueuer = JobEnqueuer(
            self.queue,
            self.registry,
            config=self.config.queue,
            poll_interval=settings.poll_interval,
            on_enqueued=self.stats.track_enqueue,
        )
        self.progress = ProgressTracker(self.coordinator, self.transport)
        self.workflows = WorkflowEngine(self.coordinator, self.enqueuer, self.registry)
        self.pipelines = PipelineExecutor(self.coordinator, self.enqueuer)
        self.batches = BatchProcessor(self.coordinator, self.enqueuer)
        self.dead_letter = DeadLetterHandler(self.enqueuer, settings.dead_letter_queue)
        self.recurring = RecurringScheduler(self.coordinator, self.enqueuer)

        self.queue.add_listener(self._on_lifecycle)

    @classmethod
    def from_config(
        cls,
        path: Optional[str] = None,
        queue: Optional[BaseJobQueue] = None,
        registry: Optional[WorkerRegistry] = None,
    ) -> "Orchestrator":
        """Build an orchestrator with the store, queue and transport named in the config file."""
        config = load_config(path)
        store = get_store(config=config)
        return cls(
            queue=queue if queue is not None else get_queue(store, config=config),
            store=store,
            transport=get_transport(config=config),
            registry=registry,
            config=config,
        )

    async def connect(self) -> None:
        await self.transport.connect()

    async def disconnect(self) -> None:
        await self.transport.disconnect()
        if isinstance(self.store, SQLiteKeyValueStore):
            self.store.close()
        elif hasattr(self.store, "disconnect"):
            await self.store.disconnect()

    def executor(self, **kwargs: Any) -> JobExecutor:
        """Create a :class:`JobExecutor` running jobs of this orchestrator's queue."""
        kwargs.setdefault("concurrency", self.config.queue.concurrency)
        kwargs.setdefault("backoff_base", self.config.queue.backoff_base)
        kwargs.setdefault("max_backoff", self.config.queue.max_backoff)
        kwargs.setdefault("poll_interval", self.config.orchestrator.poll_interval)
        kwargs.setdefault("exclude", (self.config.orchestrator.dead_letter_queue,))
        return JobExecutor(self.queue, registry=self.registry, **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle routing
    async def _on_lifecycle(self, event: LifecycleEvent) -> None:
        job = event.job
        await self.stats.handle_event(event)

        if event.event == "start":
            await self.progress.ensure_started(job.id)
        elif event.event == "stop":
            await self.progress.update_progress(job.id, 100, "Completed")

        workflow_id = job.meta.get("workflow_id")
        step_id = job.meta.get("step_id")
        if workflow_id and step_id:
            if event.event == "stop":
                await self.workflows.step_completed(workflow_id, step_id, event.result)
            elif event.is_final_failure:
                await self.workflows.step_failed(workflow_id, step_id, event.error)

        settings = self.config.orchestrator
        if (
            event.event == "exception"
            and job.state == JobState.DISCARDED
            and settings.auto_dead_letter
            and job.queue != settings.dead_letter_queue
        ):
            await self.dead_letter.move_to_dead_letter(job, event.error or job.last_error)

    # ------------------------------------------------------------------
    # Enqueueing
    async def enqueue(self, worker: str, args: Optional[Dict[str, Any]] = None, **options: Any) -> Job:
        return await self.enqueuer.enqueue(worker, args, **options)

    async def enqueue_many(self, jobs: Iterable[JobRequest]) -> List[Job]:
        return await self.enqueuer.enqueue_many(jobs)

    async def enqueue_and_wait(
        self,
        worker: str,
        args: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
        **options: Any,
    ) -> Result:
        return await self.enqueuer.enqueue_and_wait(worker, args, timeout=timeout, **options)

    async def schedule(
        self, worker: str, args: Optional[Dict[str, Any]], scheduled_at: datetime, **options: Any
    ) -> Job:
        return await self.enqueuer.schedule(worker, args, scheduled_at, **options)

    async def schedule_in(
        self, worker: str, args: Optional[Dict[str, Any]], delay_seconds: float, **options: Any
    ) -> Job:
        return await self.enqueuer.schedule_in(worker, args, delay_seconds, **options)

    # ------------------------------------------------------------------
    # Workflows
    async def start_workflow(self, spec: Union[WorkflowSpec, Dict[str, Any]]) -> str:
        return await self.workflows.start_workflow(spec)

    async def get_workflow_status(self, workflow_id: str) -> Result:
        return await self.workflows.get_workflow_status(workflow_id)

    async def pause_workflow(self, workflow_id: str) -> None:
        await self.workflows.pause_workflow(workflow_id)

    async def resume_workflow(self, workflow_id: str) -> None:
        await self.workflows.resume_workflow(workflow_id)

    async def cancel_workflow(self, workflow_id: str) -> None:
        await self.workflows.cancel_workflow(workflow_id)

    async def list_workflows(self) -> List[WorkflowStatus]:
        return await self.workflows.list_workflows()

    # ------------------------------------------------------------------
    # Pipelines
    async def pipeline(
        self,
        jobs: Iterable[PipelineJob],
        on_complete: Optional[JobSpec] = None,
        on_failure: Optional[JobSpec] = None,
        **options: Any,
    ) -> str:
        return await self.pipelines.pipeline(jobs, on_complete=on_complete, on_failure=on_failure, **options)

    async def continue_pipeline(self, args: Dict[str, Any], result: Any = None) -> Optional[Job]:
        return await self.pipelines.continue_pipeline(args, result)

    async def fail_pipeline(self, args: Dict[str, Any], reason: Any) -> None:
        await self.pipelines.fail_pipeline(args, reason)

    async def pipeline_status(self, pipeline_id: str) -> Result:
        return await self.pipelines.pipeline_status(pipeline_id)

    async def cancel_pipeline(self, pipeline_id: str) -> None:
        await self.pipelines.cancel_pipeline(pipeline_id)

    # ------------------------------------------------------------------
    # Batches
    async def batch(
        self,
        items: Iterable[Any],
        worker: str,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        on_complete: Optional[JobSpec] = None,
        on_failure: Optional[JobSpec] = None,
        **options: Any,
    ) -> BatchHandle:
        return await self.batches.batch(
            items,
            worker,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            on_complete=on_complete,
            on_failure=on_failure,
            **options,
        )

    async def report_batch_progress(self, args: Dict[str, Any], status: str) -> Optional[Batch]:
        return await self.batches.report_batch_progress(args, status)

    async def batch_status(self, batch_id: str) -> Result:
        return await self.batches.batch_status(batch_id)

    async def cancel_batch(self, batch_id: str) -> None:
        await self.batches.cancel_batch(batch_id)

    # ------------------------------------------------------------------
    # Progress
    async def update_progress(self, job_id: int, percentage: float, message: str = "") -> Progress:
        return await self.progress.update_progress(job_id, percentage, message)

    async def get_progress(self, job_id: int) -> Result:
        return await self.progress.get_progress(job_id)

    async def subscribe_to_progress(
        self, job_id: int, lifespan: Optional[float] = None
    ) -> ProgressSubscription:
        return await self.progress.subscribe_to_progress(job_id, lifespan=lifespan)

    # ------------------------------------------------------------------
    # Dead letters
    async def move_to_dead_letter(self, job: Union[Job, int], reason: Any) -> Job:
        if not isinstance(job, Job):
            job = await self._require_job(job)
        return await self.dead_letter.move_to_dead_letter(job, reason)

    async def retry_dead_letter(self, job_id: int) -> Job:
        return await self.dead_letter.retry_dead_letter(job_id)

    async def list_dead_letters(self) -> List[Job]:
        return await self.dead_letter.list_dead_letters()

    # ------------------------------------------------------------------
    # Stats
    async def get_stats(self) -> Dict[str, Any]:
        return await self.stats.get_stats()

    async def get_error_stats(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.stats.get_error_stats(limit)

    async def get_worker_performance(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.stats.get_worker_performance(limit)

    async def reset_stats(self) -> None:
        await self.stats.reset_stats()

    # ------------------------------------------------------------------
    # Jobs
    async def _require_job(self, job_id: int) -> Job:
        job = await self.queue.get_job(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    async def get_job(self, job_id: int) -> Result:
        job = await self.queue.get_job(job_id)
        if job is None:
            return Result.failure("not_found", {"job_id": job_id})
        return Result.success(job)

    async def cancel_job(self, job_id: int) -> bool:
        return await self.queue.cancel_job(job_id)

    async def retry_job(self, job_id: int) -> Job:
        return await self.queue.retry_job(job_id)

    async def retry_failed_jobs(
        self,
        worker: Optional[str] = None,
        queue: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        """Make discarded jobs available again and return how many were retried.

        Only jobs matching ``worker`` and ``queue``, and discarded at or after
        ``since``, are retried when those filters are given.
        """
        retried = 0
        for job in await self.queue.list_jobs(queue=queue, state=JobState.DISCARDED):
            if worker is not None and job.worker != worker:
                continue
            if since is not None and (job.discarded_at is None or job.discarded_at < since):
                continue
            await self.queue.retry_job(job.id)
            retried += 1
        logger.info(f"Retried {retried} discarded jobs")
        return retried

    async def pause_queue(self, queue: str) -> None:
        """Stop executors from fetching jobs of ``queue``."""
        await self.queue.pause_queue(queue)
        logger.info(f"Paused queue {queue}")

    async def resume_queue(self, queue: str) -> None:
        await self.queue.resume_queue(queue)
        logger.info(f"Resumed queue {queue}")

    # ------------------------------------------------------------------
    # Recurring jobs
    async def schedule_recurring(
        self,
        name: str,
        worker: str,
        args: Optional[Dict[str, Any]],
        cron: str,
        **options: Any,
    ) -> RecurringJob:
        return await self.recurring.schedule_recurring(name, worker, args, cron, **options)

    async def cancel_recurring(self, name: str) -> None:
        await self.recurring.cancel_recurring(name)

    async def list_recurring(self) -> List[RecurringJob]:
        return await self.recurring.list_recurring()

    async def enqueue_due_recurring(self, now: Optional[datetime] = None) -> List[Job]:
        return await self.recurring.enqueue_due(now)

    # ------------------------------------------------------------------
    # Maintenance
    async def sweep(self) -> Dict[str, Any]:
        """Purge expired records and fail workflows past their timeout."""
        purged = await self.store.purge_expired()
        timed_out = await self.workflows.expire_overdue()
        if purged or timed_out:
            logger.info(f"Sweep purged {purged} records, timed out workflows {timed_out}")
        return {"purged": purged, "timed_out": timed_out}

    async def run_sweeper(self, lifespan: Optional[float] = None) -> None:
        """Call :meth:`sweep` every ``sweep_interval`` seconds."""
        await _every(self.config.orchestrator.sweep_interval, self.sweep, lifespan)

    async def run_scheduler(self, lifespan: Optional[float] = None) -> None:
        """Enqueue due recurring jobs every ``scheduler_interval`` seconds."""
        await _every(self.config.orchestrator.scheduler_interval, self.enqueue_due_recurring, lifespan)


async def _every(
    interval: float, action: Callable[[], Awaitable[Any]], lifespan: Optional[float] = None
) -> None:
    loop = asyncio.get_event_loop()
    start_time = loop.time()
    while True:
        await action()
        if lifespan is None:
            await asyncio.sleep(interval)
            continue
        remaining = lifespan - (loop.time() - start_time)
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))
