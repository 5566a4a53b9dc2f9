"""Jobs enqueued on a cron schedule."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .contracts import Job, utcnow
from .coordinator import Coordinator
from .cron import CronExpression
from .enqueue import JobEnqueuer
from .errors import JobweaveError, NotFoundError, RecurringValidationError
from .models import RecurringJob

logger = logging.getLogger(__name__)


def parse_cron(expression: str) -> CronExpression:
    try:
        return CronExpression(expression)
    except ValueError as e:
        raise RecurringValidationError("invalid_cron", str(e)) from e


class RecurringScheduler:
    """Keeps named cron entries and enqueues their jobs when due.

    Entries live in the store as ``recurring:<name>`` records. A missed run
    is not caught up: an overdue entry enqueues one job and its next run is
    computed from the current time.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        enqueuer: JobEnqueuer,
        clock=utcnow,
    ) -> None:
        self._coordinator = coordinator
        self._enqueuer = enqueuer
        self._clock = clock

    async def schedule_recurring(
        self,
        name: str,
        worker: str,
        args: Optional[Dict[str, Any]],
        cron: str,
        **options: Any,
    ) -> RecurringJob:
        """Create or replace the entry called ``name``."""
        if not name or not name.strip():
            raise RecurringValidationError("invalid_name", "Recurring job name must be non-empty")
        schedule = parse_cron(cron)
        self._enqueuer.build(worker, args, options)

        now = self._clock()
        record = RecurringJob(
            name=name,
            worker=worker,
            args=dict(args or {}),
            cron=cron,
            job_options=options,
            next_run_at=schedule.next_after(now),
        )
        async with self._coordinator.lock:
            replaced = await self._coordinator.load(RecurringJob, name) is not None
            await self._coordinator.save(record, name)
        logger.info(
            f"{'Replaced' if replaced else 'Scheduled'} recurring job {name} ({worker}) "
            f"with cron '{cron}', next run {record.next_run_at.isoformat()}"
        )
        return record

    async def cancel_recurring(self, name: str) -> None:
        async with self._coordinator.lock:
            if await self._coordinator.load(RecurringJob, name) is None:
                raise NotFoundError("recurring job", name)
            await self._coordinator.delete(RecurringJob, name)
        logger.info(f"Cancelled recurring job {name}")

    async def list_recurring(self) -> List[RecurringJob]:
        records = await self._coordinator.list(RecurringJob)
        return sorted(records, key=lambda r: r.name)

    async def enqueue_due(self, now: Optional[datetime] = None) -> List[Job]:
        """Enqueue one job for every entry whose next run has passed."""
        now = now or self._clock()
        enqueued: List[Job] = []
        async with self._coordinator.lock:
            for record in await self._coordinator.list(RecurringJob):
                if record.next_run_at > now:
                    continue
                try:
                    job = await self._enqueuer.enqueue(
                        record.worker,
                        record.args,
                        **{
                            **record.job_options,
                            "meta": {**record.job_options.get("meta", {}), "recurring": record.name},
                        },
                    )
                except JobweaveError as e:
                    logger.error(f"Recurring job {record.name} could not be enqueued: {e}")
                else:
                    record.last_job_id = job.id
                    enqueued.append(job)
                record.last_run_at = now
                record.next_run_at = parse_cron(record.cron).next_after(now)
                await self._coordinator.save(record, record.name)
        if enqueued:
            logger.info(f"Enqueued {len(enqueued)} recurring jobs")
        return enqueued
