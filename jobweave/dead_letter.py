"""Holding queue for jobs that exhausted their retries."""

from __future__ import annotations

import logging
from typing import Any, List

from .constants import DEAD_LETTER_WORKER
from .contracts import Job, JobState
from .enqueue import JobEnqueuer
from .errors import NotFoundError
from .models import DeadLetter

logger = logging.getLogger(__name__)


async def hold_dead_letter(args: dict, job: Job) -> dict:
    """Handler of the built-in dead-letter worker.

    The executor skips the dead-letter queue by default; if something does
    process it, the payload is only logged and returned.
    """
    letter = DeadLetter.model_validate(args)
    logger.warning(
        f"Dead letter {job.id}: {letter.original_worker} failed with {letter.failure_reason}"
    )
    return letter.model_dump(mode="json")


class DeadLetterHandler:
    """Moves failed jobs to the dead-letter queue and re-submits them on request."""

    def __init__(self, enqueuer: JobEnqueuer, queue_name: str) -> None:
        self._enqueuer = enqueuer
        self.queue_name = queue_name

    async def move_to_dead_letter(self, job: Job, reason: Any) -> Job:
        letter = DeadLetter(
            original_worker=job.worker,
            original_args=job.args,
            original_queue=job.queue,
            failure_reason=reason if isinstance(reason, str) else repr(reason),
        )
        held = await self._enqueuer.enqueue(
            DEAD_LETTER_WORKER,
            letter.model_dump(mode="json"),
            queue=self.queue_name,
            max_attempts=1,
            meta={"dead_letter_of": job.id},
        )
        logger.info(f"Moved job {job.id} ({job.worker}) to dead letter as job {held.id}")
        return held

    async def retry_dead_letter(self, job_id: int) -> Job:
        """Re-submit the original work held by dead-letter job ``job_id``."""
        held = await self._enqueuer.queue.get_job(job_id)
        if held is None or held.worker != DEAD_LETTER_WORKER:
            raise NotFoundError("dead letter", job_id)

        letter = DeadLetter.model_validate(held.args)
        job = await self._enqueuer.enqueue(
            letter.original_worker, letter.original_args, queue=letter.original_queue
        )
        if not held.state.is_terminal:
            await self._enqueuer.queue.cancel_job(held.id)
        logger.info(f"Retried dead letter {job_id} as job {job.id} ({job.worker})")
        return job

    async def list_dead_letters(self) -> List[Job]:
        jobs = await self._enqueuer.queue.list_jobs(queue=self.queue_name)
        return [j for j in jobs if j.worker == DEAD_LETTER_WORKER and j.state != JobState.CANCELLED]
