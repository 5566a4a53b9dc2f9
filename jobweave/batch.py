"""Chunked processing of item collections."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .constants import BATCH_ARG
from .contracts import BatchHandle, JobSpec, Result, utcnow
from .coordinator import Coordinator
from .enqueue import JobEnqueuer
from .errors import BatchValidationError, InvalidStateError, NotFoundError
from .models import Batch, BatchState

logger = logging.getLogger(__name__)

REPORT_STATUSES = ("success", "failure")


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchProcessor:
    """Splits items into chunk jobs and resolves the batch once every chunk reported."""

    def __init__(self, coordinator: Coordinator, enqueuer: JobEnqueuer) -> None:
        self._coordinator = coordinator
        self._enqueuer = enqueuer

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
        """Enqueue one job per chunk of ``items``, all or nothing.

        Each chunk job receives ``{"items": chunk, "__batch__": {id, index, total}}``
        and is expected to call :meth:`report_batch_progress` with its args.
        ``max_concurrency`` is recorded only.
        """
        items = list(items)
        size = batch_size if batch_size is not None else self._coordinator.config.default_batch_size
        if not items:
            raise BatchValidationError("empty_batch", "Batch has no items")
        if size <= 0:
            raise BatchValidationError("invalid_batch_size", f"Batch size must be positive, got {size}")
        self._enqueuer.build(worker, {}, options)

        batch_id = f"batch_{uuid.uuid4().hex[:16]}"
        chunks = chunked(items, size)
        total = len(chunks)
        requests = [
            (
                worker,
                {"items": chunk, BATCH_ARG: {"id": batch_id, "index": index, "total": total}},
                options,
            )
            for index, chunk in enumerate(chunks)
        ]

        async with self._coordinator.lock:
            jobs = await self._enqueuer.enqueue_many(requests)
            record = Batch(
                id=batch_id,
                worker=worker,
                total=total,
                batch_size=size,
                max_concurrency=max_concurrency,
                job_ids=[job.id for job in jobs],
                on_complete=on_complete,
                on_failure=on_failure,
            )
            await self._coordinator.save(record)
        logger.info(f"Started batch {batch_id}: {len(items)} items in {total} chunks for {worker}")
        return BatchHandle(batch_id=batch_id, total=total)

    async def report_batch_progress(self, args: Dict[str, Any], status: str) -> Optional[Batch]:
        """Count one chunk as succeeded or failed; returns the updated batch."""
        if status not in REPORT_STATUSES:
            raise BatchValidationError("invalid_status", f"Unknown batch report status: {status}")
        meta = (args or {}).get(BATCH_ARG)
        if not meta:
            return None
        if not isinstance(meta, dict) or "id" not in meta:
            raise BatchValidationError("invalid_batch_args", f"Malformed {BATCH_ARG} entry: {meta!r}")

        async with self._coordinator.lock:
            record = await self._coordinator.load(Batch, meta["id"])
            if record is None:
                logger.warning(f"Received report for unknown batch: {meta['id']}")
                return None
            if record.status != BatchState.RUNNING:
                logger.debug(f"Ignoring report for {record.status.value} batch {record.id}")
                return record
            if record.reported >= record.total:
                return record

            if status == "success":
                record.completed += 1
            else:
                record.failed += 1

            if record.reported < record.total:
                await self._coordinator.save(record)
                return record
            await self._resolve(record)
            return record

    async def _resolve(self, record: Batch) -> None:
        if record.failed == 0:
            record.status = BatchState.SUCCESS
            callback = record.on_complete
        else:
            record.status = BatchState.PARTIAL_FAILURE
            callback = record.on_failure or record.on_complete
        record.completed_at = utcnow()
        await self._coordinator.save(record)
        logger.info(
            f"Batch {record.id} {record.status.value}: "
            f"{record.completed} succeeded, {record.failed} failed"
        )
        await self._enqueuer.dispatch_callback(
            callback,
            {
                "batch_id": record.id,
                "status": record.status.value,
                "total": record.total,
                "completed": record.completed,
                "failed": record.failed,
            },
        )

    async def batch_status(self, batch_id: str) -> Result:
        record = await self._coordinator.load(Batch, batch_id)
        if record is None:
            return Result.failure("not_found", {"batch_id": batch_id})
        return Result.success(record)

    async def cancel_batch(self, batch_id: str) -> None:
        async with self._coordinator.lock:
            record = await self._coordinator.load(Batch, batch_id)
            if record is None:
                raise NotFoundError("batch", batch_id)
            if record.status != BatchState.RUNNING:
                raise InvalidStateError("already_finished", f"Batch {batch_id} is {record.status.value}")
            record.status = BatchState.CANCELLED
            record.completed_at = utcnow()
            await self._coordinator.save(record)

        for job_id in record.job_ids:
            await self._enqueuer.queue.cancel_job(job_id)
        logger.info(f"Cancelled batch {batch_id}")
