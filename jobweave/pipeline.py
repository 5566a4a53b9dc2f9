"""Linear job chains that carry their remaining itinerary forward."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .constants import PIPELINE_ARG
from .contracts import Job, JobSpec, Result, utcnow
from .coordinator import Coordinator
from .enqueue import JobEnqueuer
from .errors import (
    InvalidStateError,
    JobweaveError,
    NotFoundError,
    PipelineValidationError,
)
from .models import Pipeline, PipelineState, PipelineStepRecord

logger = logging.getLogger(__name__)

PipelineJob = Union[JobSpec, Tuple[str, Dict[str, Any]]]


def _as_spec(job: PipelineJob) -> JobSpec:
    if isinstance(job, JobSpec):
        return job
    worker, args = job
    return JobSpec(worker=worker, args=args or {})


def _embed(spec: JobSpec, pipeline_id: str, index: int, remaining: List[JobSpec]) -> Dict[str, Any]:
    return {
        **spec.args,
        PIPELINE_ARG: {
            "id": pipeline_id,
            "index": index,
            "remaining": [r.model_dump() for r in remaining],
        },
    }


def _pipeline_meta(args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    meta = (args or {}).get(PIPELINE_ARG)
    if not meta:
        return None
    if not isinstance(meta, dict) or "id" not in meta or not isinstance(meta.get("index"), int):
        raise PipelineValidationError(
            "invalid_pipeline_args", f"Malformed {PIPELINE_ARG} entry: {meta!r}"
        )
    return meta


class PipelineExecutor:
    """Runs a strict chain of jobs, one after another.

    Only the first job is enqueued up front. Each job carries the rest of
    the chain in its args under ``__pipeline__``; the worker hands it back
    through :meth:`continue_pipeline` or :meth:`fail_pipeline`.
    """

    def __init__(self, coordinator: Coordinator, enqueuer: JobEnqueuer) -> None:
        self._coordinator = coordinator
        self._enqueuer = enqueuer

    async def pipeline(
        self,
        jobs: Iterable[PipelineJob],
        on_complete: Optional[JobSpec] = None,
        on_failure: Optional[JobSpec] = None,
        **options: Any,
    ) -> str:
        specs = [_as_spec(job) for job in jobs]
        if not specs:
            raise PipelineValidationError("empty_pipeline", "Pipeline has no jobs")
        for spec in specs:
            self._enqueuer.build(spec.worker, spec.args, options)

        pipeline_id = f"pipeline_{uuid.uuid4().hex[:16]}"
        first, rest = specs[0], specs[1:]
        async with self._coordinator.lock:
            job = await self._enqueuer.enqueue(
                first.worker, _embed(first, pipeline_id, 0, rest), **options
            )
            record = Pipeline(
                id=pipeline_id,
                total_jobs=len(specs),
                job_options=options,
                current_job_id=job.id,
                on_complete=on_complete,
                on_failure=on_failure,
            )
            await self._coordinator.save(record)
        logger.info(f"Started pipeline {pipeline_id} with {len(specs)} jobs")
        return pipeline_id

    async def _load_active(self, meta: Dict[str, Any]) -> Optional[Pipeline]:
        record = await self._coordinator.load(Pipeline, meta["id"])
        if record is None:
            logger.warning(f"Received update for unknown pipeline: {meta['id']}")
            return None
        if record.status != PipelineState.RUNNING:
            logger.debug(f"Ignoring update for {record.status.value} pipeline {record.id}")
            return None
        if str(meta["index"]) in record.progress:
            logger.debug(f"Duplicate update for pipeline {record.id} index {meta['index']}")
            return None
        return record

    async def continue_pipeline(self, args: Dict[str, Any], result: Any = None) -> Optional[Job]:
        """Record success of the current job and enqueue the next one.

        Returns the next job, or ``None`` when the pipeline finished or the
        args do not belong to an active pipeline.
        """
        meta = _pipeline_meta(args)
        if meta is None:
            return None
        async with self._coordinator.lock:
            record = await self._load_active(meta)
            if record is None:
                return None
            index = meta["index"]
            record.progress[str(index)] = PipelineStepRecord(status="success", result=result)

            remaining = [JobSpec.model_validate(r) for r in meta.get("remaining", [])]
            if not remaining:
                await self._finalize(record, PipelineState.SUCCEEDED)
                return None

            nxt, rest = remaining[0], remaining[1:]
            try:
                job = await self._enqueuer.enqueue(
                    nxt.worker, _embed(nxt, record.id, index + 1, rest), **record.job_options
                )
            except JobweaveError as e:
                record.progress[str(index + 1)] = PipelineStepRecord(status="failure", reason=str(e))
                await self._finalize(record, PipelineState.FAILED)
                return None
            record.current_job_id = job.id
            await self._coordinator.save(record)
            return job

    async def fail_pipeline(self, args: Dict[str, Any], reason: Any) -> None:
        """Record failure of the current job and stop the pipeline."""
        meta = _pipeline_meta(args)
        if meta is None:
            return
        async with self._coordinator.lock:
            record = await self._load_active(meta)
            if record is None:
                return
            record.progress[str(meta["index"])] = PipelineStepRecord(
                status="failure", reason=reason if isinstance(reason, str) else repr(reason)
            )
            await self._finalize(record, PipelineState.FAILED)

    async def _finalize(self, record: Pipeline, status: PipelineState) -> None:
        record.status = status
        record.completed_at = utcnow()
        await self._coordinator.save(record)
        logger.info(f"Pipeline {record.id} {status.value}")

        callback = record.on_complete if status == PipelineState.SUCCEEDED else record.on_failure
        await self._enqueuer.dispatch_callback(
            callback,
            {
                "pipeline_id": record.id,
                "status": status.value,
                "total_jobs": record.total_jobs,
                "completed_at": record.completed_at.isoformat(),
            },
        )

    async def pipeline_status(self, pipeline_id: str) -> Result:
        record = await self._coordinator.load(Pipeline, pipeline_id)
        if record is None:
            return Result.failure("not_found", {"pipeline_id": pipeline_id})
        return Result.success(record)

    async def cancel_pipeline(self, pipeline_id: str) -> None:
        async with self._coordinator.lock:
            record = await self._coordinator.load(Pipeline, pipeline_id)
            if record is None:
                raise NotFoundError("pipeline", pipeline_id)
            if record.status != PipelineState.RUNNING:
                raise InvalidStateError("already_finished", f"Pipeline {pipeline_id} is {record.status.value}")
            record.status = PipelineState.CANCELLED
            record.completed_at = utcnow()
            await self._coordinator.save(record)
        if record.current_job_id is not None:
            await self._enqueuer.queue.cancel_job(record.current_job_id)
        logger.info(f"Cancelled pipeline {pipeline_id}")
