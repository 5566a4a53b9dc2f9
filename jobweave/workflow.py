"""Dependency-graph workflows whose steps run as jobs."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .constants import CONTEXT_ARG, STEP_ID_ARG, WORKFLOW_ID_ARG
from .contracts import Result, utcnow
from .coordinator import Coordinator
from .enqueue import JobEnqueuer
from .errors import (
    InvalidStateError,
    JobweaveError,
    NotFoundError,
    WorkflowValidationError,
)
from .models import (
    SATISFIED_STEP_STATUSES,
    StepStatus,
    Workflow,
    WorkflowSpec,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)
from .registry import WorkerRegistry

logger = logging.getLogger(__name__)


def find_cycle(steps: List[WorkflowStep]) -> List[str]:
    """Return the ids left over by a topological sort (empty when acyclic)."""
    indegree = {s.id: len(s.depends_on) for s in steps}
    dependents: Dict[str, List[str]] = {s.id: [] for s in steps}
    for s in steps:
        for dep in s.depends_on:
            dependents[dep].append(s.id)

    ready = deque(sid for sid, n in indegree.items() if n == 0)
    visited = 0
    while ready:
        sid = ready.popleft()
        visited += 1
        for child in dependents[sid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if visited == len(steps):
        return []
    return [sid for sid, n in indegree.items() if n > 0]


class WorkflowEngine:
    """Creates workflows and advances them as their step jobs finish.

    Every transition runs under the coordinator lock. Step jobs carry the
    workflow and step ids in their meta so lifecycle events can be routed
    back to :meth:`step_completed` and :meth:`step_failed`.
    """

    def __init__(
        self, coordinator: Coordinator, enqueuer: JobEnqueuer, registry: WorkerRegistry
    ) -> None:
        self._coordinator = coordinator
        self._enqueuer = enqueuer
        self._registry = registry

    # ------------------------------------------------------------------
    # Creation
    def _validate(self, spec: WorkflowSpec) -> List[WorkflowStep]:
        if not spec.steps:
            raise WorkflowValidationError("no_steps", "Workflow has no steps")
        limit = self._coordinator.config.max_workflow_steps
        if len(spec.steps) > limit:
            raise WorkflowValidationError(
                "too_many_steps", f"Workflow has {len(spec.steps)} steps, limit is {limit}"
            )

        steps = [
            WorkflowStep(
                id=s.id or f"step_{n}",
                worker=s.worker,
                args=s.args,
                depends_on=list(s.depends_on),
                condition=s.condition,
            )
            for n, s in enumerate(spec.steps, start=1)
        ]

        ids = [s.id for s in steps]
        duplicates = sorted({sid for sid in ids if ids.count(sid) > 1})
        if duplicates:
            raise WorkflowValidationError(
                "duplicate_step_id", f"Duplicate step ids: {duplicates}", detail=duplicates
            )

        known = set(ids)
        missing = {s.id: [d for d in s.depends_on if d not in known] for s in steps}
        missing = {sid: deps for sid, deps in missing.items() if deps}
        if missing:
            raise WorkflowValidationError(
                "invalid_dependencies", f"Unknown dependencies: {missing}", detail=missing
            )

        cycle = find_cycle(steps)
        if cycle:
            raise WorkflowValidationError(
                "cyclic_dependencies", f"Dependency cycle among steps {cycle}", detail=cycle
            )

        for step in steps:
            if not self._registry.has_worker(step.worker):
                raise WorkflowValidationError(
                    "unknown_worker",
                    f"Step '{step.id}' uses unregistered worker '{step.worker}'",
                    detail={"step_id": step.id, "worker": step.worker},
                )
            if step.condition and not self._registry.has_condition(step.condition):
                raise WorkflowValidationError(
                    "unknown_condition",
                    f"Step '{step.id}' uses unregistered condition '{step.condition}'",
                    detail={"step_id": step.id, "condition": step.condition},
                )
            self._enqueuer.build(step.worker, step.args, spec.job_options)
        return steps

    async def start_workflow(self, spec: Union[WorkflowSpec, Dict[str, Any]]) -> str:
        """Validate ``spec``, store the workflow and enqueue its root steps.

        Raises:
            WorkflowValidationError: Nothing is stored or enqueued.
        """
        if not isinstance(spec, WorkflowSpec):
            try:
                spec = WorkflowSpec.model_validate(spec)
            except PydanticValidationError as e:
                raise WorkflowValidationError(
                    "invalid_workflow", str(e), detail=e.errors(include_url=False)
                ) from e
        steps = self._validate(spec)

        workflow = Workflow(
            id=f"wf_{uuid.uuid4().hex[:16]}",
            name=spec.name,
            steps=steps,
            context=spec.context,
            status=WorkflowState.RUNNING,
            on_complete=spec.on_complete,
            on_failure=spec.on_failure,
            timeout=spec.timeout,
            job_options=spec.job_options,
        )
        async with self._coordinator.lock:
            await self._start_ready(workflow)
            if workflow.is_finished():
                await self._finalize(workflow, WorkflowState.COMPLETED)
            else:
                await self._coordinator.save(workflow)
        logger.info(f"Started workflow {workflow.id} ({workflow.name}) with {len(steps)} steps")
        return workflow.id

    # ------------------------------------------------------------------
    # Frontier
    def _condition_holds(self, workflow: Workflow, step: WorkflowStep) -> bool:
        try:
            return self._registry.evaluate(step.condition, dict(workflow.results))
        except Exception:
            logger.exception(
                f"Condition '{step.condition}' of step {step.id} in workflow {workflow.id} raised"
            )
            return False

    def _ready_steps(self, workflow: Workflow) -> List[WorkflowStep]:
        """Collect runnable steps, skipping those whose condition is false.

        A skipped step satisfies its dependents, so the scan repeats until
        nothing changes.
        """
        statuses = {s.id: s.status for s in workflow.steps}
        ready: List[WorkflowStep] = []
        ready_ids = set()
        changed = True
        while changed:
            changed = False
            for step in workflow.steps:
                if step.status != StepStatus.PENDING or step.id in ready_ids:
                    continue
                if not all(statuses[d] in SATISFIED_STEP_STATUSES for d in step.depends_on):
                    continue
                if step.condition and not self._condition_holds(workflow, step):
                    step.status = StepStatus.SKIPPED
                    step.completed_at = utcnow()
                    statuses[step.id] = StepStatus.SKIPPED
                    changed = True
                    logger.debug(f"Skipped step {step.id} of workflow {workflow.id}")
                    continue
                ready.append(step)
                ready_ids.add(step.id)
        return ready

    def _step_job(self, workflow: Workflow, step: WorkflowStep):
        args = {
            **step.args,
            WORKFLOW_ID_ARG: workflow.id,
            STEP_ID_ARG: step.id,
            CONTEXT_ARG: workflow.context,
        }
        options = dict(workflow.job_options)
        options["meta"] = {
            **options.get("meta", {}),
            "workflow_id": workflow.id,
            "step_id": step.id,
        }
        return step.worker, args, options

    async def _start_ready(self, workflow: Workflow) -> None:
        ready = self._ready_steps(workflow)
        if not ready:
            return
        jobs = await self._enqueuer.enqueue_many(
            [self._step_job(workflow, step) for step in ready]
        )
        now = utcnow()
        for step, job in zip(ready, jobs):
            step.status = StepStatus.RUNNING
            step.job_id = job.id
            step.started_at = now

    async def _advance(self, workflow: Workflow) -> None:
        """Start whatever became ready, then finalize or store the workflow."""
        if workflow.status == WorkflowState.RUNNING:
            try:
                await self._start_ready(workflow)
            except JobweaveError as e:
                logger.error(f"Workflow {workflow.id} could not enqueue next steps: {e}")
                workflow.errors.append({"step_id": None, "error": str(e)})
                await self._finalize(workflow, WorkflowState.FAILED)
                return
        if workflow.is_finished():
            await self._finalize(workflow, WorkflowState.COMPLETED)
        else:
            await self._coordinator.save(workflow)

    async def _finalize(self, workflow: Workflow, status: WorkflowState) -> None:
        workflow.status = status
        workflow.completed_at = utcnow()
        await self._coordinator.save(workflow)
        logger.info(f"Workflow {workflow.id} {status.value} after {workflow.duration_ms()}ms")

        callback = (
            workflow.on_complete if status == WorkflowState.COMPLETED else workflow.on_failure
        )
        await self._enqueuer.dispatch_callback(
            callback,
            {
                "workflow_id": workflow.id,
                "status": status.value,
                "results": workflow.results,
                "errors": workflow.errors,
                "duration_ms": workflow.duration_ms(),
            },
        )

    async def _load_active(self, workflow_id: str, step_id: str):
        workflow = await self._coordinator.load(Workflow, workflow_id)
        if workflow is None:
            logger.warning(f"Received event for unknown workflow: {workflow_id}")
            return None, None
        if workflow.status.is_terminal:
            logger.debug(f"Ignoring event for {workflow.status.value} workflow {workflow_id}")
            return None, None
        step = workflow.step(step_id)
        if step is None or step.status != StepStatus.RUNNING:
            logger.debug(f"Ignoring event for step {step_id} of workflow {workflow_id}")
            return None, None
        return workflow, step

    # ------------------------------------------------------------------
    # Step events
    async def step_completed(self, workflow_id: str, step_id: str, result: Any = None) -> None:
        async with self._coordinator.lock:
            workflow, step = await self._load_active(workflow_id, step_id)
            if workflow is None:
                return
            step.status = StepStatus.COMPLETED
            step.result = result
            step.completed_at = utcnow()
            workflow.results[step_id] = result
            logger.debug(f"Step {step_id} of workflow {workflow_id} completed")
            await self._advance(workflow)

    async def step_failed(self, workflow_id: str, step_id: str, error: Optional[str]) -> None:
        """Fail the step and the workflow; running siblings are left alone
        unless ``cancel_siblings_on_failure`` is set."""
        siblings: List[int] = []
        async with self._coordinator.lock:
            workflow, step = await self._load_active(workflow_id, step_id)
            if workflow is None:
                return
            step.status = StepStatus.FAILED
            step.error = error
            step.completed_at = utcnow()
            workflow.errors.append({"step_id": step_id, "error": error})
            if self._coordinator.config.cancel_siblings_on_failure:
                siblings = [
                    s.job_id
                    for s in workflow.steps
                    if s.status == StepStatus.RUNNING and s.job_id is not None
                ]
            await self._finalize(workflow, WorkflowState.FAILED)

        for job_id in siblings:
            await self._enqueuer.queue.cancel_job(job_id)

    # ------------------------------------------------------------------
    # Control
    async def _require(self, workflow_id: str) -> Workflow:
        workflow = await self._coordinator.load(Workflow, workflow_id)
        if workflow is None:
            raise NotFoundError("workflow", workflow_id)
        return workflow

    async def pause_workflow(self, workflow_id: str) -> None:
        async with self._coordinator.lock:
            workflow = await self._require(workflow_id)
            if workflow.status != WorkflowState.RUNNING:
                raise InvalidStateError(
                    "not_running", f"Workflow {workflow_id} is {workflow.status.value}"
                )
            workflow.status = WorkflowState.PAUSED
            await self._coordinator.save(workflow)
        logger.info(f"Paused workflow {workflow_id}")

    async def resume_workflow(self, workflow_id: str) -> None:
        async with self._coordinator.lock:
            workflow = await self._require(workflow_id)
            if workflow.status != WorkflowState.PAUSED:
                raise InvalidStateError(
                    "not_paused", f"Workflow {workflow_id} is {workflow.status.value}"
                )
            workflow.status = WorkflowState.RUNNING
            await self._advance(workflow)
        logger.info(f"Resumed workflow {workflow_id}")

    async def cancel_workflow(self, workflow_id: str) -> None:
        async with self._coordinator.lock:
            workflow = await self._require(workflow_id)
            if workflow.status.is_terminal:
                raise InvalidStateError(
                    "already_finished", f"Workflow {workflow_id} is {workflow.status.value}"
                )
            workflow.status = WorkflowState.CANCELLED
            workflow.completed_at = utcnow()
            await self._coordinator.save(workflow)
            job_ids = [s.job_id for s in workflow.steps if s.job_id is not None]

        for job_id in job_ids:
            await self._enqueuer.queue.cancel_job(job_id)
        logger.info(f"Cancelled workflow {workflow_id}")

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """Fail running or paused workflows that outlived their ``timeout``."""
        now = now or utcnow()
        expired: List[str] = []
        job_ids: List[int] = []
        async with self._coordinator.lock:
            for workflow in await self._coordinator.list(Workflow):
                if workflow.status.is_terminal or workflow.timeout is None:
                    continue
                if now - workflow.started_at < timedelta(seconds=workflow.timeout):
                    continue
                workflow.errors.append({"step_id": None, "error": "timeout"})
                job_ids.extend(
                    s.job_id
                    for s in workflow.steps
                    if s.status == StepStatus.RUNNING and s.job_id is not None
                )
                await self._finalize(workflow, WorkflowState.FAILED)
                expired.append(workflow.id)

        for job_id in job_ids:
            await self._enqueuer.queue.cancel_job(job_id)
        return expired

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow_status(self, workflow_id: str) -> Result:
        workflow = await self._coordinator.load(Workflow, workflow_id)
        if workflow is None:
            return Result.failure("not_found", {"workflow_id": workflow_id})
        return Result.success(WorkflowStatus.from_workflow(workflow))

    async def list_workflows(self) -> List[WorkflowStatus]:
        workflows = await self._coordinator.list(Workflow)
        workflows.sort(key=lambda w: w.started_at)
        return [WorkflowStatus.from_workflow(w) for w in workflows]
