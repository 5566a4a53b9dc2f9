"""Orchestration records owned by the coordinator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import JobSpec, utcnow


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


SATISFIED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class WorkflowState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowState.COMPLETED,
            WorkflowState.FAILED,
            WorkflowState.CANCELLED,
        )


class StepSpec(BaseModel):
    """One step as supplied by the caller of ``start_workflow``."""

    id: Optional[str] = None
    worker: str
    args: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    condition: Optional[str] = Field(
        default=None, description="Name of a registered condition"
    )


class WorkflowSpec(BaseModel):
    """Workflow definition accepted by ``start_workflow``."""

    name: str = "workflow"
    steps: List[StepSpec] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    on_complete: Optional[JobSpec] = None
    on_failure: Optional[JobSpec] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    job_options: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStep(BaseModel):
    """A node of a running workflow."""

    id: str
    worker: str
    args: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    condition: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    job_id: Optional[int] = None
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Workflow(BaseModel):
    """Persisted workflow state."""

    id: str
    name: str
    steps: List[WorkflowStep] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    status: WorkflowState = WorkflowState.PENDING
    results: Dict[str, Any] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    on_complete: Optional[JobSpec] = None
    on_failure: Optional[JobSpec] = None
    timeout: Optional[float] = None
    job_options: Dict[str, Any] = Field(default_factory=dict)

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def is_finished(self) -> bool:
        """Return ``True`` when every step is completed or skipped."""
        return all(s.status in SATISFIED_STEP_STATUSES for s in self.steps)

    def duration_ms(self, now: Optional[datetime] = None) -> int:
        end = self.completed_at or now or utcnow()
        return int((end - self.started_at).total_seconds() * 1000)


class WorkflowStatus(BaseModel):
    """Read-only snapshot returned by ``get_workflow_status``."""

    workflow_id: str
    name: str
    status: WorkflowState
    steps: Dict[str, StepStatus]
    results: Dict[str, Any]
    errors: List[Dict[str, Any]]
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowStatus":
        return cls(
            workflow_id=workflow.id,
            name=workflow.name,
            status=workflow.status,
            steps={s.id: s.status for s in workflow.steps},
            results=workflow.results,
            errors=workflow.errors,
            started_at=workflow.started_at,
            completed_at=workflow.completed_at,
            duration_ms=workflow.duration_ms(),
        )


class PipelineState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStepRecord(BaseModel):
    status: str
    result: Any = None
    reason: Optional[str] = None


class Pipeline(BaseModel):
    """Persisted pipeline state."""

    id: str
    total_jobs: int
    status: PipelineState = PipelineState.RUNNING
    progress: Dict[str, PipelineStepRecord] = Field(default_factory=dict)
    job_options: Dict[str, Any] = Field(default_factory=dict)
    current_job_id: Optional[int] = None
    on_complete: Optional[JobSpec] = None
    on_failure: Optional[JobSpec] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class BatchState(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"


class Batch(BaseModel):
    """Persisted batch state."""

    id: str
    worker: str
    total: int
    completed: int = 0
    failed: int = 0
    status: BatchState = BatchState.RUNNING
    batch_size: int
    max_concurrency: Optional[int] = None
    job_ids: List[int] = Field(default_factory=list)
    on_complete: Optional[JobSpec] = None
    on_failure: Optional[JobSpec] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def reported(self) -> int:
        return self.completed + self.failed


class Progress(BaseModel):
    """Latest progress snapshot of a job."""

    job_id: int
    percentage: int = Field(ge=0, le=100)
    message: str = ""
    updated_at: datetime = Field(default_factory=utcnow)


class DeadLetter(BaseModel):
    """Payload carried by a job held on the dead-letter queue."""

    original_worker: str
    original_args: Dict[str, Any] = Field(default_factory=dict)
    original_queue: str
    failure_reason: str
    failed_at: datetime = Field(default_factory=utcnow)


class RecurringJob(BaseModel):
    """A job enqueued on a cron schedule."""

    name: str
    worker: str
    args: Dict[str, Any] = Field(default_factory=dict)
    cron: str
    job_options: Dict[str, Any] = Field(default_factory=dict)
    next_run_at: datetime
    last_run_at: Optional[datetime] = None
    last_job_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
