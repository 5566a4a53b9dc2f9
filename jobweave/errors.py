"""Exception hierarchy for jobweave."""

from __future__ import annotations

from typing import Any, Optional


class JobweaveError(Exception):
    """Base exception for all jobweave errors."""


class ValidationError(JobweaveError):
    """Input was rejected before any state was created."""

    def __init__(self, code: str, message: Optional[str] = None, detail: Any = None) -> None:
        self.code = code
        self.detail = detail
        super().__init__(message or code)


class JobValidationError(ValidationError):
    """Job options or worker reference are invalid."""


class WorkflowValidationError(ValidationError):
    """Workflow definition is invalid."""


class PipelineValidationError(ValidationError):
    """Pipeline chain is invalid."""


class BatchValidationError(ValidationError):
    """Batch request is invalid."""


class RecurringValidationError(ValidationError):
    """Recurring job name or cron expression is invalid."""


class UnknownWorkerError(JobValidationError):
    """Worker name is not present in the registry."""

    def __init__(self, worker: str) -> None:
        self.worker = worker
        super().__init__("unknown_worker", f"Worker '{worker}' is not registered")


class NotFoundError(JobweaveError):
    """Requested workflow, batch, pipeline or job does not exist."""

    def __init__(self, kind: str, identifier: Any) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InvalidStateError(JobweaveError):
    """Requested transition is not allowed from the current state."""

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message or code)


class JobQueueError(JobweaveError):
    """Error raised by the job queue collaborator."""


class UniqueViolationError(JobQueueError):
    """A job with the same uniqueness key already exists."""

    def __init__(self, unique_key: str, existing_job_id: int) -> None:
        self.unique_key = unique_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Job conflicts with existing job {existing_job_id} (key={unique_key})"
        )
