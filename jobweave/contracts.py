"""Core job contracts exchanged with the job queue collaborator."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import constants


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """States a job moves through inside the job queue."""

    AVAILABLE = "available"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    RETRYABLE = "retryable"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset(
    {JobState.COMPLETED, JobState.DISCARDED, JobState.CANCELLED}
)


class UniqueOptions(BaseModel):
    """Uniqueness constraint: no two live jobs may share the same key."""

    model_config = ConfigDict(extra="forbid")

    period: float = Field(60.0, gt=0, description="Seconds the key stays reserved")
    fields: List[Literal["worker", "args", "queue"]] = Field(
        default_factory=lambda: ["worker", "args", "queue"]
    )

    @field_validator("fields")
    @classmethod
    def _non_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("unique fields must not be empty")
        return v


class JobOptions(BaseModel):
    """Validated enqueue options."""

    model_config = ConfigDict(extra="forbid")

    queue: str = constants.DEFAULT_QUEUE
    priority: int = Field(constants.DEFAULT_PRIORITY, ge=0, le=constants.MAX_PRIORITY)
    max_attempts: int = Field(constants.DEFAULT_MAX_ATTEMPTS, ge=1)
    delay: Optional[float] = Field(default=None, ge=0, description="Seconds to wait")
    scheduled_at: Optional[datetime] = None
    unique: Optional[UniqueOptions] = None
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("queue")
    @classmethod
    def _queue_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("queue must be a non-empty string")
        return v

    @field_validator("tags")
    @classmethod
    def _tags(cls, v: List[str]) -> List[str]:
        if any(not tag for tag in v):
            raise ValueError("tags must be non-empty strings")
        return v

    @field_validator("scheduled_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _delay_or_schedule(self) -> "JobOptions":
        if self.delay is not None and self.scheduled_at is not None:
            raise ValueError("delay and scheduled_at are mutually exclusive")
        return self

    def run_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Absolute time the job becomes available, if deferred."""
        if self.scheduled_at is not None:
            return self.scheduled_at
        if self.delay:
            return (now or utcnow()) + timedelta(seconds=self.delay)
        return None


class JobSpec(BaseModel):
    """A worker reference paired with its arguments.

    Also used for completion/failure callbacks, which are dispatched by
    enqueuing the spec as a job.
    """

    worker: str
    args: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """Snapshot of a job as held by the job queue."""

    id: int
    worker: str
    args: Dict[str, Any] = Field(default_factory=dict)
    queue: str = constants.DEFAULT_QUEUE
    priority: int = constants.DEFAULT_PRIORITY
    max_attempts: int = constants.DEFAULT_MAX_ATTEMPTS
    attempt: int = 0
    state: JobState = JobState.AVAILABLE
    scheduled_at: Optional[datetime] = None
    unique_key: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    result: Any = None
    inserted_at: datetime = Field(default_factory=utcnow)
    attempted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    discarded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1]["error"] if self.errors else None


def unique_key_for(spec: JobSpec, options: JobOptions) -> Optional[str]:
    """Digest of the fields named by ``options.unique``."""
    if options.unique is None:
        return None
    parts = {
        "worker": spec.worker,
        "args": spec.args,
        "queue": options.queue,
    }
    selected = {name: parts[name] for name in sorted(options.unique.fields)}
    raw = json.dumps(selected, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class LifecycleEvent(BaseModel):
    """Event emitted by the job queue when a job starts, stops or raises."""

    event: Literal["start", "stop", "exception"]
    job: Job
    measurements: Dict[str, float] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_final_failure(self) -> bool:
        """``True`` when the job will not be retried again."""
        return self.event == "exception" and self.job.state in (
            JobState.DISCARDED,
            JobState.CANCELLED,
        )


class Result(BaseModel):
    """Structured success/error value returned by query operations."""

    ok: bool
    value: Any = None
    error: Optional[str] = None
    detail: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, detail: Any = None) -> "Result":
        return cls(ok=False, error=error, detail=detail)

    def unwrap(self) -> Any:
        """Return the value or raise ``LookupError`` carrying the error code."""
        if not self.ok:
            raise LookupError(self.error)
        return self.value


class BatchHandle(BaseModel):
    """Returned by ``batch``: the batch id and its number of chunks."""

    batch_id: str
    total: int


class Notification(BaseModel):
    """Envelope published over a transport topic."""

    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize notification to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Notification":
        """Deserialize notification from JSON."""
        return cls.model_validate_json(data)
