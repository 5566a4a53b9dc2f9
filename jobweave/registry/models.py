"""Pydantic models describing registry entries."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import MAX_PRIORITY


class WorkerDescriptor(BaseModel):
    """A registered worker: its handler plus the defaults for its jobs."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    handler: Callable[..., Any]
    queue: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=0, le=MAX_PRIORITY)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")
    description: Optional[str] = None

    def defaults(self) -> Dict[str, Any]:
        """Job options implied by the worker, overridable per enqueue."""
        opts = {
            "queue": self.queue,
            "priority": self.priority,
            "max_attempts": self.max_attempts,
        }
        return {k: v for k, v in opts.items() if v is not None}


class ConditionDescriptor(BaseModel):
    """A named predicate evaluated against accumulated workflow results."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    predicate: Callable[[Dict[str, Any]], bool]
