"""jobweave: workflows, pipelines and batches on top of a background job queue."""

from .config import JobweaveConfig, load_config
from .contracts import BatchHandle, Job, JobOptions, JobSpec, JobState, LifecycleEvent, Result
from .execute import JobExecutor
from .models import Progress, StepSpec, WorkflowSpec, WorkflowStatus
from .orchestrator import Orchestrator
from .persistence import get_store
from .queue import BaseJobQueue, InMemoryJobQueue, StoreJobQueue, get_queue
from .registry import REGISTRY, WorkerRegistry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "BaseJobQueue",
    "BatchHandle",
    "InMemoryJobQueue",
    "Job",
    "JobExecutor",
    "JobOptions",
    "JobSpec",
    "JobState",
    "JobweaveConfig",
    "LifecycleEvent",
    "Orchestrator",
    "Progress",
    "REGISTRY",
    "Result",
    "StepSpec",
    "StoreJobQueue",
    "WorkerRegistry",
    "WorkflowSpec",
    "WorkflowStatus",
    "get_store",
    "get_queue",
    "get_transport",
    "load_config",
]
