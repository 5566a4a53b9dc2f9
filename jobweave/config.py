from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from . import constants


class RedisConfig(BaseModel):
    """Connection settings shared by the Redis store and transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class StoreConfig(BaseModel):
    """Key-value store configuration settings."""

    backend: Literal["inmemory", "sqlite", "redis"] = "inmemory"
    sqlite_path: str = "jobweave.db"
    key_prefix: str = "jobweave"
    redis: RedisConfig = RedisConfig()


class TransportConfig(BaseModel):
    """Publish/subscribe transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class QueueConfig(BaseModel):
    """Job queue backend, defaults applied to jobs and executor settings."""

    backend: Literal["inmemory", "store"] = "inmemory"
    job_ttl: float = Field(constants.DEFAULT_JOB_TTL, gt=0)
    default_queue: str = constants.DEFAULT_QUEUE
    default_priority: int = Field(constants.DEFAULT_PRIORITY, ge=0, le=constants.MAX_PRIORITY)
    default_max_attempts: int = Field(constants.DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = 1.5
    max_backoff: float = Field(300.0, gt=0)
    concurrency: int = Field(10, ge=1)


class OrchestratorConfig(BaseModel):
    """Retention windows and behavioural switches for the coordinator."""

    progress_ttl: float = constants.DEFAULT_PROGRESS_TTL
    workflow_ttl: float = constants.DEFAULT_WORKFLOW_TTL
    batch_ttl: float = constants.DEFAULT_BATCH_TTL
    pipeline_ttl: float = constants.DEFAULT_PIPELINE_TTL
    stats_ttl: float = constants.DEFAULT_STATS_TTL
    max_workflow_steps: int = Field(constants.DEFAULT_MAX_WORKFLOW_STEPS, ge=1)
    broadcast_progress: bool = True
    default_batch_size: int = Field(constants.DEFAULT_BATCH_SIZE, ge=1)
    poll_interval: float = Field(constants.DEFAULT_POLL_INTERVAL, gt=0)
    dead_letter_queue: str = constants.DEAD_LETTER_QUEUE
    auto_dead_letter: bool = True
    cancel_siblings_on_failure: bool = False
    sweep_interval: float = constants.DEFAULT_SWEEP_INTERVAL
    scheduler_interval: float = Field(constants.DEFAULT_SCHEDULER_INTERVAL, gt=0)
    recurring_ttl: Optional[float] = None


class JobweaveConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    transport: TransportConfig = TransportConfig()
    queue: QueueConfig = QueueConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()


def load_config(path: Optional[str] = None) -> JobweaveConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to JOBWEAVE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("JOBWEAVE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = JobweaveConfig(**data)
    else:
        config = JobweaveConfig()

    env_store = os.getenv("JOBWEAVE_STORE")
    if env_store:
        config.store.backend = env_store.lower()
    env_transport = os.getenv("JOBWEAVE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_queue = os.getenv("JOBWEAVE_QUEUE")
    if env_queue:
        config.queue.backend = env_queue.lower()
    return config
