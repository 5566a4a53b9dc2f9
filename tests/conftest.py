"""Shared fixtures: an isolated worker registry and an in-memory orchestrator."""

import asyncio

import pytest

from jobweave import Orchestrator, WorkerRegistry
from jobweave.config import JobweaveConfig, OrchestratorConfig, QueueConfig


@pytest.fixture
def calls():
    """Records ``(worker, args)`` for every job run by the test workers."""
    return []


@pytest.fixture
def registry(calls):
    registry = WorkerRegistry()

    @registry.worker("echo")
    async def echo(args, job):
        calls.append(("echo", args))
        return args.get("value")

    @registry.worker("double")
    async def double(args, job):
        calls.append(("double", args))
        return args.get("value", 0) * 2

    @registry.worker("boom", max_attempts=1)
    async def boom(args, job):
        calls.append(("boom", args))
        raise RuntimeError("boom")

    @registry.worker("sleepy")
    async def sleepy(args, job):
        await asyncio.sleep(args.get("seconds", 5))
        return "woke"

    @registry.worker("notify")
    async def notify(args, job):
        calls.append(("notify", args))

    @registry.condition("always")
    def always(results):
        return True

    @registry.condition("never")
    def never(results):
        return False

    return registry


@pytest.fixture
def config():
    return JobweaveConfig(
        queue=QueueConfig(backoff_base=0.0),
        orchestrator=OrchestratorConfig(poll_interval=0.01),
    )


@pytest.fixture
def orchestrator(registry, config):
    return Orchestrator(registry=registry, config=config)


@pytest.fixture
def executor(orchestrator):
    return orchestrator.executor()


@pytest.fixture
def callbacks(calls):
    """Returns the ``__callback__`` summaries received so far by ``notify``."""
    return lambda: [args["__callback__"] for worker, args in calls if worker == "notify"]
