import asyncio

import pytest

from jobweave.contracts import JobOptions, JobSpec, JobState
from jobweave.errors import UnknownWorkerError
from jobweave.execute import JobExecutor
from jobweave.queue import InMemoryJobQueue
from jobweave.registry import WorkerRegistry
from jobweave.utils.retry import compute_backoff


def test_registry_resolves_workers_and_conditions():
    registry = WorkerRegistry()

    @registry.worker(queue="media", max_attempts=5)
    def resize(args, job):
        return "ok"

    @registry.condition()
    def has_images(results):
        return bool(results.get("images"))

    descriptor = registry.resolve("resize")
    assert descriptor.handler is resize
    assert descriptor.defaults() == {"queue": "media", "max_attempts": 5}
    assert registry.has_condition("has_images")
    assert registry.evaluate("has_images", {"images": [1]}) is True
    assert registry.evaluate("unknown", {}) is False
    assert list(registry.workers) == ["resize"]

    with pytest.raises(UnknownWorkerError):
        registry.resolve("crop")


@pytest.mark.asyncio
async def test_executor_runs_sync_and_async_handlers():
    registry = WorkerRegistry()
    queue = InMemoryJobQueue()

    @registry.worker("sync_add")
    def sync_add(args, job):
        return args["a"] + args["b"]

    @registry.worker("async_upper")
    async def async_upper(args, job):
        return args["text"].upper()

    first = await queue.enqueue(JobSpec(worker="sync_add", args={"a": 1, "b": 2}), JobOptions())
    second = await queue.enqueue(JobSpec(worker="async_upper", args={"text": "hi"}), JobOptions())

    executor = JobExecutor(queue, registry=registry)
    assert await executor.drain() == 2

    assert (await queue.get_job(first.id)).result == 3
    assert (await queue.get_job(second.id)).result == "HI"
    assert sorted(executor.executed_jobs) == [first.id, second.id]


@pytest.mark.asyncio
async def test_executor_applies_worker_timeout():
    registry = WorkerRegistry()
    queue = InMemoryJobQueue()

    @registry.worker("stuck", timeout=0.05)
    async def stuck(args, job):
        await asyncio.sleep(5)

    job = await queue.enqueue(JobSpec(worker="stuck"), JobOptions(max_attempts=1))
    await JobExecutor(queue, registry=registry).drain()

    failed = await queue.get_job(job.id)
    assert failed.state == JobState.DISCARDED
    assert failed.errors[0]["error"].startswith("TimeoutError")


@pytest.mark.asyncio
async def test_executor_retries_with_backoff():
    registry = WorkerRegistry()
    queue = InMemoryJobQueue()
    attempts = []

    @registry.worker("flaky")
    async def flaky(args, job):
        attempts.append(job.attempt)
        if job.attempt < 2:
            raise ValueError("not yet")
        return "fine"

    job = await queue.enqueue(JobSpec(worker="flaky"), JobOptions(max_attempts=3))
    executor = JobExecutor(queue, registry=registry, backoff_base=0.01, poll_interval=0.01)
    await executor.start(lifespan=1.0)

    done = await queue.get_job(job.id)
    assert done.state == JobState.COMPLETED
    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_executor_skips_unregistered_worker_jobs():
    queue = InMemoryJobQueue()
    job = await queue.enqueue(JobSpec(worker="ghost"), JobOptions(max_attempts=1))

    await JobExecutor(queue, registry=WorkerRegistry()).drain()
    failed = await queue.get_job(job.id)
    assert failed.state == JobState.DISCARDED
    assert "ghost" in failed.last_error

    executor = JobExecutor(queue, registry=WorkerRegistry())
    with pytest.raises(RuntimeError) as exc:
        await executor._invoke(failed)
    assert isinstance(exc.value.__cause__, UnknownWorkerError)


def test_backoff_grows_and_respects_cap():
    assert compute_backoff(1, base=2.0, jitter=0.0) == 2.0
    assert compute_backoff(3, base=2.0, jitter=0.0) == 8.0
    assert compute_backoff(10, base=2.0, jitter=0.5, max_delay=30.0) == 30.0
