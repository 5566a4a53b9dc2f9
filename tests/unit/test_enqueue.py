import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from jobweave.contracts import JobSpec, JobState
from jobweave.errors import JobValidationError, UniqueViolationError, UnknownWorkerError


@pytest.mark.asyncio
async def test_enqueue_applies_config_and_worker_defaults(orchestrator, registry):
    registry.register("reporter", lambda args, job: None, queue="reports", priority=1)

    plain = await orchestrator.enqueue("echo", {"value": 1})
    report = await orchestrator.enqueue("reporter", {}, max_attempts=7)

    assert (plain.queue, plain.priority, plain.max_attempts) == ("default", 3, 3)
    assert (report.queue, report.priority, report.max_attempts) == ("reports", 1, 7)


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_worker_and_bad_options(orchestrator):
    with pytest.raises(UnknownWorkerError) as exc:
        await orchestrator.enqueue("nope", {})
    assert exc.value.code == "unknown_worker"

    with pytest.raises(JobValidationError) as exc:
        await orchestrator.enqueue("echo", {}, priority=42)
    assert exc.value.code == "invalid_options"

    with pytest.raises(JobValidationError) as exc:
        await orchestrator.enqueue("echo", {}, colour="red")
    assert exc.value.code == "invalid_options"

    with pytest.raises(JobValidationError) as exc:
        await orchestrator.enqueue("echo", ["not", "a", "dict"])
    assert exc.value.code == "invalid_args"

    assert await orchestrator.queue.list_jobs() == []


@pytest.mark.asyncio
async def test_queue_errors_propagate(orchestrator):
    await orchestrator.enqueue("echo", {"value": 1}, unique={"period": 30})
    with pytest.raises(UniqueViolationError):
        await orchestrator.enqueue("echo", {"value": 1}, unique={"period": 30})


@pytest.mark.asyncio
async def test_enqueue_many_all_or_nothing(orchestrator):
    with pytest.raises(JobValidationError):
        await orchestrator.enqueue_many(
            [("echo", {"value": 1}), JobSpec(worker="double"), ("missing", {})]
        )
    assert await orchestrator.queue.list_jobs() == []

    jobs = await orchestrator.enqueue_many(
        [("echo", {"value": 1}), JobSpec(worker="double"), ("echo", {}, {"priority": 0})]
    )
    assert [j.worker for j in jobs] == ["echo", "double", "echo"]
    assert jobs[2].priority == 0


@pytest.mark.asyncio
async def test_schedule_and_schedule_in(orchestrator):
    at = datetime.now(timezone.utc) + timedelta(hours=1)
    scheduled = await orchestrator.schedule("echo", {}, at)
    delayed = await orchestrator.schedule_in("echo", {}, 120)

    assert scheduled.state == JobState.SCHEDULED
    assert scheduled.scheduled_at == at
    assert delayed.state == JobState.SCHEDULED


@pytest.mark.asyncio
async def test_enqueue_and_wait_returns_result(orchestrator, executor):
    task = asyncio.create_task(executor.start(lifespan=1.0))
    result = await orchestrator.enqueue_and_wait("double", {"value": 21}, timeout=2)
    await task

    assert result.ok
    assert result.value == 42


@pytest.mark.asyncio
async def test_enqueue_and_wait_reports_discard(orchestrator, executor):
    task = asyncio.create_task(executor.start(lifespan=1.0))
    result = await orchestrator.enqueue_and_wait("boom", {}, timeout=2)
    await task

    assert not result.ok
    assert result.error == "discarded"
    assert "boom" in result.detail["errors"][0]["error"]


@pytest.mark.asyncio
async def test_enqueue_and_wait_times_out(orchestrator):
    # No executor running, so the job never finishes.
    started = time.monotonic()
    result = await orchestrator.enqueue_and_wait("echo", {}, timeout=0.2)
    elapsed = time.monotonic() - started

    assert result.error == "timeout"
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_enqueue_counts_in_stats(orchestrator):
    await orchestrator.enqueue("echo", {})
    await orchestrator.enqueue("echo", {}, queue="other")
    await orchestrator.enqueue("double", {})

    stats = await orchestrator.get_stats()
    assert stats["enqueued"] == 3
    assert stats["by_worker"] == {"echo": 2, "double": 1}
    assert stats["by_queue"] == {"default": 2, "other": 1}
