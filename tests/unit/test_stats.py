import pytest

from jobweave.config import OrchestratorConfig
from jobweave.contracts import Job, JobState, LifecycleEvent
from jobweave.coordinator import Coordinator
from jobweave.persistence import InMemoryKeyValueStore
from jobweave.stats import StatsCollector


def make_collector():
    return StatsCollector(Coordinator(InMemoryKeyValueStore(), OrchestratorConfig()))


@pytest.mark.asyncio
async def test_counts_lifecycle_events():
    stats = make_collector()
    job = Job(id=1, worker="resize")

    await stats.track_enqueue(job)
    await stats.handle_event(LifecycleEvent(event="start", job=job))
    await stats.handle_event(
        LifecycleEvent(event="stop", job=job.model_copy(update={"state": JobState.COMPLETED}), measurements={"duration_ms": 20})
    )
    await stats.handle_event(
        LifecycleEvent(event="exception", job=job.model_copy(update={"state": JobState.RETRYABLE}), error="Timeout")
    )
    await stats.handle_event(
        LifecycleEvent(event="exception", job=job.model_copy(update={"state": JobState.DISCARDED}), error="Timeout")
    )

    summary = await stats.get_stats()
    assert summary["enqueued"] == 1
    assert summary["started"] == 1
    assert summary["by_state"] == {"completed": 1, "discarded": 1}
    assert summary["retried"] == 1
    assert summary["by_worker"] == {"resize": 1}
    assert summary["by_queue"] == {"default": 1}
    assert summary["total"] == 2
    assert [e["error"] for e in await stats.get_error_stats()] == ["Timeout"]


@pytest.mark.asyncio
async def test_worker_performance_aggregates_durations():
    stats = make_collector()
    fast = Job(id=1, worker="fast", state=JobState.COMPLETED)
    slow = Job(id=2, worker="slow", state=JobState.COMPLETED)

    for duration in (10, 30, 20):
        await stats.handle_event(LifecycleEvent(event="stop", job=fast, measurements={"duration_ms": duration}))
    await stats.handle_event(LifecycleEvent(event="stop", job=slow, measurements={"duration_ms": 500}))

    rows = await stats.get_worker_performance()
    assert [r["worker"] for r in rows] == ["fast", "slow"]
    assert rows[0] == {
        "worker": "fast",
        "count": 3,
        "avg_duration_ms": 20,
        "min_duration_ms": 10,
        "max_duration_ms": 30,
    }
    assert len(await stats.get_worker_performance(limit=1)) == 1


@pytest.mark.asyncio
async def test_error_stats_sorted_by_count():
    stats = make_collector()
    job = Job(id=1, worker="w", state=JobState.DISCARDED)

    for error in ["ValueError: a", "KeyError: b", "ValueError: a", "ValueError: a\ntraceback"]:
        await stats.handle_event(LifecycleEvent(event="exception", job=job, error=error))

    errors = await stats.get_error_stats()
    assert [(e["error"], e["count"]) for e in errors] == [("ValueError: a", 3), ("KeyError: b", 1)]
    assert "last_seen" in errors[0]


@pytest.mark.asyncio
async def test_reset_stats():
    stats = make_collector()
    await stats.track_enqueue(Job(id=1, worker="w"))
    await stats.reset_stats()

    summary = await stats.get_stats()
    assert summary["enqueued"] == 0
    assert summary["by_worker"] == {}


@pytest.mark.asyncio
async def test_orchestrator_stats_end_to_end(orchestrator, executor):
    await orchestrator.enqueue("double", {"value": 2})
    await orchestrator.enqueue("boom", {})
    await executor.drain()

    summary = await orchestrator.get_stats()
    assert summary["by_state"]["completed"] == 1
    assert summary["by_state"]["discarded"] == 1
    performance = {r["worker"]: r for r in await orchestrator.get_worker_performance()}
    assert performance["double"]["count"] == 1
    assert (await orchestrator.get_error_stats())[0]["error"] == "RuntimeError: boom"


@pytest.mark.asyncio
async def test_retries_and_cancellations_are_not_failures(orchestrator, registry, executor):
    @registry.worker("flaky", max_attempts=2)
    async def flaky(args, job):
        if job.attempt == 1:
            raise RuntimeError("transient")
        return "ok"

    await orchestrator.enqueue("flaky", {})
    workflow_id = await orchestrator.start_workflow({"steps": [{"id": "a", "worker": "sleepy"}]})
    await orchestrator.cancel_workflow(workflow_id)
    await orchestrator.executor(backoff_base=0.01).start(lifespan=1.0)

    summary = await orchestrator.get_stats()
    assert summary["by_state"] == {"completed": 1, "cancelled": 1}
    assert summary["retried"] == 1
    assert summary["total"] == 2
    assert await orchestrator.get_error_stats() == []
