"""End-to-end workflow runs through the in-memory queue and executor."""

import asyncio
from datetime import timedelta

import pytest

from jobweave.config import JobweaveConfig, OrchestratorConfig, QueueConfig
from jobweave.contracts import JobSpec, JobState, utcnow
from jobweave.models import StepStatus, WorkflowState
from jobweave.orchestrator import Orchestrator
from jobweave.persistence import SQLiteKeyValueStore
from jobweave.queue import StoreJobQueue


def diamond(on_complete=None, on_failure=None, right_worker="double"):
    return {
        "name": "diamond",
        "steps": [
            {"id": "root", "worker": "echo", "args": {"value": 1}},
            {"id": "left", "worker": "double", "args": {"value": 2}, "depends_on": ["root"]},
            {"id": "right", "worker": right_worker, "args": {"value": 3}, "depends_on": ["root"]},
            {"id": "join", "worker": "echo", "args": {"value": "j"}, "depends_on": ["left", "right"]},
        ],
        "on_complete": on_complete,
        "on_failure": on_failure,
    }


@pytest.mark.asyncio
async def test_steps_run_only_after_dependencies(orchestrator, registry, executor):
    order = []

    @registry.worker("track")
    async def track(args, job):
        order.append(args["__step_id__"])
        return args["__step_id__"]

    workflow_id = await orchestrator.start_workflow(
        {
            "steps": [
                {"id": "a", "worker": "track"},
                {"id": "b", "worker": "track", "depends_on": ["a"]},
                {"id": "c", "worker": "track", "depends_on": ["a"]},
                {"id": "d", "worker": "track", "depends_on": ["b", "c"]},
            ]
        }
    )
    await executor.drain()

    assert order[0] == "a"
    assert set(order[1:3]) == {"b", "c"}
    assert order[3] == "d"
    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.COMPLETED
    assert status.results == {"a": "a", "b": "b", "c": "c", "d": "d"}


@pytest.mark.asyncio
async def test_completed_workflow_fires_on_complete_once(orchestrator, executor, callbacks):
    workflow_id = await orchestrator.start_workflow(
        diamond(
            on_complete=JobSpec(worker="notify", args={"tag": "ok"}),
            on_failure=JobSpec(worker="notify", args={"tag": "failed"}),
        )
    )
    await executor.drain()

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.COMPLETED
    assert status.results == {"root": 1, "left": 4, "right": 6, "join": "j"}
    assert status.duration_ms >= 0

    summaries = callbacks()
    assert len(summaries) == 1
    assert summaries[0]["workflow_id"] == workflow_id
    assert summaries[0]["status"] == "completed"
    assert summaries[0]["results"]["left"] == 4


@pytest.mark.asyncio
async def test_failed_step_fails_workflow_and_blocks_dependents(orchestrator, executor, calls, callbacks):
    workflow_id = await orchestrator.start_workflow(
        diamond(
            on_complete=JobSpec(worker="notify", args={"tag": "ok"}),
            on_failure=JobSpec(worker="notify", args={"tag": "failed"}),
            right_worker="boom",
        )
    )
    await executor.drain()

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.FAILED
    assert status.steps["right"] == StepStatus.FAILED
    assert status.steps["join"] == StepStatus.PENDING
    assert status.errors == [{"step_id": "right", "error": "RuntimeError: boom"}]
    assert "join" not in status.results

    summaries = callbacks()
    assert [s["status"] for s in summaries] == ["failed"]
    assert [a["tag"] for w, a in calls if w == "notify"] == ["failed"]


@pytest.mark.asyncio
async def test_retryable_failure_does_not_fail_step(orchestrator, registry):
    attempts = []

    @registry.worker("flaky", max_attempts=3)
    async def flaky(args, job):
        attempts.append(job.attempt)
        if job.attempt == 1:
            raise ValueError("transient")
        return "recovered"

    workflow_id = await orchestrator.start_workflow({"steps": [{"id": "only", "worker": "flaky"}]})
    await orchestrator.executor(backoff_base=0.01).start(lifespan=1.0)

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert attempts == [1, 2]
    assert status.status == WorkflowState.COMPLETED
    assert status.results == {"only": "recovered"}


@pytest.mark.asyncio
async def test_pause_holds_new_steps_until_resume(orchestrator, executor, calls):
    workflow_id = await orchestrator.start_workflow(
        {
            "steps": [
                {"id": "first", "worker": "echo", "args": {"value": 1}},
                {"id": "second", "worker": "echo", "args": {"value": 2}, "depends_on": ["first"]},
            ]
        }
    )
    await orchestrator.pause_workflow(workflow_id)
    await executor.drain()

    # The in-flight step finished and its result was recorded, nothing new started.
    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.PAUSED
    assert status.results == {"first": 1}
    assert status.steps["second"] == StepStatus.PENDING
    assert len(calls) == 1

    await orchestrator.resume_workflow(workflow_id)
    await executor.drain()

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.COMPLETED
    assert status.results == {"first": 1, "second": 2}


@pytest.mark.asyncio
async def test_sibling_keeps_running_after_failure(orchestrator, registry, executor):
    finished = []

    @registry.worker("slow_ok")
    async def slow_ok(args, job):
        await asyncio.sleep(0.05)
        finished.append(job.id)
        return "late"

    workflow_id = await orchestrator.start_workflow(
        {"steps": [{"id": "bad", "worker": "boom"}, {"id": "good", "worker": "slow_ok"}]}
    )
    await executor.drain()

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.FAILED
    assert len(finished) == 1
    # Late completion of the sibling is ignored.
    assert status.steps["good"] == StepStatus.RUNNING
    assert status.results == {}


@pytest.mark.asyncio
async def test_siblings_cancelled_when_configured(registry):
    orchestrator = Orchestrator(
        registry=registry,
        config=JobweaveConfig(orchestrator=OrchestratorConfig(cancel_siblings_on_failure=True)),
    )

    @registry.worker("waiting")
    async def waiting(args, job):
        return "never runs"

    workflow_id = await orchestrator.start_workflow(
        {"steps": [{"id": "bad", "worker": "boom"}, {"id": "idle", "worker": "waiting", "args": {}}]}
    )
    jobs = {j.worker: j for j in await orchestrator.queue.list_jobs()}

    # Run only the failing step.
    await orchestrator.queue.fetch_available(limit=1)
    await orchestrator.queue.fail(jobs["boom"].id, "RuntimeError: boom")

    idle = await orchestrator.queue.get_job(jobs["waiting"].id)
    assert idle.state == JobState.CANCELLED
    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.FAILED


@pytest.mark.asyncio
async def test_job_cancelled_outside_workflow_fails_step(orchestrator):
    workflow_id = await orchestrator.start_workflow({"steps": [{"id": "a", "worker": "echo"}]})
    job = (await orchestrator.queue.list_jobs())[0]

    await orchestrator.cancel_job(job.id)

    status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
    assert status.status == WorkflowState.FAILED
    assert status.errors == [{"step_id": "a", "error": "cancelled"}]


@pytest.mark.asyncio
async def test_sweep_times_out_overdue_workflows(orchestrator):
    overdue = await orchestrator.start_workflow(
        {"timeout": 30, "steps": [{"id": "a", "worker": "sleepy"}]}
    )
    fresh = await orchestrator.start_workflow(
        {"timeout": 3600, "steps": [{"id": "a", "worker": "sleepy"}]}
    )

    expired = await orchestrator.workflows.expire_overdue(now=utcnow() + timedelta(seconds=60))
    assert expired == [overdue]

    status = (await orchestrator.get_workflow_status(overdue)).unwrap()
    assert status.status == WorkflowState.FAILED
    assert status.errors == [{"step_id": None, "error": "timeout"}]
    assert (await orchestrator.get_workflow_status(fresh)).unwrap().status == WorkflowState.RUNNING

    result = await orchestrator.sweep()
    assert result["timed_out"] == []


@pytest.mark.asyncio
async def test_workflow_runs_on_store_backed_queue(tmp_path, registry, callbacks):
    store = SQLiteKeyValueStore(tmp_path / "jobs.db")
    orchestrator = Orchestrator(
        queue=StoreJobQueue(store),
        store=store,
        registry=registry,
        config=JobweaveConfig(
            queue=QueueConfig(backend="store", backoff_base=0.0),
            orchestrator=OrchestratorConfig(poll_interval=0.01),
        ),
    )
    try:
        workflow_id = await orchestrator.start_workflow(
            diamond(on_complete=JobSpec(worker="notify", args={}))
        )
        await orchestrator.executor().drain()

        status = (await orchestrator.get_workflow_status(workflow_id)).unwrap()
        assert status.status == WorkflowState.COMPLETED
        assert status.results == {"root": 1, "left": 4, "right": 6, "join": "j"}
        assert len(callbacks()) == 1

        # A second queue on the same database sees the finished jobs.
        other = StoreJobQueue(SQLiteKeyValueStore(tmp_path / "jobs.db"))
        jobs = await other.list_jobs()
        assert all(job.state == JobState.COMPLETED for job in jobs)
        other.store.close()
    finally:
        store.close()
