import asyncio
import importlib
import json

import pytest
from typer.testing import CliRunner

from jobweave.cli import app
from jobweave.config import JobweaveConfig, OrchestratorConfig, QueueConfig, StoreConfig
from jobweave.contracts import JobState
from jobweave.orchestrator import Orchestrator
from jobweave.persistence import SQLiteKeyValueStore
from jobweave.queue import StoreJobQueue


@pytest.fixture
def sqlite_path(tmp_path, monkeypatch):
    db_path = tmp_path / "jobweave.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"store:\n  backend: sqlite\n  sqlite_path: {db_path}\nqueue:\n  backend: store\n"
    )
    monkeypatch.setenv("JOBWEAVE_CONFIG", str(config_path))
    monkeypatch.delenv("JOBWEAVE_STORE", raising=False)
    monkeypatch.delenv("JOBWEAVE_TRANSPORT", raising=False)
    monkeypatch.delenv("JOBWEAVE_QUEUE", raising=False)
    return db_path


def _orchestrator(store, db_path, registry):
    return Orchestrator(
        queue=StoreJobQueue(store),
        store=store,
        registry=registry,
        config=JobweaveConfig(
            store=StoreConfig(backend="sqlite", sqlite_path=str(db_path)),
            queue=QueueConfig(backend="store"),
            orchestrator=OrchestratorConfig(poll_interval=0.01),
        ),
    )


def _stored_jobs(db_path):
    store = SQLiteKeyValueStore(db_path)
    try:
        return asyncio.run(StoreJobQueue(store).list_jobs())
    finally:
        store.close()


def _populate(db_path, registry):
    """Run a few jobs against the SQLite store the CLI reads from."""
    store = SQLiteKeyValueStore(db_path)
    orchestrator = _orchestrator(store, db_path, registry)

    async def _run():
        done = await orchestrator.start_workflow(
            {"name": "etl", "steps": [{"id": "fetch", "worker": "echo", "args": {"value": 1}}]}
        )
        pending = await orchestrator.start_workflow(
            {"name": "slow", "steps": [{"id": "wait", "worker": "sleepy"}]}
        )
        handle = await orchestrator.batch([1, 2, 3], "echo", batch_size=2)
        await orchestrator.report_batch_progress({"__batch__": {"id": handle.batch_id, "index": 0}}, "success")
        job = await orchestrator.enqueue("double", {"value": 4})
        await orchestrator.update_progress(job.id, 40, "halfway")
        # Run only the workflow's first step so the other workflow stays running.
        fetched = await orchestrator.queue.fetch_available(limit=1)
        await orchestrator.queue.complete(fetched[0].id, 1, duration_ms=5)
        return done, pending, handle.batch_id, job.id

    try:
        return asyncio.run(_run())
    finally:
        store.close()


def test_workflow_list_and_status(sqlite_path, registry):
    done, pending, _, _ = _populate(sqlite_path, registry)
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.stdout
    assert f"{done}\tetl\tcompleted" in result.stdout
    assert f"{pending}\tslow\trunning" in result.stdout

    result = runner.invoke(app, ["workflow", "status", done])
    assert result.exit_code == 0, result.stdout
    assert f"Workflow {done} (etl): completed" in result.stdout
    assert "- fetch: completed" in result.stdout

    missing = runner.invoke(app, ["workflow", "status", "wf_missing"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_list_empty(sqlite_path):
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_cancel(sqlite_path, registry):
    done, pending, _, _ = _populate(sqlite_path, registry)
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "cancel", pending])
    assert result.exit_code == 0, result.stdout
    assert f"Workflow {pending} cancelled" in result.stdout
    assert "cancelled" in runner.invoke(app, ["workflow", "status", pending]).stdout

    # The step job is cancelled in the shared queue, not in a throwaway copy.
    waiting = [job for job in _stored_jobs(sqlite_path) if job.meta.get("workflow_id") == pending]
    assert [job.state for job in waiting] == [JobState.CANCELLED]

    again = runner.invoke(app, ["workflow", "cancel", done])
    assert again.exit_code == 1


def test_batch_and_progress_commands(sqlite_path, registry):
    _, _, batch_id, job_id = _populate(sqlite_path, registry)
    runner = CliRunner()

    result = runner.invoke(app, ["batch", "status", batch_id])
    assert result.exit_code == 0, result.stdout
    assert "running 1 completed, 0 failed of 2" in result.stdout
    assert runner.invoke(app, ["batch", "status", "batch_missing"]).exit_code == 1

    result = runner.invoke(app, ["progress", "get", str(job_id)])
    assert result.exit_code == 0, result.stdout
    assert f"Job {job_id}: 40% halfway" in result.stdout

    missing = runner.invoke(app, ["progress", "get", "9999"])
    assert missing.exit_code == 1
    assert "No progress recorded" in missing.stdout


def test_stats_show_outputs_json(sqlite_path, registry):
    _populate(sqlite_path, registry)
    result = CliRunner().invoke(app, ["stats", "show", "--performance"])
    assert result.exit_code == 0, result.stdout

    data = json.loads(result.stdout)
    assert data["stats"]["by_state"]["completed"] == 1
    assert data["performance"][0]["worker"] == "echo"
    assert "errors" not in data


def test_dead_letter_list_shows_failures_from_another_process(sqlite_path, registry):
    runner = CliRunner()
    assert "No dead letters" in runner.invoke(app, ["dead-letter", "list"]).stdout

    store = SQLiteKeyValueStore(sqlite_path)
    orchestrator = _orchestrator(store, sqlite_path, registry)

    async def _run():
        job = await orchestrator.enqueue("boom", {"value": 1}, queue="risky")
        await orchestrator.executor(queues=["risky"]).drain()
        return job

    try:
        failed = asyncio.run(_run())
    finally:
        store.close()

    result = runner.invoke(app, ["dead-letter", "list"])
    assert result.exit_code == 0, result.stdout
    lines = result.stdout.strip().splitlines()
    assert len(lines) == 1
    assert lines[0].endswith("\tboom\tRuntimeError: boom")
    held_id = int(lines[0].split("\t")[0])
    assert held_id != failed.id


def test_worker_run_executes_jobs_enqueued_elsewhere(sqlite_path, tmp_path, monkeypatch):
    (tmp_path / "cli_workers.py").write_text(
        "from jobweave import REGISTRY\n"
        "\n"
        "@REGISTRY.worker('cli_shout')\n"
        "async def cli_shout(args, job):\n"
        "    return args['text'].upper()\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    importlib.import_module("cli_workers")

    from jobweave import REGISTRY

    store = SQLiteKeyValueStore(sqlite_path)
    try:
        job = asyncio.run(
            _orchestrator(store, sqlite_path, REGISTRY).enqueue("cli_shout", {"text": "hi"})
        )
    finally:
        store.close()

    result = CliRunner().invoke(app, ["worker", "run", "cli_workers", "--lifespan", "0.5"])
    assert result.exit_code == 0, result.stdout

    done = next(j for j in _stored_jobs(sqlite_path) if j.id == job.id)
    assert done.state == JobState.COMPLETED
    assert done.result == "HI"
