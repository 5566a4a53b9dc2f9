"""Command line interface for running workers and inspecting orchestration state."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from typing import List, Optional

import typer

from jobweave import Orchestrator
from jobweave.errors import InvalidStateError, NotFoundError

app = typer.Typer(help="CLI for jobweave job orchestration")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
workflow_app = typer.Typer(help="Commands for inspecting workflows")
batch_app = typer.Typer(help="Commands for inspecting batches")
progress_app = typer.Typer(help="Commands for reading job progress")
stats_app = typer.Typer(help="Commands for job statistics")
dead_letter_app = typer.Typer(help="Commands for the dead-letter queue")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(batch_app, name="batch")
app.add_typer(progress_app, name="progress")
app.add_typer(stats_app, name="stats")
app.add_typer(dead_letter_app, name="dead-letter")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """jobweave CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@worker_app.command("run")
def worker_run(
    module: str,
    queue: Optional[List[str]] = typer.Option(None, "--queue", "-q", help="Queues to consume"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run an executor for the workers registered by ``module``.

    The module is imported first so its ``@REGISTRY.worker`` decorators run.
    The periodic sweep and the recurring-job scheduler run alongside the
    executor. Jobs are shared with other processes when the queue backend
    is ``store``.

    Example:
        jobweave worker run myapp.workers --queue default --lifespan 300
    """
    try:
        importlib.import_module(module)
    except ImportError as exc:
        typer.secho(f"Cannot import {module}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    orchestrator = Orchestrator.from_config()
    executor = orchestrator.executor(queues=queue or None)
    typer.echo(f"Starting worker for: {', '.join(orchestrator.registry.workers)}")

    async def _run() -> None:
        await orchestrator.connect()
        try:
            await asyncio.gather(
                executor.start(lifespan=lifespan),
                orchestrator.run_sweeper(lifespan=lifespan),
                orchestrator.run_scheduler(lifespan=lifespan),
            )
        finally:
            await orchestrator.disconnect()

    asyncio.run(_run())


@workflow_app.command("status")
def workflow_status(workflow_id: str) -> None:
    """
    Show a workflow's status and the status of each of its steps.

    Example:
        jobweave workflow status wf_3f2a9c1b0d4e5f60
        # Output: Workflow wf_3f2a9c1b0d4e5f60 (etl): running
        #         - fetch: completed
        #         - transform: running
    """
    orchestrator = Orchestrator.from_config()
    result = asyncio.run(orchestrator.get_workflow_status(workflow_id))
    if not result.ok:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    status = result.value
    typer.echo(f"Workflow {status.workflow_id} ({status.name}): {status.status.value}")
    for step_id, step_status in status.steps.items():
        typer.echo(f"- {step_id}: {step_status.value}")
    for error in status.errors:
        typer.echo(f"! {error.get('step_id') or '-'}: {error.get('error')}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflows with their status."""
    orchestrator = Orchestrator.from_config()
    workflows = asyncio.run(orchestrator.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.name}\t{wf.status.value}")


@workflow_app.command("cancel")
def workflow_cancel(workflow_id: str) -> None:
    """Cancel a running or paused workflow."""
    orchestrator = Orchestrator.from_config()
    try:
        asyncio.run(orchestrator.cancel_workflow(workflow_id))
    except (NotFoundError, InvalidStateError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} cancelled")


@batch_app.command("status")
def batch_status(batch_id: str) -> None:
    """Show how many chunks of a batch succeeded or failed."""
    orchestrator = Orchestrator.from_config()
    result = asyncio.run(orchestrator.batch_status(batch_id))
    if not result.ok:
        typer.echo("Batch not found")
        raise typer.Exit(code=1)
    batch = result.value
    typer.echo(
        f"Batch {batch.id} ({batch.worker}): {batch.status.value} "
        f"{batch.completed} completed, {batch.failed} failed of {batch.total}"
    )


@progress_app.command("get")
def progress_get(job_id: int) -> None:
    orchestrator = Orchestrator.from_config()
    result = asyncio.run(orchestrator.get_progress(job_id))
    if not result.ok:
        typer.echo("No progress recorded")
        raise typer.Exit(code=1)
    progress = result.value
    typer.echo(f"Job {job_id}: {progress.percentage}% {progress.message}".rstrip())


@stats_app.command("show")
def stats_show(
    errors: bool = typer.Option(False, help="Include the most frequent errors"),
    performance: bool = typer.Option(False, help="Include per-worker durations"),
) -> None:
    """Print job counters as JSON."""
    orchestrator = Orchestrator.from_config()

    async def _collect():
        data = {"stats": await orchestrator.get_stats()}
        if errors:
            data["errors"] = await orchestrator.get_error_stats()
        if performance:
            data["performance"] = await orchestrator.get_worker_performance()
        return data

    _echo_json(asyncio.run(_collect()))


@dead_letter_app.command("list")
def dead_letter_list() -> None:
    """List jobs held on the dead-letter queue."""
    orchestrator = Orchestrator.from_config()
    jobs = asyncio.run(orchestrator.list_dead_letters())
    if not jobs:
        typer.echo("No dead letters")
        return
    for job in jobs:
        typer.echo(
            f"{job.id}\t{job.args.get('original_worker')}\t{job.args.get('failure_reason')}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
