"""Command line interface for running stepflow workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import StepflowConfig, load_config
from .control import ExecutionControl
from .coordinator import ExecutionCoordinator, ExecutionWorker
from .credentials import StaticCredentialResolver
from .errors import StepflowError
from .models import ExecutionStatus, Workflow
from .persistence import ExecutionStore, get_store
from .queues import BaseQueue, get_queue
from .runner import StepRunner

T = TypeVar("T")

app = typer.Typer(help="CLI for stepflow workflow executions")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting and steering executions")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main() -> None:
    """stepflow CLI entry point."""
    pass


def _setup(config: Optional[StepflowConfig] = None) -> StepflowConfig:
    config = config or load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return config


def build_worker(
    config: StepflowConfig,
    store: Optional[ExecutionStore] = None,
    queue: Optional[BaseQueue] = None,
    concurrency: Optional[int] = None,
) -> ExecutionWorker:
    """Wire a worker from configuration."""
    store = store or get_store(config=config)
    queue = queue or get_queue(config=config)
    return ExecutionWorker(
        _coordinator(config, store, queue),
        queue,
        concurrency=concurrency or config.execution.worker_concurrency,
        recovery_interval=config.execution.recovery_interval or None,
        recovery_grace=config.execution.recovery_grace,
    )


def _coordinator(config: StepflowConfig, store: ExecutionStore, queue: BaseQueue) -> ExecutionCoordinator:
    runner = StepRunner(
        StaticCredentialResolver(config.connections),
        default_timeout=config.execution.default_step_timeout,
    )
    return ExecutionCoordinator(store, queue, runner, config=config)


async def _with_control(config: StepflowConfig, action: Callable[[ExecutionControl], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh control surface, then release its connections."""
    control = ExecutionControl(get_store(config=config), get_queue(config=config), config=config)
    try:
        return await action(control)
    finally:
        await control.store.close()
        await control.queue.disconnect()


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = None,
    concurrency: Optional[int] = None,
) -> None:
    """
    Run a worker process that executes queued workflow executions.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)
        concurrency: Number of jobs processed in parallel (default: from config)

    Example:
        stepflow worker run --concurrency 4
        stepflow worker run --lifespan 300
    """
    config = _setup()
    store = get_store(config=config)
    worker = build_worker(config, store=store, concurrency=concurrency)
    typer.echo(f"Starting worker on queue {config.queue.name} ({config.queue.backend})")

    async def _run() -> None:
        try:
            await worker.start(lifespan=lifespan)
        finally:
            await store.close()

    asyncio.run(_run())


@worker_app.command("recover")
def worker_recover(grace: Optional[float] = None) -> None:
    """
    Re-enqueue pending or retrying executions whose queue job was lost.

    Example:
        stepflow worker recover --grace 120
    """
    config = _setup()

    async def _recover() -> int:
        store = get_store(config=config)
        queue = get_queue(config=config)
        try:
            coordinator = _coordinator(config, store, queue)
            return await coordinator.recover_overdue(
                grace if grace is not None else config.execution.recovery_grace
            )
        finally:
            await store.close()
            await queue.disconnect()

    typer.echo(f"Re-enqueued {asyncio.run(_recover())} executions")


@workflow_app.command("register")
def workflow_register(path: Path) -> None:
    """
    Register a workflow defined in a YAML file.

    Example:
        stepflow workflow register workflows/orders.yaml
    """
    config = _setup()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    workflow = Workflow.model_validate(data)

    async def _register() -> None:
        store = get_store(config=config)
        try:
            await store.create_workflow(workflow)
        finally:
            await store.close()

    asyncio.run(_register())
    typer.echo(f"Registered workflow {workflow.id} ({len(workflow.steps)} steps)")


@execution_app.command("submit")
def execution_submit(
    workflow_id: str,
    user: str = typer.Option(..., help="User on whose behalf the workflow runs"),
    params: Optional[str] = typer.Option(None, help="Execution parameters as a JSON object"),
    max_attempts: Optional[int] = None,
) -> None:
    """Submit a new execution of a registered workflow."""
    config = _setup()
    parameters = json.loads(params) if params else {}
    try:
        execution = asyncio.run(
            _with_control(
                config,
                lambda c: c.submit(workflow_id, user, parameters, max_attempts=max_attempts),
            )
        )
    except StepflowError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = None,
    workflow_id: Optional[str] = None,
) -> None:
    """
    List executions with their current status.

    Example:
        stepflow execution list --status RUNNING
    """
    config = _setup()
    executions = asyncio.run(
        _with_control(config, lambda c: c.list_executions(status=status, workflow_id=workflow_id))
    )
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(f"{e.id}\t{e.status.value}\t{e.completed_steps}/{e.total_steps}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show detailed information for an execution.

    Displays status, progress, step results and the execution log.

    Example:
        stepflow execution show 5f0c...
    """
    config = _setup()

    async def _load(control: ExecutionControl):
        return (
            await control.get_status(execution_id),
            await control.get_progress(execution_id),
            await control.get_logs(execution_id),
        )

    try:
        execution, progress, logs = asyncio.run(_with_control(config, _load))
    except StepflowError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)

    typer.echo(f"Execution {execution.id}: {execution.status.value} ({progress.progress}%)")
    typer.echo(
        f"Steps: {execution.completed_steps} completed, {execution.failed_steps} failed, "
        f"{execution.skipped_steps} skipped of {execution.total_steps}"
    )
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    for r in execution.step_results:
        typer.echo(
            f"- step {r.step_order} {r.step_name} attempt {r.attempt}: {r.status.value}"
            + (f" ({r.error})" if r.error else "")
        )
    for entry in logs:
        typer.echo(f"  {entry.timestamp.isoformat()} {entry.level.value} {entry.message}")


def _steer(action: str, execution_id: str, actor: str) -> None:
    config = _setup()
    try:
        execution = asyncio.run(
            _with_control(config, lambda c: getattr(c, action)(execution_id, actor))
        )
    except StepflowError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("pause")
def execution_pause(execution_id: str, actor: str = "cli") -> None:
    """Pause a pending, running or retrying execution."""
    _steer("pause", execution_id, actor)


@execution_app.command("resume")
def execution_resume(execution_id: str, actor: str = "cli") -> None:
    """Resume a paused execution."""
    _steer("resume", execution_id, actor)


@execution_app.command("cancel")
def execution_cancel(execution_id: str, actor: str = "cli") -> None:
    """Cancel a non-terminal execution."""
    _steer("cancel", execution_id, actor)


if __name__ == "__main__":
    app()
