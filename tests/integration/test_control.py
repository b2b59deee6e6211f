"""Control API: state validation, progress and metrics."""

import pytest

from stepflow.errors import ConflictError, InvalidStateError, NotFoundError, StoreConsistencyError
from stepflow.errors import NonRetryableStepError
from stepflow.models import ExecutionStatus
from stepflow.persistence import InMemoryExecutionStore


@pytest.mark.asyncio
async def test_submit_snapshots_plan_and_enqueues(engine):
    workflow = await engine.workflow(steps=2)
    execution = await engine.control.submit(
        workflow.id, "alice", {"region": "eu"}, max_attempts=4, metadata={"source": "api"}
    )

    assert execution.status is ExecutionStatus.PENDING
    assert execution.total_steps == 2
    assert [s.step_order for s in execution.plan] == [0, 1]
    assert execution.retry.max_attempts == 4
    assert execution.metadata == {"source": "api"}

    pending = await engine.queue.pending_jobs()
    assert [j.job_id for j in pending] == [execution.queue_job_id]


@pytest.mark.asyncio
async def test_submit_unknown_workflow(engine):
    with pytest.raises(NotFoundError):
        await engine.control.submit("nope", "alice")


@pytest.mark.asyncio
async def test_unknown_execution_raises_not_found(engine):
    with pytest.raises(NotFoundError):
        await engine.control.get_status("nope")
    with pytest.raises(NotFoundError):
        await engine.control.pause("nope", "alice")
    with pytest.raises(NotFoundError):
        await engine.control.get_logs("nope")


@pytest.mark.asyncio
async def test_invalid_transitions(engine):
    workflow = await engine.workflow(steps=1)
    execution = await engine.control.submit(workflow.id, "alice")

    with pytest.raises(InvalidStateError) as info:
        await engine.control.resume(execution.id, "alice")
    assert not isinstance(info.value, ConflictError)

    await engine.control.pause(execution.id, "alice")
    with pytest.raises(InvalidStateError):
        await engine.control.pause(execution.id, "alice")


@pytest.mark.asyncio
async def test_terminal_executions_raise_conflict(engine):
    workflow = await engine.workflow(steps=1)
    completed = await engine.control.submit(workflow.id, "alice")
    await engine.drain()

    for action in (engine.control.pause, engine.control.resume, engine.control.cancel):
        with pytest.raises(ConflictError):
            await action(completed.id, "alice")

    cancelled = await engine.control.submit(workflow.id, "alice")
    await engine.control.cancel(cancelled.id, "alice")
    with pytest.raises(ConflictError):
        await engine.control.cancel(cancelled.id, "alice")


@pytest.mark.asyncio
async def test_pause_retries_on_version_conflict(engine_factory):
    class RacingStore(InMemoryExecutionStore):
        def __init__(self):
            super().__init__()
            self.conflicts = 1

        async def update_execution(self, execution):
            if self.conflicts:
                self.conflicts -= 1
                raise StoreConsistencyError("simulated concurrent write")
            return await super().update_execution(execution)

    store = RacingStore()
    engine = engine_factory(store=store)
    workflow = await engine.workflow(steps=1)
    execution = await engine.control.submit(workflow.id, "alice")

    paused = await engine.control.pause(execution.id, "alice")
    assert paused.status is ExecutionStatus.PAUSED
    assert store.conflicts == 0


@pytest.mark.asyncio
async def test_pause_gives_up_after_repeated_conflicts(engine_factory):
    class AlwaysRacingStore(InMemoryExecutionStore):
        async def update_execution(self, execution):
            raise StoreConsistencyError("simulated concurrent write")

    engine = engine_factory(store=AlwaysRacingStore())
    workflow = await engine.workflow(steps=1)
    execution = await engine.control.submit(workflow.id, "alice")

    with pytest.raises(StoreConsistencyError):
        await engine.control.pause(execution.id, "alice")


@pytest.mark.asyncio
async def test_control_actions_are_logged(engine):
    workflow = await engine.workflow(steps=1)
    execution = await engine.control.submit(workflow.id, "alice")
    await engine.control.pause(execution.id, "alice")
    await engine.control.resume(execution.id, "bob")
    await engine.control.cancel(execution.id, "carol")

    messages = [entry.message for entry in await engine.control.get_logs(execution.id)]
    assert messages[1:] == [
        "Execution paused by alice",
        "Execution resumed by bob",
        "Execution cancelled by carol",
    ]


@pytest.mark.asyncio
async def test_progress_reporting(engine):
    workflow = await engine.workflow(steps=4)

    async def pause_after_two(step, context):
        engine.clock.advance(10)
        await engine.control.pause(context.execution_id, "alice")
        return {"ok": True}

    engine.executor.script(1, pause_after_two)
    execution = await engine.control.submit(workflow.id, "alice")

    progress = await engine.control.get_progress(execution.id)
    assert progress.progress == 0
    assert progress.current_step is None

    await engine.drain()
    progress = await engine.control.get_progress(execution.id)
    assert progress.status is ExecutionStatus.PAUSED
    assert progress.completed_steps == 2
    assert progress.progress == 50
    assert progress.estimated_time_remaining is None

    await engine.control.resume(execution.id, "alice")
    await engine.drain()
    progress = await engine.control.get_progress(execution.id)
    assert progress.progress == 100


@pytest.mark.asyncio
async def test_metrics(engine):
    workflow = await engine.workflow(steps=1)
    engine.executor.script(0, {"ok": 1}, NonRetryableStepError("400 Bad Request"))

    first = await engine.control.submit(workflow.id, "alice")
    await engine.drain()
    second = await engine.control.submit(workflow.id, "alice")
    await engine.drain()
    third = await engine.control.submit(workflow.id, "bob")
    await engine.control.cancel(third.id, "bob")
    await engine.control.submit(workflow.id, "bob")

    assert (await engine.control.get_status(first.id)).status is ExecutionStatus.COMPLETED
    assert (await engine.control.get_status(second.id)).status is ExecutionStatus.FAILED

    metrics = await engine.control.get_metrics(workflow_id=workflow.id)
    assert metrics.total_executions == 4
    assert metrics.successful_executions == 1
    assert metrics.failed_executions == 1
    assert metrics.cancelled_executions == 1
    assert metrics.active_executions == 1
    assert metrics.success_rate == 25.0
    assert metrics.average_execution_time == 0.0

    alice = await engine.control.get_metrics(user_id="alice")
    assert alice.total_executions == 2
    assert alice.success_rate == 50.0


@pytest.mark.asyncio
async def test_list_executions_by_status(engine):
    workflow = await engine.workflow(steps=1)
    kept = await engine.control.submit(workflow.id, "alice")
    paused = await engine.control.submit(workflow.id, "alice")
    await engine.control.pause(paused.id, "alice")

    pending = await engine.control.list_executions(status=ExecutionStatus.PENDING)
    assert [e.id for e in pending] == [kept.id]
    assert len(await engine.control.list_executions(workflow_id=workflow.id)) == 2
