"""Shared fixtures: a fake clock, a scripted step executor and a wired engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from stepflow.config import StepflowConfig
from stepflow.control import ExecutionControl
from stepflow.coordinator import DeliveryResult, ExecutionCoordinator, ExecutionWorker
from stepflow.credentials import StaticCredentialResolver
from stepflow.models import StepSucceeded, StepType, Workflow, WorkflowStep
from stepflow.persistence import InMemoryExecutionStore
from stepflow.queues import InMemoryQueue
from stepflow.runner import StepExecutor, StepRunner


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedExecutor(StepExecutor):
    """Plays back per-step behaviours.

    A behaviour is an output value, an exception instance to raise, or an
    async callable ``(step, context)`` returning either. Steps without a
    script succeed with ``{"step": <order>}``.
    """

    type = StepType.API_CALL

    def __init__(self) -> None:
        self.scripts: Dict[int, List[Any]] = {}
        self.calls: List[int] = []

    def script(self, step_order: int, *behaviours: Any) -> None:
        self.scripts[step_order] = list(behaviours)

    async def execute(self, step, context):
        self.calls.append(step.step_order)
        pending = self.scripts.get(step.step_order)
        behaviour = pending.pop(0) if pending else {"step": step.step_order}
        if callable(behaviour):
            behaviour = await behaviour(step, context)
        if isinstance(behaviour, BaseException):
            raise behaviour
        return StepSucceeded(output=behaviour)


class Engine:
    """Store, queue, coordinator, worker and control wired around a fake clock."""

    def __init__(self, store=None, queue=None) -> None:
        self.clock = FakeClock()
        self.config = StepflowConfig()
        self.store = store or InMemoryExecutionStore()
        self.queue = queue or InMemoryQueue(clock=self.clock)
        self.executor = ScriptedExecutor()
        self.runner = StepRunner(StaticCredentialResolver())
        self.runner.register_executor(self.executor)
        self.coordinator = ExecutionCoordinator(
            self.store,
            self.queue,
            self.runner,
            config=self.config,
            clock=self.clock,
            rand=lambda low, high: 0.0,
        )
        self.control = ExecutionControl(self.store, self.queue, config=self.config, clock=self.clock)
        self.worker = ExecutionWorker(self.coordinator, self.queue)

    async def workflow(self, steps: int = 3, **overrides: Any) -> Workflow:
        workflow = Workflow(
            name="orders",
            user_id="alice",
            steps=[
                WorkflowStep(step_order=i, name=f"step-{i}", action="GET /orders", **overrides)
                for i in range(steps)
            ],
        )
        await self.store.create_workflow(workflow)
        return workflow

    async def drain(self, max_deliveries: int = 50) -> List[DeliveryResult]:
        """Deliver due jobs, jumping the clock to the next scheduled job when idle."""
        results: List[DeliveryResult] = []
        for _ in range(max_deliveries):
            job = await self.queue.receive()
            if job is None:
                pending = await self.queue.pending_jobs()
                if not pending:
                    break
                if pending[0].not_before > self.clock.now:
                    self.clock.now = pending[0].not_before
                continue
            results.append(await self.worker.process(job))
        return results


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Engine:
    return Engine()


@pytest.fixture
def engine_factory():
    return Engine
