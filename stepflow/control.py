"""Control surface for submitting and steering executions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import StepflowConfig
from .constants import CONTROL_CAS_ATTEMPTS
from .errors import NotFoundError, StoreConsistencyError
from .models import (
    ExecutionLog,
    ExecutionMetrics,
    ExecutionProgress,
    ExecutionStatus,
    LogLevel,
    RetryState,
    WorkflowExecution,
    utcnow,
)
from .persistence import ExecutionStore
from .queues import BaseQueue, new_job_id
from .state import ensure_transition, transition

logger = logging.getLogger(__name__)


class ExecutionControl:
    """Submit, pause, resume and cancel executions and read their state.

    Mutations are compare-and-swap writes. When a write loses to a concurrent
    update the current state is re-read, the request is validated again and
    the write is retried, up to ``CONTROL_CAS_ATTEMPTS`` times.
    """

    def __init__(
        self,
        store: ExecutionStore,
        queue: BaseQueue,
        config: Optional[StepflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.config = config or StepflowConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    async def submit(
        self,
        workflow_id: str,
        user_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Create a PENDING execution of ``workflow_id`` and enqueue it."""
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        job_id = new_job_id()
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            user_id=user_id,
            plan=workflow.steps,
            parameters=parameters or {},
            metadata=metadata or {},
            total_steps=len(workflow.steps),
            retry=RetryState(max_attempts=max_attempts or self.config.retry.max_attempts),
            queue_job_id=job_id,
            queue_name=self.queue.name,
            created_at=self._clock(),
        )
        execution = await self.store.create_execution(execution)
        await self.queue.enqueue(execution.id, job_id=job_id)
        logger.info(
            f"Submitted execution {execution.id} of workflow {workflow.id} "
            f"({execution.total_steps} steps) as job {job_id}"
        )
        await self._log(
            execution.id,
            f"Execution queued with {execution.total_steps} steps",
            data={"job_id": job_id, "max_attempts": execution.retry.max_attempts},
        )
        return execution

    # ------------------------------------------------------------------
    # Mutations
    async def pause(self, execution_id: str, actor: str) -> WorkflowExecution:
        """Pause a PENDING, RUNNING or RETRYING execution.

        The queued job is kept; its delivery is a no-op while paused.
        """
        paused = await self._mutate(
            execution_id,
            ExecutionStatus.PAUSED,
            lambda e, now: transition(e, ExecutionStatus.PAUSED, now, actor=actor),
        )
        logger.info(f"Execution {execution_id} paused by {actor}")
        await self._log(execution_id, f"Execution paused by {actor}")
        return paused

    async def resume(self, execution_id: str, actor: str) -> WorkflowExecution:
        """Resume a PAUSED execution from its current step with a fresh job."""
        job_id = new_job_id()
        resumed = await self._mutate(
            execution_id,
            ExecutionStatus.PENDING,
            lambda e, now: transition(e, ExecutionStatus.PENDING, now, actor=actor, queue_job_id=job_id),
        )
        await self.queue.enqueue(execution_id, job_id=job_id)
        logger.info(f"Execution {execution_id} resumed by {actor} at step {resumed.current_step}")
        await self._log(
            execution_id,
            f"Execution resumed by {actor}",
            data={"job_id": job_id, "current_step": resumed.current_step},
        )
        return resumed

    async def cancel(self, execution_id: str, actor: str) -> WorkflowExecution:
        """Cancel a non-terminal execution."""
        cancelled = await self._mutate(
            execution_id,
            ExecutionStatus.CANCELLED,
            lambda e, now: transition(e, ExecutionStatus.CANCELLED, now, actor=actor),
        )
        previous_job = cancelled.queue_job_id
        if previous_job and not await self.queue.cancel(previous_job):
            logger.debug(f"Job {previous_job} of execution {execution_id} was not queued")
        logger.info(f"Execution {execution_id} cancelled by {actor}")
        await self._log(execution_id, f"Execution cancelled by {actor}")
        return cancelled

    async def _mutate(
        self,
        execution_id: str,
        target: ExecutionStatus,
        apply: Callable[[WorkflowExecution, datetime], WorkflowExecution],
    ) -> WorkflowExecution:
        last_error: Optional[StoreConsistencyError] = None
        for _ in range(CONTROL_CAS_ATTEMPTS):
            execution = await self._require(execution_id)
            ensure_transition(execution.status, target)
            try:
                return await self.store.update_execution(apply(execution, self._clock()))
            except StoreConsistencyError as exc:
                logger.debug(f"Retrying {target.value} of execution {execution_id}: {exc}")
                last_error = exc
        raise StoreConsistencyError(
            f"Could not move execution {execution_id} to {target.value} "
            f"after {CONTROL_CAS_ATTEMPTS} attempts"
        ) from last_error

    # ------------------------------------------------------------------
    # Queries
    async def get_status(self, execution_id: str) -> WorkflowExecution:
        return await self._require(execution_id)

    async def get_progress(self, execution_id: str) -> ExecutionProgress:
        execution = await self._require(execution_id)
        total = execution.total_steps
        done = execution.completed_steps + execution.skipped_steps
        if execution.status is ExecutionStatus.COMPLETED:
            progress = 100
        else:
            progress = round(done / total * 100) if total else 0

        remaining: Optional[int] = None
        current = execution.current_step
        if (
            execution.status is ExecutionStatus.RUNNING
            and current
            and execution.started_at is not None
        ):
            elapsed_ms = (self._clock() - execution.started_at).total_seconds() * 1000
            remaining = int(elapsed_ms / current * (total - current))

        return ExecutionProgress(
            execution_id=execution.id,
            status=execution.status,
            current_step=current,
            total_steps=total,
            completed_steps=execution.completed_steps,
            failed_steps=execution.failed_steps,
            skipped_steps=execution.skipped_steps,
            progress=progress,
            estimated_time_remaining=remaining,
        )

    async def get_logs(self, execution_id: str) -> List[ExecutionLog]:
        await self._require(execution_id)
        return await self.store.list_logs(execution_id)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        return await self.store.list_executions(status=status, workflow_id=workflow_id, user_id=user_id)

    async def get_metrics(
        self, workflow_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> ExecutionMetrics:
        """Aggregate counts and timings over matching executions."""
        executions = await self.store.list_executions(workflow_id=workflow_id, user_id=user_id)
        total = len(executions)
        by_status: Dict[ExecutionStatus, int] = {}
        for e in executions:
            by_status[e.status] = by_status.get(e.status, 0) + 1

        successful = by_status.get(ExecutionStatus.COMPLETED, 0)
        times = [
            e.execution_time
            for e in executions
            if e.status is ExecutionStatus.COMPLETED and e.execution_time is not None
        ]
        return ExecutionMetrics(
            total_executions=total,
            successful_executions=successful,
            failed_executions=by_status.get(ExecutionStatus.FAILED, 0),
            cancelled_executions=by_status.get(ExecutionStatus.CANCELLED, 0),
            active_executions=sum(1 for e in executions if not e.is_terminal),
            average_execution_time=sum(times) / len(times) if times else 0.0,
            success_rate=successful / total * 100 if total else 0.0,
        )

    # ------------------------------------------------------------------
    async def _require(self, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def _log(
        self,
        execution_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.append_log(
            ExecutionLog(
                execution_id=execution_id,
                level=level,
                message=message,
                data=data,
                timestamp=self._clock(),
            )
        )
