"""Execution coordinator: drives executions through their steps.

A delivered queue job names an execution. The coordinator loads it, checks
that the job still owns it, runs the remaining steps one at a time and
commits every change with a compare-and-swap on the execution ``version``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from .conditions import ExecutionContext, evaluate
from .config import StepflowConfig
from .errors import InvariantViolation, NotFoundError, StepflowError, StoreConsistencyError
from .models import (
    ACTIVE_STATUSES,
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
    StepFailed,
    StepOutcome,
    StepResult,
    StepStatus,
    StepSucceeded,
    WorkflowExecution,
    WorkflowStep,
    utcnow,
)
from .persistence import ExecutionStore
from .queues import BaseQueue, QueueJob, new_job_id
from .runner import StepRunner
from .state import record_failure, record_skip, record_success, transition
from .utils.retry import Exhausted, Retry, RetryDecision, decide

logger = logging.getLogger(__name__)

Mutation = Callable[[WorkflowExecution], WorkflowExecution]


class DeliveryOutcome(str, Enum):
    PROCESSED = "processed"
    MISSING = "missing"
    STALE = "stale"
    NOOP = "noop"
    DEFERRED = "deferred"
    CONFLICT = "conflict"


class DeliveryResult(BaseModel):
    outcome: DeliveryOutcome
    redeliver_after: Optional[datetime] = None


class ExecutionCoordinator:
    """Consumes queue jobs and advances the executions they name."""

    def __init__(
        self,
        store: ExecutionStore,
        queue: BaseQueue,
        runner: StepRunner,
        config: Optional[StepflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        rand: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.runner = runner
        self.config = config or StepflowConfig()
        self._clock = clock
        self._rand = rand

    # ------------------------------------------------------------------
    # Delivery handling
    async def handle(self, job_id: str, execution_id: str) -> DeliveryResult:
        """Process one delivery. Step errors never escape this method."""
        try:
            return await self._handle(job_id, execution_id)
        except StoreConsistencyError as exc:
            logger.warning(f"Job {job_id} lost a race on execution {execution_id}: {exc}")
            await self._log(
                execution_id,
                f"Concurrent update detected; job {job_id} stopped",
                level=LogLevel.WARNING,
                data={"job_id": job_id, "error": str(exc)},
            )
            return DeliveryResult(outcome=DeliveryOutcome.CONFLICT)
        except NotFoundError as exc:
            logger.error(f"Job {job_id} cannot proceed: {exc}")
            return DeliveryResult(outcome=DeliveryOutcome.MISSING)

    async def _handle(self, job_id: str, execution_id: str) -> DeliveryResult:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            logger.warning(f"Job {job_id} names unknown execution {execution_id}")
            return DeliveryResult(outcome=DeliveryOutcome.MISSING)
        if execution.queue_job_id != job_id:
            logger.info(
                f"Dropping stale job {job_id} for execution {execution_id} "
                f"(current job {execution.queue_job_id})"
            )
            return DeliveryResult(outcome=DeliveryOutcome.STALE)
        if execution.status not in ACTIVE_STATUSES:
            logger.info(f"Execution {execution_id} is {execution.status.value}; nothing to do")
            return DeliveryResult(outcome=DeliveryOutcome.NOOP)

        now = self._clock()
        retry_after = execution.retry.retry_after
        if execution.status is ExecutionStatus.RETRYING and retry_after and retry_after > now:
            logger.debug(f"Job {job_id} delivered before {retry_after}; deferring")
            return DeliveryResult(outcome=DeliveryOutcome.DEFERRED, redeliver_after=retry_after)

        execution = await self._start(execution, job_id, now)
        if execution.status is ExecutionStatus.RUNNING:
            await self._run_steps(execution.id, job_id)
        return DeliveryResult(outcome=DeliveryOutcome.PROCESSED)

    async def _start(self, execution: WorkflowExecution, job_id: str, now: datetime) -> WorkflowExecution:
        plan_loaded = False
        if not execution.plan and execution.total_steps > 0:
            workflow = await self.store.get_workflow(execution.workflow_id)
            if workflow is None:
                raise NotFoundError(f"Workflow {execution.workflow_id} not found")
            execution = execution.model_copy(update={"plan": workflow.steps})
            plan_loaded = True

        exhausted = self._exhausted_while_paused(execution, now)
        if exhausted is not None:
            failed = execution
            if failed.status is not ExecutionStatus.RUNNING:
                failed = transition(failed, ExecutionStatus.RUNNING, now)
            failed = transition(failed, ExecutionStatus.FAILED, now, error=exhausted)
            failed = await self.store.update_execution(failed)
            logger.info(f"Execution {execution.id} failed: {exhausted}")
            await self._log(execution.id, f"Execution failed: {exhausted}", level=LogLevel.ERROR)
            return failed

        if execution.status is ExecutionStatus.RUNNING:
            # Redelivery after a worker died mid-step: continue where it stopped.
            logger.info(f"Continuing RUNNING execution {execution.id} with job {job_id}")
            if plan_loaded:
                return await self.store.update_execution(execution)
            return execution

        previous = execution.status
        started = await self.store.update_execution(transition(execution, ExecutionStatus.RUNNING, now))
        if previous is ExecutionStatus.PENDING and not started.step_results:
            message = f"Execution started with {started.total_steps} steps"
        else:
            message = f"Execution running from step {started.current_step}"
        logger.info(f"Execution {started.id}: {message}")
        await self._log(started.id, message)
        return started

    def _exhausted_while_paused(self, execution: WorkflowExecution, now: datetime) -> Optional[str]:
        """Reason to fail, when the step's last failure was final but never applied."""
        if execution.retry.attempt_count == 0 or execution.status is ExecutionStatus.RETRYING:
            return None
        step = execution.current_plan_step()
        last = execution.step_results[-1] if execution.step_results else None
        if step is None or last is None or last.status is not StepStatus.FAILED:
            return None
        decision = self._decide(
            execution,
            step,
            StepFailed(error=last.error or "Step failed", retryable=bool(last.retryable)),
            now,
        )
        if isinstance(decision, Exhausted):
            return f"{step.label}: {decision.reason}"
        return None

    async def _run_steps(self, execution_id: str, job_id: str) -> None:
        while True:
            execution = await self.store.get_execution(execution_id)
            if execution is None:
                raise NotFoundError(f"Execution {execution_id} disappeared")
            if execution.status is not ExecutionStatus.RUNNING or execution.queue_job_id != job_id:
                logger.info(
                    f"Execution {execution_id} is {execution.status.value}; job {job_id} stops"
                )
                return
            if execution.current_step is None:
                raise InvariantViolation(f"RUNNING execution {execution_id} has no current step")
            if execution.current_step >= execution.total_steps:
                await self._complete(execution)
                return

            step = execution.plan[execution.current_step]
            context = self._context(execution)
            started_at = self._clock()

            outcome: Optional[StepOutcome] = None
            should_run = True
            if step.conditions is not None:
                try:
                    should_run = evaluate(step.conditions, context)
                except ValueError as exc:
                    outcome = StepFailed(
                        error=f"Invalid condition: {exc}",
                        retryable=False,
                        error_type="StepValidationError",
                    )

            if outcome is None and not should_run:
                await self._skip(execution, step, job_id, started_at)
                continue

            if outcome is None:
                await self._log(
                    execution_id,
                    f"Step {step.label} started",
                    step=step,
                    data={"attempt": execution.retry.attempt_count + 1},
                )
                outcome = await self.runner.run(step, context, timeout=self._timeout(step))

            if isinstance(outcome, StepSucceeded):
                await self._succeed(execution, step, job_id, outcome, started_at)
                continue

            await self._fail(execution, step, job_id, outcome, started_at)
            return

    # ------------------------------------------------------------------
    # Step outcomes
    def _result(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        status: StepStatus,
        started_at: datetime,
        output: Any = None,
        error: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> StepResult:
        finished_at = self._clock()
        return StepResult(
            step_order=step.step_order,
            step_name=step.name,
            attempt=execution.retry.attempt_count + 1,
            status=status,
            output=output,
            error=error,
            retryable=retryable,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=max(0, int((finished_at - started_at).total_seconds() * 1000)),
        )

    async def _skip(
        self, execution: WorkflowExecution, step: WorkflowStep, job_id: str, started_at: datetime
    ) -> None:
        result = self._result(execution, step, StepStatus.SKIPPED, started_at)
        await self._commit(execution, job_id, lambda e: record_skip(e, result))
        logger.info(f"Execution {execution.id}: {step.label} skipped, conditions not met")
        await self._log(execution.id, f"Step {step.label} skipped: conditions not met", step=step)

    async def _succeed(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        job_id: str,
        outcome: StepSucceeded,
        started_at: datetime,
    ) -> None:
        result = self._result(execution, step, StepStatus.SUCCEEDED, started_at, output=outcome.output)
        await self._commit(execution, job_id, lambda e: record_success(e, result))
        logger.info(f"Execution {execution.id}: {step.label} succeeded in {result.duration_ms}ms")
        await self._log(
            execution.id,
            f"Step {step.label} succeeded",
            step=step,
            data={"duration_ms": result.duration_ms, "attempt": result.attempt, **outcome.metadata},
        )

    async def _fail(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        job_id: str,
        outcome: StepFailed,
        started_at: datetime,
    ) -> None:
        result = self._result(
            execution,
            step,
            StepStatus.FAILED,
            started_at,
            error=outcome.error,
            retryable=outcome.retryable,
        )

        def bookkeeping(e: WorkflowExecution) -> WorkflowExecution:
            return record_failure(e, result)

        now = self._clock()
        decision = self._decide(execution, step, outcome, now, attempt_count=result.attempt)
        await self._log(
            execution.id,
            f"Step {step.label} failed: {outcome.error}",
            step=step,
            level=LogLevel.ERROR,
            data={
                "attempt": result.attempt,
                "retryable": outcome.retryable,
                "error_type": outcome.error_type,
                "status_code": outcome.status_code,
            },
        )

        if isinstance(decision, Retry):
            retry_job_id = new_job_id()

            def schedule(e: WorkflowExecution) -> WorkflowExecution:
                return transition(
                    e, ExecutionStatus.RETRYING, now, retry_after=decision.after, queue_job_id=retry_job_id
                )

            _, applied = await self._commit(execution, job_id, bookkeeping, schedule)
            if not applied:
                return
            await self.queue.enqueue_delayed(execution.id, decision.after, job_id=retry_job_id)
            logger.info(
                f"Execution {execution.id}: retrying {step.label} in {decision.delay:.2f}s "
                f"(attempt {result.attempt + 1})"
            )
            await self._log(
                execution.id,
                f"Retry scheduled for step {step.label}",
                step=step,
                level=LogLevel.WARNING,
                data={"retry_after": decision.after.isoformat(), "delay": decision.delay},
            )
            return

        error = f"{step.label}: {decision.reason}"

        def finalize(e: WorkflowExecution) -> WorkflowExecution:
            return transition(e, ExecutionStatus.FAILED, now, error=error)

        _, applied = await self._commit(execution, job_id, bookkeeping, finalize)
        if applied:
            logger.info(f"Execution {execution.id} failed: {error}")
            await self._log(execution.id, f"Execution failed: {error}", level=LogLevel.ERROR)

    async def _complete(self, execution: WorkflowExecution) -> None:
        outputs = execution.step_outputs()
        last_output = None
        for step in reversed(execution.plan):
            if step.step_order in outputs:
                last_output = outputs[step.step_order]
                break
        result = {"output": last_output, "steps": {str(k): v for k, v in outputs.items()}}
        completed = await self.store.update_execution(
            transition(execution, ExecutionStatus.COMPLETED, self._clock(), result=result)
        )
        logger.info(f"Execution {completed.id} completed in {completed.execution_time}ms")
        await self._log(
            completed.id,
            "Execution completed",
            data={
                "completed_steps": completed.completed_steps,
                "skipped_steps": completed.skipped_steps,
                "execution_time": completed.execution_time,
            },
        )

    # ------------------------------------------------------------------
    # Commit protocol
    async def _commit(
        self,
        execution: WorkflowExecution,
        job_id: str,
        bookkeeping: Mutation,
        finalize: Optional[Mutation] = None,
    ) -> Tuple[WorkflowExecution, bool]:
        """Write ``finalize(bookkeeping(execution))`` with a version check.

        When the write loses to a pause of the execution this job still owns,
        only the bookkeeping is applied on top of the paused state and the
        second element of the returned tuple is ``False``.
        """
        updated = bookkeeping(execution)
        if finalize is not None:
            updated = finalize(updated)
        try:
            return await self.store.update_execution(updated), True
        except StoreConsistencyError:
            fresh = await self.store.get_execution(execution.id)
            if (
                fresh is None
                or fresh.status is not ExecutionStatus.PAUSED
                or fresh.queue_job_id != job_id
                or fresh.current_step != execution.current_step
                or fresh.retry.attempt_count != execution.retry.attempt_count
            ):
                raise
            logger.info(f"Execution {execution.id} was paused mid-step; recording result only")
            return await self.store.update_execution(bookkeeping(fresh)), False

    # ------------------------------------------------------------------
    # Helpers
    def _context(self, execution: WorkflowExecution) -> ExecutionContext:
        return ExecutionContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            user_id=execution.user_id,
            parameters=execution.parameters,
            step_outputs=execution.step_outputs(),
            variables=dict(execution.metadata.get("variables") or {}),
            attempt=execution.retry.attempt_count + 1,
        )

    def _timeout(self, step: WorkflowStep) -> float:
        return step.timeout or self.config.execution.default_step_timeout

    def _decide(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: StepFailed,
        now: datetime,
        attempt_count: Optional[int] = None,
    ) -> RetryDecision:
        overrides = step.retry_config
        retry = self.config.retry
        return decide(
            attempt_count if attempt_count is not None else execution.retry.attempt_count,
            (overrides.max_attempts if overrides and overrides.max_attempts else None)
            or execution.retry.max_attempts,
            error,
            now,
            base=(overrides.base_delay if overrides else None) or retry.base_delay,
            max_delay=(overrides.max_delay if overrides else None) or retry.max_delay,
            jitter=retry.jitter,
            rand=self._rand,
        )

    async def _log(
        self,
        execution_id: str,
        message: str,
        step: Optional[WorkflowStep] = None,
        level: LogLevel = LogLevel.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.append_log(
            ExecutionLog(
                execution_id=execution_id,
                step_order=step.step_order if step else None,
                step_name=step.name if step else None,
                level=level,
                message=message,
                data=data,
                timestamp=self._clock(),
            )
        )

    # ------------------------------------------------------------------
    # Recovery
    async def recover_overdue(self, grace: float = 60.0) -> int:
        """Re-enqueue PENDING/RETRYING executions whose job may have been lost.

        The persisted ``queue_job_id`` is reused, so a job that is still in
        the queue is not duplicated. Returns the number of executions touched.
        """
        cutoff = self._clock() - timedelta(seconds=grace)
        recovered = 0
        for status in (ExecutionStatus.PENDING, ExecutionStatus.RETRYING):
            for execution in await self.store.list_executions(status=status):
                if execution.queue_job_id is None:
                    continue
                due = execution.retry.retry_after or execution.resumed_at or execution.created_at
                if due > cutoff:
                    continue
                await self.queue.enqueue(execution.id, job_id=execution.queue_job_id)
                logger.info(
                    f"Re-enqueued overdue execution {execution.id} with job {execution.queue_job_id}"
                )
                recovered += 1
        return recovered


class ExecutionWorker:
    """Runs coordinator consumers against a queue subscription.

    While a job is being processed its visibility deadline is pushed back
    every third of the queue's visibility timeout, so a live worker keeps
    its job however long the execution runs. With ``recovery_interval`` set,
    the worker also re-enqueues overdue executions periodically.
    """

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        queue: BaseQueue,
        concurrency: int = 1,
        recovery_interval: Optional[float] = None,
        recovery_grace: float = 60.0,
    ):
        self._coordinator = coordinator
        self._queue = queue
        self._concurrency = max(1, concurrency)
        self._recovery_interval = recovery_interval
        self._recovery_grace = recovery_grace

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start consuming jobs until ``lifespan`` seconds elapse (forever if None)."""
        await self._queue.connect()
        tasks = [self._consume(i, lifespan) for i in range(self._concurrency)]
        if self._recovery_interval:
            tasks.append(self._recover(self._recovery_interval, lifespan))
        try:
            await asyncio.gather(*tasks)
        finally:
            await self._queue.disconnect()

    async def _consume(self, index: int, lifespan: Optional[float]) -> None:
        logger.info(f"Worker consumer {index} listening on queue {self._queue.name}")
        async for job in self._queue.subscribe(lifespan=lifespan):
            await self.process(job)

    async def _recover(self, interval: float, lifespan: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        while deadline is None or loop.time() < deadline:
            try:
                recovered = await self._coordinator.recover_overdue(self._recovery_grace)
            except StepflowError:
                logger.exception("Recovery sweep failed")
            else:
                if recovered:
                    logger.info(f"Recovery sweep re-enqueued {recovered} executions")
            pause = interval if deadline is None else min(interval, deadline - loop.time())
            if pause > 0:
                await asyncio.sleep(pause)

    async def _keep_alive(self, job_id: str) -> None:
        interval = max(self._queue.visibility_timeout / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            if not await self._queue.touch(job_id):
                logger.debug(f"Job {job_id} is no longer in flight; heartbeat stops")
                return

    async def process(self, job: QueueJob) -> DeliveryResult:
        """Handle one job and settle it with the queue."""
        heartbeat = asyncio.create_task(self._keep_alive(job.job_id))
        try:
            result = await self._coordinator.handle(job.job_id, job.execution_id)
        except InvariantViolation:
            logger.critical(f"Invariant violated while processing job {job.job_id}")
            await self._queue.ack(job.job_id)
            raise
        finally:
            heartbeat.cancel()
            (beat,) = await asyncio.gather(heartbeat, return_exceptions=True)
            if isinstance(beat, Exception):
                logger.warning(f"Heartbeat for job {job.job_id} failed: {beat!r}")
        if result.outcome is DeliveryOutcome.DEFERRED:
            await self._queue.nack(job.job_id, redeliver_after=result.redeliver_after)
        else:
            await self._queue.ack(job.job_id)
        return result
