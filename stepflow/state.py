"""Execution state machine: allowed transitions and pure bookkeeping.

Every function here takes an execution and returns an updated copy; nothing
touches the store or the queue.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from .errors import ConflictError, InvalidStateError, InvariantViolation
from .models import ExecutionStatus, StepResult, StepStatus, WorkflowExecution

S = ExecutionStatus

TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    S.PENDING: frozenset({S.RUNNING, S.PAUSED, S.CANCELLED}),
    S.RUNNING: frozenset({S.COMPLETED, S.RETRYING, S.FAILED, S.PAUSED, S.CANCELLED}),
    S.RETRYING: frozenset({S.RUNNING, S.FAILED, S.PAUSED, S.CANCELLED}),
    S.PAUSED: frozenset({S.PENDING, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

_missing = set(ExecutionStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transitions declared for {sorted(s.value for s in _missing)}")


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    """Raise if ``current -> target`` is not a declared transition."""
    if current.is_terminal:
        raise ConflictError(f"Execution is {current.value} and accepts no further transitions")
    if not can_transition(current, target):
        raise InvalidStateError(f"Cannot move execution from {current.value} to {target.value}")


def _elapsed_ms(execution: WorkflowExecution, now: datetime) -> int:
    start = execution.started_at or execution.created_at
    return max(0, int((now - start).total_seconds() * 1000))


def transition(
    execution: WorkflowExecution,
    target: ExecutionStatus,
    now: datetime,
    *,
    actor: Optional[str] = None,
    error: Optional[str] = None,
    result: Any = None,
    retry_after: Optional[datetime] = None,
    queue_job_id: Optional[str] = None,
) -> WorkflowExecution:
    """Apply the side effects of moving ``execution`` to ``target``."""
    ensure_transition(execution.status, target)
    updated = execution.model_copy(deep=True)
    updated.status = target

    if target is S.RUNNING:
        if updated.current_step is None:
            updated.current_step = 0
        if updated.started_at is None:
            updated.started_at = now
        updated.retry.retry_after = None
    elif target is S.RETRYING:
        if retry_after is None or queue_job_id is None:
            raise InvariantViolation("RETRYING requires retry_after and a new queue job id")
        updated.retry.retry_after = retry_after
        updated.queue_job_id = queue_job_id
    elif target is S.COMPLETED:
        updated.result = result
        updated.error = None
        updated.queue_job_id = None
        updated.current_step = None
        updated.completed_at = now
        updated.execution_time = _elapsed_ms(execution, now)
    elif target is S.FAILED:
        updated.result = None
        updated.error = error or "Execution failed"
        updated.current_step = None
        updated.completed_at = now
        updated.execution_time = _elapsed_ms(execution, now)
    elif target is S.PAUSED:
        updated.paused_at = now
        updated.paused_by = actor
    elif target is S.PENDING:
        updated.resumed_at = now
        updated.resumed_by = actor
        updated.retry.retry_after = None
        if queue_job_id is not None:
            updated.queue_job_id = queue_job_id
    elif target is S.CANCELLED:
        updated.cancelled_at = now
        updated.cancelled_by = actor
        updated.completed_at = now
        updated.current_step = None
    else:  # pragma: no cover - guarded by the TRANSITIONS completeness check
        raise InvariantViolation(f"Unhandled status {target}")

    check_invariants(updated)
    return updated


def _advance(execution: WorkflowExecution) -> None:
    if execution.current_step is None:
        raise InvariantViolation("Cannot advance an execution that has not started")
    if execution.current_step >= execution.total_steps:
        raise InvariantViolation(
            f"Cannot advance past step {execution.current_step} of {execution.total_steps}"
        )
    execution.current_step += 1


def record_success(execution: WorkflowExecution, result: StepResult) -> WorkflowExecution:
    """Append a SUCCEEDED result and move to the next step."""
    if result.status is not StepStatus.SUCCEEDED:
        raise InvariantViolation(f"record_success got a {result.status.value} result")
    updated = execution.model_copy(deep=True)
    updated.step_results.append(result)
    updated.completed_steps += 1
    if updated.retry.attempt_count > 0:
        # The step had been counted as failed on its first failed attempt.
        updated.failed_steps -= 1
    updated.retry = updated.retry.reset()
    _advance(updated)
    check_invariants(updated)
    return updated


def record_skip(execution: WorkflowExecution, result: StepResult) -> WorkflowExecution:
    """Append a SKIPPED result and move to the next step."""
    if result.status is not StepStatus.SKIPPED:
        raise InvariantViolation(f"record_skip got a {result.status.value} result")
    updated = execution.model_copy(deep=True)
    updated.step_results.append(result)
    updated.skipped_steps += 1
    if updated.retry.attempt_count > 0:
        updated.failed_steps -= 1
    updated.retry = updated.retry.reset()
    _advance(updated)
    check_invariants(updated)
    return updated


def record_failure(execution: WorkflowExecution, result: StepResult) -> WorkflowExecution:
    """Append a FAILED result and count the attempt. Does not advance."""
    if result.status is not StepStatus.FAILED:
        raise InvariantViolation(f"record_failure got a {result.status.value} result")
    updated = execution.model_copy(deep=True)
    updated.step_results.append(result)
    if updated.retry.attempt_count == 0:
        updated.failed_steps += 1
    updated.retry.attempt_count += 1
    check_invariants(updated)
    return updated


def check_invariants(execution: WorkflowExecution) -> None:
    """Fail loudly when progress counters are inconsistent."""
    e = execution
    if min(e.completed_steps, e.failed_steps, e.skipped_steps, e.total_steps) < 0:
        raise InvariantViolation(f"Negative progress counter on execution {e.id}")
    if e.completed_steps + e.failed_steps + e.skipped_steps > e.total_steps:
        raise InvariantViolation(
            f"Execution {e.id}: completed ({e.completed_steps}) + failed ({e.failed_steps}) "
            f"+ skipped ({e.skipped_steps}) exceeds total ({e.total_steps})"
        )
    if e.current_step is not None and not (
        e.completed_steps <= e.current_step <= e.total_steps
    ):
        raise InvariantViolation(
            f"Execution {e.id}: current_step {e.current_step} outside "
            f"[{e.completed_steps}, {e.total_steps}]"
        )
    if e.current_step is not None and e.status.is_terminal:
        raise InvariantViolation(f"Execution {e.id} is terminal but has a current step")
