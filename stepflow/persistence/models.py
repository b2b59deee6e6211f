"""Row mapping shared by the SQL-backed stores."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..models import (
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
    RetryState,
    StepResult,
    WorkflowExecution,
    WorkflowStep,
)

EXECUTION_COLUMNS = (
    "id",
    "workflow_id",
    "user_id",
    "status",
    "version",
    "plan",
    "parameters",
    "metadata",
    "current_step",
    "total_steps",
    "completed_steps",
    "failed_steps",
    "skipped_steps",
    "attempt_count",
    "max_attempts",
    "retry_after",
    "queue_job_id",
    "queue_name",
    "paused_at",
    "paused_by",
    "resumed_at",
    "resumed_by",
    "cancelled_at",
    "cancelled_by",
    "result",
    "error",
    "step_results",
    "execution_time",
    "created_at",
    "started_at",
    "completed_at",
)


def _dump_datetime(value: Optional[datetime], as_text: bool) -> Any:
    if value is None or not as_text:
        return value
    return value.isoformat()


def load_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def execution_to_row(execution: WorkflowExecution, datetimes_as_text: bool = True) -> Dict[str, Any]:
    """Flatten an execution into column values."""
    data = execution.model_dump(mode="json")
    row: Dict[str, Any] = {
        "id": execution.id,
        "workflow_id": execution.workflow_id,
        "user_id": execution.user_id,
        "status": execution.status.value,
        "version": execution.version,
        "plan": json.dumps(data["plan"]),
        "parameters": json.dumps(data["parameters"]),
        "metadata": json.dumps(data["metadata"]),
        "current_step": execution.current_step,
        "total_steps": execution.total_steps,
        "completed_steps": execution.completed_steps,
        "failed_steps": execution.failed_steps,
        "skipped_steps": execution.skipped_steps,
        "attempt_count": execution.retry.attempt_count,
        "max_attempts": execution.retry.max_attempts,
        "retry_after": _dump_datetime(execution.retry.retry_after, datetimes_as_text),
        "queue_job_id": execution.queue_job_id,
        "queue_name": execution.queue_name,
        "paused_at": _dump_datetime(execution.paused_at, datetimes_as_text),
        "paused_by": execution.paused_by,
        "resumed_at": _dump_datetime(execution.resumed_at, datetimes_as_text),
        "resumed_by": execution.resumed_by,
        "cancelled_at": _dump_datetime(execution.cancelled_at, datetimes_as_text),
        "cancelled_by": execution.cancelled_by,
        "result": json.dumps(data["result"]),
        "error": execution.error,
        "step_results": json.dumps(data["step_results"]),
        "execution_time": execution.execution_time,
        "created_at": _dump_datetime(execution.created_at, datetimes_as_text),
        "started_at": _dump_datetime(execution.started_at, datetimes_as_text),
        "completed_at": _dump_datetime(execution.completed_at, datetimes_as_text),
    }
    return row


def execution_from_row(row: Mapping[str, Any]) -> WorkflowExecution:
    return WorkflowExecution(
        id=row["id"],
        workflow_id=row["workflow_id"],
        user_id=row["user_id"],
        status=ExecutionStatus(row["status"]),
        version=row["version"],
        plan=[WorkflowStep.model_validate(s) for s in load_json(row["plan"]) or []],
        parameters=load_json(row["parameters"]) or {},
        metadata=load_json(row["metadata"]) or {},
        current_step=row["current_step"],
        total_steps=row["total_steps"],
        completed_steps=row["completed_steps"],
        failed_steps=row["failed_steps"],
        skipped_steps=row["skipped_steps"],
        retry=RetryState(
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            retry_after=load_datetime(row["retry_after"]),
        ),
        queue_job_id=row["queue_job_id"],
        queue_name=row["queue_name"],
        paused_at=load_datetime(row["paused_at"]),
        paused_by=row["paused_by"],
        resumed_at=load_datetime(row["resumed_at"]),
        resumed_by=row["resumed_by"],
        cancelled_at=load_datetime(row["cancelled_at"]),
        cancelled_by=row["cancelled_by"],
        result=load_json(row["result"]),
        error=row["error"],
        step_results=[StepResult.model_validate(r) for r in load_json(row["step_results"]) or []],
        execution_time=row["execution_time"],
        created_at=load_datetime(row["created_at"]),
        started_at=load_datetime(row["started_at"]),
        completed_at=load_datetime(row["completed_at"]),
    )


def log_from_row(row: Mapping[str, Any]) -> ExecutionLog:
    return ExecutionLog(
        id=row["id"],
        execution_id=row["execution_id"],
        step_order=row["step_order"],
        step_name=row["step_name"],
        level=LogLevel(row["level"]),
        message=row["message"],
        data=load_json(row["data"]),
        timestamp=load_datetime(row["timestamp"]),
    )
