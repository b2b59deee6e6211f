"""Domain models for workflows, executions and their history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .conditions import Condition
from .constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_QUEUE_NAME


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset(
    {ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.RETRYING}
)


class StepType(str, Enum):
    API_CALL = "api_call"
    TRANSFORM = "transform"


class StepStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StepRetryConfig(BaseModel):
    """Per-step override of the execution retry defaults."""

    max_attempts: Optional[int] = Field(default=None, ge=1)
    base_delay: Optional[float] = Field(default=None, gt=0)
    max_delay: Optional[float] = Field(default=None, gt=0)


class WorkflowStep(BaseModel):
    """Defines one step in a workflow."""

    id: str = Field(default_factory=new_id)
    step_order: int = Field(ge=0)
    name: str = ""
    type: StepType = StepType.API_CALL
    connection_ref: Optional[str] = None
    action: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    conditions: Optional[Condition] = None
    retry_config: Optional[StepRetryConfig] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    idempotent: bool = True

    @property
    def label(self) -> str:
        return self.name or f"step {self.step_order}"


class Workflow(BaseModel):
    """Ordered template of steps."""

    id: str = Field(default_factory=new_id)
    name: str
    user_id: str
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("steps")
    @classmethod
    def _strictly_increasing(cls, steps: List[WorkflowStep]) -> List[WorkflowStep]:
        orders = [s.step_order for s in steps]
        if any(b <= a for a, b in zip(orders, orders[1:])):
            raise ValueError(f"step_order must be unique and strictly increasing: {orders}")
        return steps


class StepResult(BaseModel):
    """Outcome of one attempt of one step."""

    step_order: int
    step_name: str = ""
    attempt: int = 1
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    retryable: Optional[bool] = None
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0

    @model_validator(mode="after")
    def _error_iff_failed(self) -> "StepResult":
        if (self.status is StepStatus.FAILED) != (self.error is not None):
            raise ValueError("error must be present exactly when status is FAILED")
        return self


class RetryState(BaseModel):
    """Retry bookkeeping for the step currently in progress."""

    attempt_count: int = 0
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_after: Optional[datetime] = None

    def reset(self) -> "RetryState":
        return RetryState(max_attempts=self.max_attempts)


class WorkflowExecution(BaseModel):
    """One run of a workflow, with its own state and history."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING

    plan: List[WorkflowStep] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    current_step: Optional[int] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0

    retry: RetryState = Field(default_factory=RetryState)

    queue_job_id: Optional[str] = None
    queue_name: Optional[str] = DEFAULT_QUEUE_NAME

    paused_at: Optional[datetime] = None
    paused_by: Optional[str] = None
    resumed_at: Optional[datetime] = None
    resumed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None

    result: Any = None
    error: Optional[str] = None
    step_results: List[StepResult] = Field(default_factory=list)
    execution_time: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def current_plan_step(self) -> Optional[WorkflowStep]:
        if self.current_step is None or self.current_step >= len(self.plan):
            return None
        return self.plan[self.current_step]

    def step_outputs(self) -> Dict[int, Any]:
        """Latest successful output of each step, keyed by ``step_order``."""
        outputs: Dict[int, Any] = {}
        for entry in self.step_results:
            if entry.status is StepStatus.SUCCEEDED:
                outputs[entry.step_order] = entry.output
        return outputs


class ExecutionLog(BaseModel):
    """Append-only log entry attached to an execution."""

    id: Optional[int] = None
    execution_id: str
    step_order: Optional[int] = None
    step_name: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StepSucceeded(BaseModel):
    status: Literal["SUCCEEDED"] = "SUCCEEDED"
    output: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepFailed(BaseModel):
    status: Literal["FAILED"] = "FAILED"
    error: str
    retryable: bool
    error_type: str = "StepError"
    status_code: Optional[int] = None


StepOutcome = Union[StepSucceeded, StepFailed]


class ExecutionProgress(BaseModel):
    execution_id: str
    status: ExecutionStatus
    current_step: Optional[int]
    total_steps: int
    completed_steps: int
    failed_steps: int
    skipped_steps: int
    progress: int
    estimated_time_remaining: Optional[int] = None


class ExecutionMetrics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    active_executions: int = 0
    average_execution_time: float = 0.0
    success_rate: float = 0.0
