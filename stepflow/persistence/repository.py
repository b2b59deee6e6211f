"""Store abstraction for workflow and execution persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..models import ExecutionLog, ExecutionStatus, Workflow, WorkflowExecution


class ExecutionStore(Protocol):
    """Protocol for execution persistence backends.

    ``update_execution`` is the only way an execution changes after it is
    created. It is a compare-and-swap on ``version``: the write is applied
    only if the stored version equals ``execution.version`` and the returned
    copy carries the incremented version.
    """

    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a workflow and its steps."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow with its ordered steps."""

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve the last committed state of an execution."""

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Conditionally write ``execution``.

        Raises:
            NotFoundError: The execution does not exist.
            StoreConsistencyError: The stored version differs from ``execution.version``.
        """

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        """Return executions matching the filters, oldest first."""

    async def append_log(self, entry: ExecutionLog) -> ExecutionLog:
        """Append a log entry. Timestamps never go backwards within an execution."""

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        """Return an execution's log entries in order."""

    async def close(self) -> None:
        """Release connections held by the store."""
