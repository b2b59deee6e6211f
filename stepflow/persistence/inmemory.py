"""In-memory implementation of the execution store."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from ..errors import NotFoundError, StoreConsistencyError
from ..models import ExecutionLog, ExecutionStatus, Workflow, WorkflowExecution
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: Dict[str, List[ExecutionLog]] = {}
        self._log_id = 0
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            if execution.id in self._executions:
                raise StoreConsistencyError(f"Execution {execution.id} already exists")
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise NotFoundError(f"Execution {execution.id} not found")
            if stored.version != execution.version:
                raise StoreConsistencyError(
                    f"Execution {execution.id} changed concurrently "
                    f"(expected version {execution.version}, found {stored.version})"
                )
            updated = execution.model_copy(deep=True, update={"version": execution.version + 1})
            self._executions[execution.id] = updated
        return updated.model_copy(deep=True)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        matches = [
            e
            for e in self._executions.values()
            if (status is None or e.status is status)
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (user_id is None or e.user_id == user_id)
        ]
        return [e.model_copy(deep=True) for e in sorted(matches, key=lambda e: e.created_at)]

    async def append_log(self, entry: ExecutionLog) -> ExecutionLog:
        async with self._lock:
            entries = self._logs.setdefault(entry.execution_id, [])
            timestamp = entry.timestamp
            if entries and entries[-1].timestamp > timestamp:
                timestamp = entries[-1].timestamp
            self._log_id += 1
            stored = entry.model_copy(update={"id": self._log_id, "timestamp": timestamp})
            entries.append(stored)
        return stored.model_copy()

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        return [e.model_copy() for e in self._logs.get(execution_id, [])]
