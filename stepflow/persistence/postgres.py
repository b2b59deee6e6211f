"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import asyncpg

from ..errors import NotFoundError, StoreConsistencyError
from ..models import ExecutionLog, ExecutionStatus, Workflow, WorkflowExecution, WorkflowStep
from .models import EXECUTION_COLUMNS, execution_from_row, execution_to_row, log_from_row
from .repository import ExecutionStore

logger = logging.getLogger(__name__)

_SELECT_EXECUTION = f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM workflow_executions"


class PostgresExecutionStore(ExecutionStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                user_id TEXT NOT NULL,
                description TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id),
                step_order INTEGER NOT NULL,
                definition JSONB NOT NULL,
                UNIQUE (workflow_id, step_order)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status VARCHAR(20) NOT NULL,
                version INTEGER NOT NULL,
                plan JSONB NOT NULL,
                parameters JSONB NOT NULL,
                metadata JSONB NOT NULL,
                current_step INTEGER,
                total_steps INTEGER NOT NULL,
                completed_steps INTEGER NOT NULL,
                failed_steps INTEGER NOT NULL,
                skipped_steps INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                retry_after TIMESTAMPTZ,
                queue_job_id TEXT,
                queue_name TEXT,
                paused_at TIMESTAMPTZ,
                paused_by TEXT,
                resumed_at TIMESTAMPTZ,
                resumed_by TEXT,
                cancelled_at TIMESTAMPTZ,
                cancelled_by TEXT,
                result JSONB,
                error TEXT,
                step_results JSONB NOT NULL,
                execution_time INTEGER,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id BIGSERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_order INTEGER,
                step_name TEXT,
                level VARCHAR(10) NOT NULL,
                message TEXT NOT NULL,
                data JSONB,
                timestamp TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions(status)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs(execution_id)"
        )
        logger.info("Execution tables initialized")

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO workflows (id, name, user_id, description, created_at) VALUES ($1, $2, $3, $4, $5)",
                    workflow.id,
                    workflow.name,
                    workflow.user_id,
                    workflow.description,
                    workflow.created_at,
                )
                await conn.executemany(
                    "INSERT INTO workflow_steps (id, workflow_id, step_order, definition) VALUES ($1, $2, $3, $4)",
                    [
                        (step.id, workflow.id, step.step_order, step.model_dump_json())
                        for step in workflow.steps
                    ],
                )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, user_id, description, created_at FROM workflows WHERE id = $1",
                workflow_id,
            )
            if not row:
                return None
            step_rows = await conn.fetch(
                "SELECT definition FROM workflow_steps WHERE workflow_id = $1 ORDER BY step_order",
                workflow_id,
            )
        return Workflow(
            id=row["id"],
            name=row["name"],
            user_id=row["user_id"],
            description=row["description"],
            created_at=row["created_at"],
            steps=[WorkflowStep.model_validate_json(r["definition"]) for r in step_rows],
        )

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        row = execution_to_row(execution, datetimes_as_text=False)
        placeholders = ", ".join(f"${i}" for i in range(1, len(EXECUTION_COLUMNS) + 1))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO workflow_executions ({', '.join(EXECUTION_COLUMNS)}) VALUES ({placeholders})",
                    *[row[c] for c in EXECUTION_COLUMNS],
                )
            except asyncpg.UniqueViolationError as exc:
                raise StoreConsistencyError(f"Execution {execution.id} already exists") from exc
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"{_SELECT_EXECUTION} WHERE id = $1", execution_id)
        return execution_from_row(row) if row else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        updated = execution.model_copy(deep=True, update={"version": execution.version + 1})
        row = execution_to_row(updated, datetimes_as_text=False)
        columns = [c for c in EXECUTION_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        id_param = len(columns) + 1
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                f"UPDATE workflow_executions SET {assignments} "
                f"WHERE id = ${id_param} AND version = ${id_param + 1}",
                *[row[c] for c in columns],
                execution.id,
                execution.version,
            )
            if status == "UPDATE 1":
                return updated
            current = await conn.fetchval(
                "SELECT version FROM workflow_executions WHERE id = $1", execution.id
            )
        if current is None:
            raise NotFoundError(f"Execution {execution.id} not found")
        raise StoreConsistencyError(
            f"Execution {execution.id} changed concurrently "
            f"(expected version {execution.version}, found {current})"
        )

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status.value if status is not None else None),
            ("workflow_id", workflow_id),
            ("user_id", user_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"{_SELECT_EXECUTION}{where} ORDER BY created_at", *params)
        return [execution_from_row(r) for r in rows]

    async def append_log(self, entry: ExecutionLog) -> ExecutionLog:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serialize appends per execution so timestamps stay ordered.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", entry.execution_id
                )
                previous = await conn.fetchval(
                    "SELECT max(timestamp) FROM execution_logs WHERE execution_id = $1",
                    entry.execution_id,
                )
                timestamp = entry.timestamp
                if previous is not None and previous > timestamp:
                    timestamp = previous
                log_id = await conn.fetchval(
                    """
                    INSERT INTO execution_logs
                    (execution_id, step_order, step_name, level, message, data, timestamp)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING id
                    """,
                    entry.execution_id,
                    entry.step_order,
                    entry.step_name,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.data) if entry.data is not None else None,
                    timestamp,
                )
        return entry.model_copy(update={"id": log_id, "timestamp": timestamp})

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, execution_id, step_order, step_name, level, message, data, timestamp
                FROM execution_logs WHERE execution_id = $1 ORDER BY id
                """,
                execution_id,
            )
        return [log_from_row(r) for r in rows]
