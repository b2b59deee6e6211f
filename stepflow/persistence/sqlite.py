"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..errors import NotFoundError, StoreConsistencyError
from ..models import ExecutionLog, ExecutionStatus, Workflow, WorkflowExecution, WorkflowStep
from .models import (
    EXECUTION_COLUMNS,
    execution_from_row,
    execution_to_row,
    load_datetime,
    log_from_row,
)
from .repository import ExecutionStore

_SELECT_EXECUTION = f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM workflow_executions"


class SQLiteExecutionStore(ExecutionStore):
    """Persist workflows, executions and their logs in a SQLite file."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    async def close(self) -> None:
        def _close() -> None:
            with self._lock:
                self._conn.close()

        await asyncio.to_thread(_close)

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                user_id TEXT NOT NULL,
                description TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id),
                step_order INTEGER NOT NULL,
                definition TEXT NOT NULL,
                UNIQUE (workflow_id, step_order)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                plan TEXT NOT NULL,
                parameters TEXT NOT NULL,
                metadata TEXT NOT NULL,
                current_step INTEGER,
                total_steps INTEGER NOT NULL,
                completed_steps INTEGER NOT NULL,
                failed_steps INTEGER NOT NULL,
                skipped_steps INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                retry_after TEXT,
                queue_job_id TEXT,
                queue_name TEXT,
                paused_at TEXT,
                paused_by TEXT,
                resumed_at TEXT,
                resumed_by TEXT,
                cancelled_at TEXT,
                cancelled_by TEXT,
                result TEXT,
                error TEXT,
                step_results TEXT NOT NULL,
                execution_time INTEGER,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                step_order INTEGER,
                step_name TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions(status)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs(execution_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_workflow(self, workflow: Workflow) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT INTO workflows (id, name, user_id, description, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    workflow.id,
                    workflow.name,
                    workflow.user_id,
                    workflow.description,
                    workflow.created_at.isoformat(),
                ),
            )
            cur.executemany(
                "INSERT INTO workflow_steps (id, workflow_id, step_order, definition) VALUES (?, ?, ?, ?)",
                [
                    (step.id, workflow.id, step.step_order, step.model_dump_json())
                    for step in workflow.steps
                ],
            )
            self._conn.commit()

    def _insert_log(self, entry: ExecutionLog) -> ExecutionLog:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT timestamp FROM execution_logs WHERE execution_id = ? ORDER BY id DESC LIMIT 1",
                (entry.execution_id,),
            )
            last = cur.fetchone()
            timestamp = entry.timestamp
            if last is not None:
                previous = load_datetime(last["timestamp"])
                if previous > timestamp:
                    timestamp = previous
            cur.execute(
                """
                INSERT INTO execution_logs
                (execution_id, step_order, step_name, level, message, data, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.execution_id,
                    entry.step_order,
                    entry.step_name,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.data) if entry.data is not None else None,
                    timestamp.isoformat(),
                ),
            )
            self._conn.commit()
            return entry.model_copy(update={"id": cur.lastrowid, "timestamp": timestamp})

    # ------------------------------------------------------------------
    # Store API
    async def create_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(self._insert_workflow, workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, name, user_id, description, created_at FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT definition FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
            workflow_id,
        )
        return Workflow(
            id=row["id"],
            name=row["name"],
            user_id=row["user_id"],
            description=row["description"],
            created_at=load_datetime(row["created_at"]),
            steps=[WorkflowStep.model_validate_json(r["definition"]) for r in step_rows],
        )

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        row = execution_to_row(execution)
        placeholders = ", ".join("?" for _ in EXECUTION_COLUMNS)
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_executions ({', '.join(EXECUTION_COLUMNS)}) VALUES ({placeholders})",
                *[row[c] for c in EXECUTION_COLUMNS],
            )
        except sqlite3.IntegrityError as exc:
            raise StoreConsistencyError(f"Execution {execution.id} already exists") from exc
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, f"{_SELECT_EXECUTION} WHERE id = ?", execution_id
        )
        return execution_from_row(row) if row else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        updated = execution.model_copy(deep=True, update={"version": execution.version + 1})
        row = execution_to_row(updated)
        columns = [c for c in EXECUTION_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_executions SET {assignments} WHERE id = ? AND version = ?",
            *[row[c] for c in columns],
            execution.id,
            execution.version,
        )
        if changed == 1:
            return updated

        current = await asyncio.to_thread(
            self._fetchone, "SELECT version FROM workflow_executions WHERE id = ?", execution.id
        )
        if current is None:
            raise NotFoundError(f"Execution {execution.id} not found")
        raise StoreConsistencyError(
            f"Execution {execution.id} changed concurrently "
            f"(expected version {execution.version}, found {current['version']})"
        )

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"{_SELECT_EXECUTION}{where} ORDER BY created_at", *params
        )
        return [execution_from_row(r) for r in rows]

    async def append_log(self, entry: ExecutionLog) -> ExecutionLog:
        return await asyncio.to_thread(self._insert_log, entry)

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, execution_id, step_order, step_name, level, message, data, timestamp
            FROM execution_logs WHERE execution_id = ? ORDER BY id
            """,
            execution_id,
        )
        return [log_from_row(r) for r in rows]
