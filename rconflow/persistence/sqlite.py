"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import Execution, ExecutionLog, KVEntry, LogMessage, Workflow, utcnow
from .repository import WorkflowRepository

_EXECUTION_COLUMNS = (
    "id, workflow_id, server_id, trigger_id, event_type, status, started_at, "
    "completed_at, trigger_data, error, completed_steps, failed_steps, skipped_steps"
)
_LOG_COLUMNS = (
    "id, execution_id, workflow_id, step_id, step_order, attempt, step_name, "
    "step_type, step_status, step_input, step_output, step_duration_ms, "
    "variables, metadata, error, created_at"
)
_MESSAGE_COLUMNS = (
    "id, execution_id, workflow_id, step_id, step_name, log_time, log_level, "
    "message, variables, metadata"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions and KV entries using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                server_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                enabled INTEGER NOT NULL,
                definition TEXT NOT NULL,
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                server_id TEXT NOT NULL,
                trigger_id TEXT,
                event_type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                trigger_data TEXT,
                error TEXT,
                completed_steps INTEGER NOT NULL DEFAULT 0,
                failed_steps INTEGER NOT NULL DEFAULT 0,
                skipped_steps INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL
                    REFERENCES workflow_executions(id) ON DELETE CASCADE,
                workflow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                attempt INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                step_type TEXT NOT NULL,
                step_status TEXT NOT NULL,
                step_input TEXT,
                step_output TEXT,
                step_duration_ms INTEGER,
                variables TEXT,
                metadata TEXT,
                error TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_log_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL
                    REFERENCES workflow_executions(id) ON DELETE CASCADE,
                workflow_id TEXT NOT NULL,
                step_id TEXT,
                step_name TEXT,
                log_time TEXT NOT NULL,
                log_level TEXT NOT NULL,
                message TEXT NOT NULL,
                variables TEXT,
                metadata TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_kv (
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                key TEXT NOT NULL,
                value TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (workflow_id, key)
            )
            """
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

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            server_id=row["server_id"],
            name=row["name"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            definition=json.loads(row["definition"]),
            created_by=row["created_by"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            server_id=row["server_id"],
            trigger_id=row["trigger_id"],
            event_type=row["event_type"],
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            trigger_data=_loads(row["trigger_data"]) or {},
            error=row["error"],
            completed_steps=row["completed_steps"],
            failed_steps=row["failed_steps"],
            skipped_steps=row["skipped_steps"],
        )

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> ExecutionLog:
        return ExecutionLog(
            id=row["id"],
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            step_order=row["step_order"],
            attempt=row["attempt"],
            step_name=row["step_name"],
            step_type=row["step_type"],
            step_status=row["step_status"],
            step_input=_loads(row["step_input"]) or {},
            step_output=_loads(row["step_output"]),
            step_duration_ms=row["step_duration_ms"],
            variables=_loads(row["variables"]) or {},
            metadata=_loads(row["metadata"]) or {},
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> LogMessage:
        return LogMessage(
            id=row["id"],
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            step_name=row["step_name"],
            log_time=_parse_ts(row["log_time"]),
            log_level=row["log_level"],
            message=row["message"],
            variables=_loads(row["variables"]) or {},
            metadata=_loads(row["metadata"]) or {},
        )

    @staticmethod
    def _row_to_kv(row: sqlite3.Row) -> KVEntry:
        return KVEntry(
            workflow_id=row["workflow_id"],
            key=row["key"],
            value=_loads(row["value"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows
                (id, server_id, name, description, enabled, definition,
                 created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow.id,
            workflow.server_id,
            workflow.name,
            workflow.description,
            int(workflow.enabled),
            workflow.definition.model_dump_json(),
            workflow.created_by,
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self, server_id: str | None = None, enabled_only: bool = False
    ) -> list[Workflow]:
        query = "SELECT * FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if server_id is not None:
            query += " AND server_id = ?"
            params.append(server_id)
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_workflow(r) for r in rows]

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET name = ?, description = ?, enabled = ?, definition = ?, updated_at = ?
            WHERE id = ?
            """,
            workflow.name,
            workflow.description,
            int(workflow.enabled),
            workflow.definition.model_dump_json(),
            _ts(workflow.updated_at),
            workflow.id,
        )
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> Execution:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.server_id,
            execution.trigger_id,
            execution.event_type,
            execution.status,
            _ts(execution.started_at),
            _ts(execution.completed_at),
            json.dumps(execution.trigger_data, default=str),
            execution.error,
            execution.completed_steps,
            execution.failed_steps,
            execution.skipped_steps,
        )
        return execution

    async def update_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_executions
            SET status = ?, completed_at = ?, error = ?,
                completed_steps = ?, failed_steps = ?, skipped_steps = ?
            WHERE id = ?
            """,
            execution.status,
            _ts(execution.completed_at),
            execution.error,
            execution.completed_steps,
            execution.failed_steps,
            execution.skipped_steps,
            execution.id,
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self, workflow_id: str, limit: int = 100, offset: int = 0
    ) -> list[Execution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE workflow_id = ? ORDER BY started_at DESC LIMIT ? OFFSET ?",
            workflow_id,
            limit,
            offset,
        )
        return [self._row_to_execution(r) for r in rows]

    # ------------------------------------------------------------------
    # Logs and messages
    async def append_execution_log(self, log: ExecutionLog) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_execution_logs ({_LOG_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            log.id,
            log.execution_id,
            log.workflow_id,
            log.step_id,
            log.step_order,
            log.attempt,
            log.step_name,
            log.step_type,
            log.step_status,
            json.dumps(log.step_input, default=str),
            json.dumps(log.step_output, default=str),
            log.step_duration_ms,
            json.dumps(log.variables, default=str),
            json.dumps(log.metadata, default=str),
            log.error,
            _ts(log.created_at),
        )

    async def list_execution_logs(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[ExecutionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_LOG_COLUMNS} FROM workflow_execution_logs "
            "WHERE execution_id = ? "
            "ORDER BY step_order, attempt, "
            "CASE step_status WHEN 'running' THEN 0 ELSE 1 END, seq "
            "LIMIT ? OFFSET ?",
            execution_id,
            limit,
            offset,
        )
        return [self._row_to_log(r) for r in rows]

    async def append_log_message(self, message: LogMessage) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_log_messages ({_MESSAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            message.id,
            message.execution_id,
            message.workflow_id,
            message.step_id,
            message.step_name,
            _ts(message.log_time),
            message.log_level,
            message.message,
            json.dumps(message.variables, default=str),
            json.dumps(message.metadata, default=str),
        )

    async def list_log_messages(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[LogMessage]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_MESSAGE_COLUMNS} FROM workflow_log_messages "
            "WHERE execution_id = ? ORDER BY seq LIMIT ? OFFSET ?",
            execution_id,
            limit,
            offset,
        )
        return [self._row_to_message(r) for r in rows]

    # ------------------------------------------------------------------
    # Key-value store
    async def kv_get(self, workflow_id: str, key: str) -> KVEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_kv WHERE workflow_id = ? AND key = ?",
            workflow_id,
            key,
        )
        return self._row_to_kv(row) if row else None

    async def kv_set(self, workflow_id: str, key: str, value: Any) -> KVEntry:
        now = _ts(utcnow())
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_kv (workflow_id, key, value, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id, key)
            DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            workflow_id,
            key,
            json.dumps(value, default=str),
            now,
            now,
        )
        entry = await self.kv_get(workflow_id, key)
        assert entry is not None
        return entry

    async def kv_delete(self, workflow_id: str, key: str) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_kv WHERE workflow_id = ? AND key = ?",
            workflow_id,
            key,
        )
        return count > 0

    async def kv_list(self, workflow_id: str) -> list[KVEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_kv WHERE workflow_id = ? ORDER BY key",
            workflow_id,
        )
        return [self._row_to_kv(r) for r in rows]

    async def kv_clear(self, workflow_id: str) -> int:
        return await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_kv WHERE workflow_id = ?", workflow_id
        )
