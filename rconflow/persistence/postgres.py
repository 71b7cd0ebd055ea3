"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

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


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions and KV entries using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=_dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                server_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                enabled BOOLEAN NOT NULL,
                definition JSONB NOT NULL,
                created_by TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                server_id TEXT NOT NULL,
                trigger_id TEXT,
                event_type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                trigger_data JSONB,
                error TEXT,
                completed_steps INTEGER NOT NULL DEFAULT 0,
                failed_steps INTEGER NOT NULL DEFAULT 0,
                skipped_steps INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_logs (
                seq BIGSERIAL PRIMARY KEY,
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
                step_input JSONB,
                step_output JSONB,
                step_duration_ms INTEGER,
                variables JSONB,
                metadata JSONB,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_log_messages (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL
                    REFERENCES workflow_executions(id) ON DELETE CASCADE,
                workflow_id TEXT NOT NULL,
                step_id TEXT,
                step_name TEXT,
                log_time TIMESTAMPTZ NOT NULL,
                log_level TEXT NOT NULL,
                message TEXT NOT NULL,
                variables JSONB,
                metadata JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_kv (
                workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                key TEXT NOT NULL,
                value JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (workflow_id, key)
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "DELETE 3"
        return int(status.split()[-1]) if status else 0

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await self._execute(
            """
            INSERT INTO workflows
                (id, server_id, name, description, enabled, definition,
                 created_by, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            workflow.id,
            workflow.server_id,
            workflow.name,
            workflow.description,
            workflow.enabled,
            workflow.definition.model_dump(mode="json"),
            workflow.created_by,
            workflow.created_at,
            workflow.updated_at,
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        return Workflow(**dict(row)) if row else None

    async def list_workflows(
        self, server_id: str | None = None, enabled_only: bool = False
    ) -> list[Workflow]:
        query = "SELECT * FROM workflows WHERE ($1::text IS NULL OR server_id = $1)"
        if enabled_only:
            query += " AND enabled"
        query += " ORDER BY created_at"
        rows = await self._fetch(query, server_id)
        return [Workflow(**dict(r)) for r in rows]

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        await self._execute(
            """
            UPDATE workflows
            SET name = $1, description = $2, enabled = $3, definition = $4, updated_at = $5
            WHERE id = $6
            """,
            workflow.name,
            workflow.description,
            workflow.enabled,
            workflow.definition.model_dump(mode="json"),
            workflow.updated_at,
            workflow.id,
        )
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        status = await self._execute("DELETE FROM workflows WHERE id = $1", workflow_id)
        return self._affected(status) > 0

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> Execution:
        await self._execute(
            f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
            execution.id,
            execution.workflow_id,
            execution.server_id,
            execution.trigger_id,
            execution.event_type,
            execution.status,
            execution.started_at,
            execution.completed_at,
            execution.trigger_data,
            execution.error,
            execution.completed_steps,
            execution.failed_steps,
            execution.skipped_steps,
        )
        return execution

    async def update_execution(self, execution: Execution) -> None:
        await self._execute(
            """
            UPDATE workflow_executions
            SET status = $1, completed_at = $2, error = $3,
                completed_steps = $4, failed_steps = $5, skipped_steps = $6
            WHERE id = $7
            """,
            execution.status,
            execution.completed_at,
            execution.error,
            execution.completed_steps,
            execution.failed_steps,
            execution.skipped_steps,
            execution.id,
        )

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await self._fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = $1",
            execution_id,
        )
        return Execution(**dict(row)) if row else None

    async def list_executions(
        self, workflow_id: str, limit: int = 100, offset: int = 0
    ) -> list[Execution]:
        rows = await self._fetch(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE workflow_id = $1 ORDER BY started_at DESC LIMIT $2 OFFSET $3",
            workflow_id,
            limit,
            offset,
        )
        return [Execution(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Logs and messages
    async def append_execution_log(self, log: ExecutionLog) -> None:
        await self._execute(
            f"INSERT INTO workflow_execution_logs ({_LOG_COLUMNS}) VALUES "
            "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)",
            log.id,
            log.execution_id,
            log.workflow_id,
            log.step_id,
            log.step_order,
            log.attempt,
            log.step_name,
            log.step_type,
            log.step_status,
            log.step_input,
            log.step_output,
            log.step_duration_ms,
            log.variables,
            log.metadata,
            log.error,
            log.created_at,
        )

    async def list_execution_logs(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[ExecutionLog]:
        rows = await self._fetch(
            f"SELECT {_LOG_COLUMNS} FROM workflow_execution_logs "
            "WHERE execution_id = $1 "
            "ORDER BY step_order, attempt, "
            "CASE step_status WHEN 'running' THEN 0 ELSE 1 END, seq "
            "LIMIT $2 OFFSET $3",
            execution_id,
            limit,
            offset,
        )
        return [ExecutionLog(**dict(r)) for r in rows]

    async def append_log_message(self, message: LogMessage) -> None:
        await self._execute(
            f"INSERT INTO workflow_log_messages ({_MESSAGE_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
            message.id,
            message.execution_id,
            message.workflow_id,
            message.step_id,
            message.step_name,
            message.log_time,
            message.log_level,
            message.message,
            message.variables,
            message.metadata,
        )

    async def list_log_messages(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[LogMessage]:
        rows = await self._fetch(
            f"SELECT {_MESSAGE_COLUMNS} FROM workflow_log_messages "
            "WHERE execution_id = $1 ORDER BY seq LIMIT $2 OFFSET $3",
            execution_id,
            limit,
            offset,
        )
        return [LogMessage(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Key-value store
    async def kv_get(self, workflow_id: str, key: str) -> KVEntry | None:
        row = await self._fetchrow(
            "SELECT * FROM workflow_kv WHERE workflow_id = $1 AND key = $2",
            workflow_id,
            key,
        )
        return KVEntry(**dict(row)) if row else None

    async def kv_set(self, workflow_id: str, key: str, value: Any) -> KVEntry:
        now = utcnow()
        row = await self._fetchrow(
            """
            INSERT INTO workflow_kv (workflow_id, key, value, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $4)
            ON CONFLICT (workflow_id, key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            workflow_id,
            key,
            value,
            now,
        )
        return KVEntry(**dict(row))

    async def kv_delete(self, workflow_id: str, key: str) -> bool:
        status = await self._execute(
            "DELETE FROM workflow_kv WHERE workflow_id = $1 AND key = $2",
            workflow_id,
            key,
        )
        return self._affected(status) > 0

    async def kv_list(self, workflow_id: str) -> list[KVEntry]:
        rows = await self._fetch(
            "SELECT * FROM workflow_kv WHERE workflow_id = $1 ORDER BY key", workflow_id
        )
        return [KVEntry(**dict(r)) for r in rows]

    async def kv_clear(self, workflow_id: str) -> int:
        status = await self._execute(
            "DELETE FROM workflow_kv WHERE workflow_id = $1", workflow_id
        )
        return self._affected(status)
