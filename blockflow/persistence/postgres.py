"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from ..constants import (
    FAILED,
    PENDING,
    RUNNING,
    SKIPPED,
    TERMINAL_NODE_STATUSES,
    TERMINAL_STATUSES,
)
from ..errors import StoreUnavailable
from .models import Execution, ExecutionLog, NodeExecution, utcnow
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "id, workflow_id, status, triggered_by, trigger_type, input, "
    "started_at, finished_at, error, definition, owner, lease_expires_at, retry_of"
)
_NODE_COLUMNS = (
    "id, execution_id, node_id, node_type, status, attempt, "
    "started_at, finished_at, input, output, error"
)


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
            raise StoreUnavailable(f"Cannot connect to PostgreSQL: {exc}") from exc
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                triggered_by TEXT,
                trigger_type TEXT,
                input JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                error TEXT,
                definition JSONB,
                owner TEXT,
                lease_expires_at TIMESTAMPTZ,
                retry_of TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS node_executions (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions(id),
                node_id TEXT NOT NULL,
                node_type TEXT,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                input JSONB,
                output JSONB,
                error TEXT,
                UNIQUE (execution_id, node_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions(id),
                node_id TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                data JSONB,
                timestamp TIMESTAMPTZ NOT NULL
            )
            """
        )
        for column in ("owner TEXT", "lease_expires_at TIMESTAMPTZ", "retry_of TEXT"):
            await conn.execute(f"ALTER TABLE executions ADD COLUMN IF NOT EXISTS {column}")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id, started_at)"
        )

    @staticmethod
    def _execution_from_row(row: asyncpg.Record) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=row["status"],
            triggered_by=row["triggered_by"],
            trigger_type=row["trigger_type"],
            input=row["input"] or {},
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=row["error"],
            definition=row["definition"],
            owner=row["owner"],
            lease_expires_at=row["lease_expires_at"],
            retry_of=row["retry_of"],
        )

    @staticmethod
    def _node_from_row(row: asyncpg.Record) -> NodeExecution:
        return NodeExecution(**dict(row))

    async def _get_node(
        self, conn: asyncpg.Connection, execution_id: str, node_id: str
    ) -> NodeExecution:
        row = await conn.fetchrow(
            f"SELECT {_NODE_COLUMNS} FROM node_executions WHERE execution_id = $1 AND node_id = $2",
            execution_id,
            node_id,
        )
        if row is None:
            raise KeyError(f"No node execution for {execution_id}/{node_id}")
        return self._node_from_row(row)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> Execution:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO executions ({_EXECUTION_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                execution.id,
                execution.workflow_id,
                execution.status,
                execution.triggered_by,
                execution.trigger_type,
                execution.input,
                execution.started_at,
                execution.finished_at,
                execution.error,
                execution.definition,
                execution.owner,
                execution.lease_expires_at,
                execution.retry_of,
            )
        finally:
            await conn.close()
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._execution_from_row(row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND ($2::timestamptz IS NULL OR started_at >= $2)
                ORDER BY started_at DESC
                LIMIT $3
                """,
                workflow_id,
                since,
                limit,
            )
        finally:
            await conn.close()
        return [self._execution_from_row(r) for r in rows]

    async def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE executions
                SET status = $1, finished_at = $2, error = $3
                WHERE id = $4 AND status = ANY($5::text[])
                """,
                to_status,
                utcnow() if to_status in TERMINAL_STATUSES else None,
                error if to_status == FAILED else None,
                execution_id,
                list(from_statuses),
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def save_definition(self, execution_id: str, definition: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET definition = $1 WHERE id = $2",
                definition,
                execution_id,
            )
        finally:
            await conn.close()

    async def claim(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE executions SET status = $1, owner = $2, lease_expires_at = $3
                WHERE id = $4 AND status = ANY($5::text[])
                  AND (owner IS NULL OR owner = $2 OR lease_expires_at IS NULL
                       OR lease_expires_at <= now())
                """,
                RUNNING,
                owner,
                lease_until,
                execution_id,
                [PENDING, RUNNING],
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def renew_lease(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE executions SET lease_expires_at = $1 WHERE id = $2 AND owner = $3",
                lease_until,
                execution_id,
                owner,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def release(
        self, execution_id: str, owner: str, status: Optional[str] = None
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE executions SET owner = NULL, lease_expires_at = NULL
                WHERE id = $1 AND owner = $2 AND ($3::text IS NULL OR status = $3)
                """,
                execution_id,
                owner,
                status,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        node_type: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> NodeExecution:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO node_executions (execution_id, node_id, node_type, status, attempt, input)
                VALUES ($1, $2, $3, $4, 0, $5)
                ON CONFLICT (execution_id, node_id) DO NOTHING
                """,
                execution_id,
                node_id,
                node_type,
                PENDING,
                input,
            )
            return await self._get_node(conn, execution_id, node_id)
        finally:
            await conn.close()

    async def mark_node_running(
        self, execution_id: str, node_id: str, input: Optional[dict[str, Any]] = None
    ) -> NodeExecution:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE node_executions
                SET status = $1, attempt = attempt + 1, started_at = COALESCE(started_at, $2),
                    finished_at = NULL, error = NULL, input = COALESCE($3, input)
                WHERE execution_id = $4 AND node_id = $5
                """,
                RUNNING,
                utcnow(),
                input,
                execution_id,
                node_id,
            )
            return await self._get_node(conn, execution_id, node_id)
        finally:
            await conn.close()

    async def mark_node_finished(
        self,
        execution_id: str,
        node_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE node_executions
                SET status = $1, finished_at = $2, output = $3, error = $4
                WHERE execution_id = $5 AND node_id = $6
                """,
                status,
                utcnow(),
                output,
                error,
                execution_id,
                node_id,
            )
        finally:
            await conn.close()

    async def skip_nodes(
        self, execution_id: str, nodes: Iterable[tuple[str, Optional[str]]]
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                for node_id, node_type in nodes:
                    await conn.execute(
                        """
                        INSERT INTO node_executions (execution_id, node_id, node_type, status, attempt)
                        VALUES ($1, $2, $3, $4, 0)
                        ON CONFLICT (execution_id, node_id) DO NOTHING
                        """,
                        execution_id,
                        node_id,
                        node_type,
                        PENDING,
                    )
                    await conn.execute(
                        """
                        UPDATE node_executions SET status = $1, finished_at = $2
                        WHERE execution_id = $3 AND node_id = $4 AND NOT (status = ANY($5::text[]))
                        """,
                        SKIPPED,
                        utcnow(),
                        execution_id,
                        node_id,
                        sorted(TERMINAL_NODE_STATUSES),
                    )
        finally:
            await conn.close()

    async def list_node_executions(self, execution_id: str) -> list[NodeExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_NODE_COLUMNS} FROM node_executions WHERE execution_id = $1 ORDER BY id",
                execution_id,
            )
        finally:
            await conn.close()
        return [self._node_from_row(r) for r in rows]

    async def list_workflow_node_executions(
        self, workflow_id: str, since: Optional[datetime] = None
    ) -> list[NodeExecution]:
        columns = ", ".join(f"n.{c.strip()}" for c in _NODE_COLUMNS.split(","))
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {columns} FROM node_executions n
                JOIN executions e ON e.id = n.execution_id
                WHERE e.workflow_id = $1 AND ($2::timestamptz IS NULL OR e.started_at >= $2)
                ORDER BY n.id
                """,
                workflow_id,
                since,
            )
        finally:
            await conn.close()
        return [self._node_from_row(r) for r in rows]

    async def add_log(self, log: ExecutionLog) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO execution_logs (execution_id, node_id, level, message, data, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                log.execution_id,
                log.node_id,
                log.level,
                log.message,
                log.data,
                log.timestamp,
            )
        finally:
            await conn.close()

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT id, execution_id, node_id, level, message, data, timestamp
                FROM execution_logs WHERE execution_id = $1 ORDER BY id
                """,
                execution_id,
            )
        finally:
            await conn.close()
        return [
            ExecutionLog(
                id=r["id"],
                execution_id=r["execution_id"],
                node_id=r["node_id"],
                level=r["level"],
                message=r["message"],
                data=r["data"] or {},
                timestamp=r["timestamp"],
            )
            for r in rows
        ]
