"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

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


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize timestamps in a fixed UTC format so they sort as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Cannot open SQLite database {self.db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                triggered_by TEXT,
                trigger_type TEXT,
                input TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                error TEXT,
                definition TEXT,
                owner TEXT,
                lease_expires_at TEXT,
                retry_of TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS node_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL REFERENCES executions(id),
                node_id TEXT NOT NULL,
                node_type TEXT,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                finished_at TEXT,
                input TEXT,
                output TEXT,
                error TEXT,
                UNIQUE (execution_id, node_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL REFERENCES executions(id),
                node_id TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id, started_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(str(exc)) from exc
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(str(exc)) from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(str(exc)) from exc

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=row["status"],
            triggered_by=row["triggered_by"],
            trigger_type=row["trigger_type"],
            input=_loads(row["input"]) or {},
            started_at=_parse_ts(row["started_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            error=row["error"],
            definition=_loads(row["definition"]),
            owner=row["owner"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            retry_of=row["retry_of"],
        )

    @staticmethod
    def _node_from_row(row: sqlite3.Row) -> NodeExecution:
        return NodeExecution(
            id=row["id"],
            execution_id=row["execution_id"],
            node_id=row["node_id"],
            node_type=row["node_type"],
            status=row["status"],
            attempt=row["attempt"],
            started_at=_parse_ts(row["started_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
        )

    async def _get_node(self, execution_id: str, node_id: str) -> NodeExecution:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_NODE_COLUMNS} FROM node_executions WHERE execution_id = ? AND node_id = ?",
            execution_id,
            node_id,
        )
        if row is None:
            raise KeyError(f"No node execution for {execution_id}/{node_id}")
        return self._node_from_row(row)

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: Execution) -> Execution:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.status,
            execution.triggered_by,
            execution.trigger_type,
            json.dumps(execution.input),
            _ts(execution.started_at),
            _ts(execution.finished_at),
            execution.error,
            _dumps(execution.definition),
            execution.owner,
            _ts(execution.lease_expires_at),
            execution.retry_of,
        )
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        return self._execution_from_row(row) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if since is not None:
            query += " AND started_at >= ?"
            params.append(_ts(since))
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._execution_from_row(r) for r in rows]

    async def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
    ) -> bool:
        allowed = list(from_statuses)
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        finished_at = _ts(utcnow()) if to_status in TERMINAL_STATUSES else None
        updated = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE executions
            SET status = ?, finished_at = ?, error = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            to_status,
            finished_at,
            error if to_status == FAILED else None,
            execution_id,
            *allowed,
        )
        return updated == 1

    async def save_definition(self, execution_id: str, definition: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET definition = ? WHERE id = ?",
            json.dumps(definition),
            execution_id,
        )

    async def claim(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions SET status = ?, owner = ?, lease_expires_at = ?
            WHERE id = ? AND status IN (?, ?)
              AND (owner IS NULL OR owner = ? OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """,
            RUNNING,
            owner,
            _ts(lease_until),
            execution_id,
            PENDING,
            RUNNING,
            owner,
            _ts(utcnow()),
        )
        return updated == 1

    async def renew_lease(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET lease_expires_at = ? WHERE id = ? AND owner = ?",
            _ts(lease_until),
            execution_id,
            owner,
        )
        return updated == 1

    async def release(
        self, execution_id: str, owner: str, status: Optional[str] = None
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions SET owner = NULL, lease_expires_at = NULL
            WHERE id = ? AND owner = ? AND (? IS NULL OR status = ?)
            """,
            execution_id,
            owner,
            status,
            status,
        )
        return updated == 1

    async def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        node_type: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> NodeExecution:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO node_executions
                (execution_id, node_id, node_type, status, attempt, input)
            VALUES (?, ?, ?, ?, 0, ?)
            """,
            execution_id,
            node_id,
            node_type,
            PENDING,
            _dumps(input),
        )
        return await self._get_node(execution_id, node_id)

    async def mark_node_running(
        self, execution_id: str, node_id: str, input: Optional[dict[str, Any]] = None
    ) -> NodeExecution:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE node_executions
            SET status = ?, attempt = attempt + 1, started_at = COALESCE(started_at, ?),
                finished_at = NULL, error = NULL, input = COALESCE(?, input)
            WHERE execution_id = ? AND node_id = ?
            """,
            RUNNING,
            _ts(utcnow()),
            _dumps(input),
            execution_id,
            node_id,
        )
        return await self._get_node(execution_id, node_id)

    async def mark_node_finished(
        self,
        execution_id: str,
        node_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE node_executions
            SET status = ?, finished_at = ?, output = ?, error = ?
            WHERE execution_id = ? AND node_id = ?
            """,
            status,
            _ts(utcnow()),
            _dumps(output),
            error,
            execution_id,
            node_id,
        )

    async def skip_nodes(
        self, execution_id: str, nodes: Iterable[tuple[str, Optional[str]]]
    ) -> None:
        terminal = sorted(TERMINAL_NODE_STATUSES)
        placeholders = ", ".join("?" for _ in terminal)
        for node_id, node_type in nodes:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT OR IGNORE INTO node_executions
                    (execution_id, node_id, node_type, status, attempt)
                VALUES (?, ?, ?, ?, 0)
                """,
                execution_id,
                node_id,
                node_type,
                PENDING,
            )
            await asyncio.to_thread(
                self._execute,
                f"""
                UPDATE node_executions SET status = ?, finished_at = ?
                WHERE execution_id = ? AND node_id = ? AND status NOT IN ({placeholders})
                """,
                SKIPPED,
                _ts(utcnow()),
                execution_id,
                node_id,
                *terminal,
            )

    async def list_node_executions(self, execution_id: str) -> list[NodeExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_NODE_COLUMNS} FROM node_executions WHERE execution_id = ? ORDER BY id",
            execution_id,
        )
        return [self._node_from_row(r) for r in rows]

    async def list_workflow_node_executions(
        self, workflow_id: str, since: Optional[datetime] = None
    ) -> list[NodeExecution]:
        columns = ", ".join(f"n.{c.strip()}" for c in _NODE_COLUMNS.split(","))
        query = (
            f"SELECT {columns} FROM node_executions n "
            "JOIN executions e ON e.id = n.execution_id WHERE e.workflow_id = ?"
        )
        params: list[Any] = [workflow_id]
        if since is not None:
            query += " AND e.started_at >= ?"
            params.append(_ts(since))
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY n.id", *params)
        return [self._node_from_row(r) for r in rows]

    async def add_log(self, log: ExecutionLog) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO execution_logs (execution_id, node_id, level, message, data, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            log.execution_id,
            log.node_id,
            log.level,
            log.message,
            json.dumps(log.data),
            _ts(log.timestamp),
        )

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, execution_id, node_id, level, message, data, timestamp
            FROM execution_logs WHERE execution_id = ? ORDER BY id
            """,
            execution_id,
        )
        return [
            ExecutionLog(
                id=r["id"],
                execution_id=r["execution_id"],
                node_id=r["node_id"],
                level=r["level"],
                message=r["message"],
                data=_loads(r["data"]) or {},
                timestamp=_parse_ts(r["timestamp"]),
            )
            for r in rows
        ]
