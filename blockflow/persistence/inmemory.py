"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..constants import (
    FAILED,
    PENDING,
    RUNNING,
    SKIPPED,
    TERMINAL_NODE_STATUSES,
    TERMINAL_STATUSES,
)
from .models import Execution, ExecutionLog, NodeExecution, utcnow
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}
        self._nodes: Dict[str, List[NodeExecution]] = {}
        self._logs: Dict[str, List[ExecutionLog]] = {}
        self._node_id = 0
        self._log_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _find_node(self, execution_id: str, node_id: str) -> NodeExecution | None:
        for node in self._nodes.get(execution_id, []):
            if node.node_id == node_id:
                return node
        return None

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> Execution:
        if execution.id in self._executions:
            raise ValueError(f"Execution {execution.id} already exists")
        self._executions[execution.id] = execution.model_copy(deep=True)
        self._nodes[execution.id] = []
        self._logs[execution.id] = []
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        rows = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (since is None or e.started_at >= since)
        ]
        rows.sort(key=lambda e: e.started_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    async def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
    ) -> bool:
        allowed = set(from_statuses)
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in allowed:
                return False
            execution.status = to_status  # type: ignore[assignment]
            execution.finished_at = utcnow() if to_status in TERMINAL_STATUSES else None
            execution.error = error if to_status == FAILED else None
            return True

    async def save_definition(self, execution_id: str, definition: dict) -> None:
        execution = self._executions.get(execution_id)
        if execution:
            execution.definition = definition

    async def claim(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in (PENDING, RUNNING):
                return False
            held = execution.owner not in (None, owner) and (
                execution.lease_expires_at is not None
                and execution.lease_expires_at > utcnow()
            )
            if held:
                return False
            execution.status = RUNNING
            execution.owner = owner
            execution.lease_expires_at = lease_until
            return True

    async def renew_lease(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.owner != owner:
                return False
            execution.lease_expires_at = lease_until
            return True

    async def release(
        self, execution_id: str, owner: str, status: Optional[str] = None
    ) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.owner != owner:
                return False
            if status is not None and execution.status != status:
                return False
            execution.owner = None
            execution.lease_expires_at = None
            return True

    async def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        node_type: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> NodeExecution:
        existing = self._find_node(execution_id, node_id)
        if existing:
            return existing.model_copy(deep=True)
        self._node_id += 1
        node = NodeExecution(
            id=self._node_id,
            execution_id=execution_id,
            node_id=node_id,
            node_type=node_type,
            input=input,
        )
        self._nodes.setdefault(execution_id, []).append(node)
        return node.model_copy(deep=True)

    async def mark_node_running(
        self, execution_id: str, node_id: str, input: Optional[dict[str, Any]] = None
    ) -> NodeExecution:
        node = self._find_node(execution_id, node_id)
        if node is None:
            raise KeyError(f"No node execution for {execution_id}/{node_id}")
        node.status = RUNNING
        node.attempt += 1
        node.started_at = node.started_at or utcnow()
        node.finished_at = None
        node.error = None
        if input is not None:
            node.input = input
        return node.model_copy(deep=True)

    async def mark_node_finished(
        self,
        execution_id: str,
        node_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        node = self._find_node(execution_id, node_id)
        if node is None:
            return
        node.status = status  # type: ignore[assignment]
        node.finished_at = utcnow()
        node.output = output
        node.error = error

    async def skip_nodes(
        self, execution_id: str, nodes: Iterable[tuple[str, Optional[str]]]
    ) -> None:
        for node_id, node_type in nodes:
            node = self._find_node(execution_id, node_id)
            if node is None:
                self._node_id += 1
                node = NodeExecution(
                    id=self._node_id,
                    execution_id=execution_id,
                    node_id=node_id,
                    node_type=node_type,
                )
                self._nodes.setdefault(execution_id, []).append(node)
            if node.status in TERMINAL_NODE_STATUSES:
                continue
            node.status = SKIPPED
            node.finished_at = utcnow()

    async def list_node_executions(self, execution_id: str) -> list[NodeExecution]:
        return [n.model_copy(deep=True) for n in self._nodes.get(execution_id, [])]

    async def list_workflow_node_executions(
        self, workflow_id: str, since: Optional[datetime] = None
    ) -> list[NodeExecution]:
        executions = await self.list_executions(workflow_id=workflow_id, since=since)
        rows: list[NodeExecution] = []
        for execution in executions:
            rows.extend(await self.list_node_executions(execution.id))
        return rows

    async def add_log(self, log: ExecutionLog) -> None:
        self._log_id += 1
        entry = log.model_copy(update={"id": self._log_id})
        self._logs.setdefault(log.execution_id, []).append(entry)

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        return list(self._logs.get(execution_id, []))
