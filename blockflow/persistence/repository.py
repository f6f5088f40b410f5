"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from .models import Execution, ExecutionLog, NodeExecution


class ExecutionRepository(Protocol):
    """Protocol for execution store backends.

    Status writes go through :meth:`transition`, a compare-and-set on the
    current status, so concurrent writers (worker and control API) cannot
    overwrite a terminal state.
    """

    async def create_execution(self, execution: Execution) -> Execution:
        """Persist a new execution row."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Execution]:
        """Return executions, newest first."""

    async def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
    ) -> bool:
        """Move an execution to ``to_status`` if it is in ``from_statuses``.

        ``finished_at`` is set when ``to_status`` is terminal and cleared
        otherwise. ``error`` is only kept for ``failed``. Returns ``True`` when
        the row was updated.
        """

    async def save_definition(self, execution_id: str, definition: dict) -> None:
        """Store the workflow snapshot used by this execution."""

    async def claim(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        """Take ownership of a ``pending`` or ``running`` execution for ``owner``.

        Succeeds when nobody holds the execution, ``owner`` already does, or
        the current holder's lease ran out. The status becomes ``running``.
        """

    async def renew_lease(self, execution_id: str, owner: str, lease_until: datetime) -> bool:
        """Extend the lease of ``owner``. False once someone else holds it."""

    async def release(
        self, execution_id: str, owner: str, status: Optional[str] = None
    ) -> bool:
        """Drop ``owner``'s hold, only while the status is ``status`` if given."""

    async def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        node_type: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> NodeExecution:
        """Create a pending node row, or return the existing one."""

    async def mark_node_running(
        self, execution_id: str, node_id: str, input: Optional[dict[str, Any]] = None
    ) -> NodeExecution:
        """Start a new attempt on the node row, incrementing ``attempt``."""

    async def mark_node_finished(
        self,
        execution_id: str,
        node_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the terminal outcome of a node."""

    async def skip_nodes(
        self, execution_id: str, nodes: Iterable[tuple[str, Optional[str]]]
    ) -> None:
        """Mark ``(node_id, node_type)`` pairs as skipped unless already terminal."""

    async def list_node_executions(self, execution_id: str) -> list[NodeExecution]:
        """Node rows of an execution in creation order."""

    async def list_workflow_node_executions(
        self, workflow_id: str, since: Optional[datetime] = None
    ) -> list[NodeExecution]:
        """Node rows of every execution of ``workflow_id`` started after ``since``."""

    async def add_log(self, log: ExecutionLog) -> None:
        """Append an execution log entry."""

    async def list_logs(self, execution_id: str) -> list[ExecutionLog]:
        """Log entries of an execution in chronological order."""
