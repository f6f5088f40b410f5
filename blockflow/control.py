"""Operator controls: pause, resume, cancel, retry and requeue executions."""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional

from .constants import (
    CANCELLED_ERROR,
    COMPLETED,
    FAILED,
    PAUSED,
    PENDING,
    RETRY_TRIGGER,
    RUNNING,
)
from .contracts import WorkflowDefinition, WorkflowNode
from .db import WorkflowSource
from .errors import ExecutionNotFound, InvalidTransition, WorkflowValidationError
from .graph import topological_order
from .persistence import Execution, ExecutionLog, ExecutionRepository
from .persistence.models import utcnow
from .queue import ExecutionQueue

logger = logging.getLogger(__name__)


def _held(execution: Execution) -> bool:
    """Whether a live worker currently owns ``execution``."""
    return (
        execution.owner is not None
        and execution.lease_expires_at is not None
        and execution.lease_expires_at > utcnow()
    )


class ExecutionControl:
    """Status changes requested from outside the worker.

    Each operation is a compare-and-set against the execution store; a worker
    holding the execution observes the new status at its next node boundary.
    ``workflows`` is only needed to skip the nodes of a cancelled execution
    that never stored a workflow snapshot.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        queue: ExecutionQueue,
        workflows: Optional[WorkflowSource] = None,
    ) -> None:
        self._repository = repository
        self._queue = queue
        self._workflows = workflows

    async def _get(self, execution_id: str) -> Execution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def _move(
        self,
        execution_id: str,
        allowed: Iterable[str],
        target: str,
        error: str | None = None,
    ) -> Execution:
        allowed = tuple(allowed)
        execution = await self._get(execution_id)
        if execution.status not in allowed or not await self._repository.transition(
            execution_id, allowed, target, error
        ):
            current = await self._get(execution_id)
            raise InvalidTransition(execution_id, current.status, target)
        return await self._get(execution_id)

    async def pause(self, execution_id: str) -> Execution:
        """Ask the worker to stop before the next node."""
        execution = await self._move(execution_id, [RUNNING], PAUSED)
        await self._log(execution_id, "Execution paused")
        return execution

    async def resume(self, execution_id: str) -> Execution:
        """Mark a paused execution running again and hand it back to a worker.

        If the worker that was asked to pause has not reached a node boundary
        yet it simply carries on; the new job is refused by the store until
        that worker lets go of the execution.
        """
        execution = await self._move(execution_id, [PAUSED], RUNNING)
        await self._queue.enqueue(execution.id, execution.workflow_id)
        if _held(execution):
            await self._log(execution_id, f"Execution resumed while held by {execution.owner}")
        else:
            await self._log(execution_id, "Execution resumed")
        return execution

    async def cancel(self, execution_id: str) -> Execution:
        """Stop an execution for good and skip the nodes it will not run.

        Nodes a live worker is running right now are left to that worker; it
        skips what remains at its next node boundary.
        """
        execution = await self._move(
            execution_id, [PENDING, RUNNING, PAUSED], FAILED, CANCELLED_ERROR
        )
        await self._log(execution_id, CANCELLED_ERROR, level="warning")
        await self._skip_unfinished(execution)
        return execution

    async def retry(self, execution_id: str) -> Execution:
        """Start a new execution that picks up where a failed one stopped.

        The failed execution is left as it is. The new one reuses its input
        and workflow snapshot, and starts with the completed nodes and their
        outputs already in place.
        """
        failed = await self._get(execution_id)
        if failed.status != FAILED:
            raise InvalidTransition(execution_id, failed.status, PENDING)

        retried = Execution(
            id=str(uuid.uuid4()),
            workflow_id=failed.workflow_id,
            triggered_by=failed.triggered_by,
            trigger_type=RETRY_TRIGGER,
            input=failed.input,
            definition=failed.definition,
            retry_of=failed.id,
        )
        await self._repository.create_execution(retried)
        carried: List[str] = []
        for node in await self._repository.list_node_executions(failed.id):
            if node.status != COMPLETED:
                continue
            await self._repository.create_node_execution(
                retried.id, node.node_id, node.node_type, node.input
            )
            await self._repository.mark_node_finished(
                retried.id, node.node_id, COMPLETED, output=node.output
            )
            carried.append(node.node_id)

        await self._log(
            retried.id, f"Retry of execution {failed.id}", retry_of=failed.id, carried=carried
        )
        await self._log(failed.id, f"Retried as execution {retried.id}", retried_as=retried.id)
        await self._queue.enqueue(retried.id, retried.workflow_id)
        return await self._get(retried.id)

    async def requeue(self, execution_id: str) -> Execution:
        """Publish another job for a pending execution.

        For executions whose job was lost, e.g. when publishing failed after
        the row was written. Extra jobs are harmless: only one worker can
        claim the execution.
        """
        execution = await self._get(execution_id)
        if execution.status != PENDING:
            raise InvalidTransition(execution_id, execution.status, PENDING)
        await self._queue.enqueue(execution.id, execution.workflow_id)
        await self._log(execution_id, "Execution requeued")
        return execution

    async def _skip_unfinished(self, execution: Execution) -> None:
        workflow = await self._workflow_of(execution)
        if workflow is None:
            logger.warning(f"No workflow for execution {execution.id}; nodes left as they are")
            return
        try:
            order: List[WorkflowNode] = topological_order(workflow)
        except WorkflowValidationError:
            order = list(workflow.nodes)

        in_flight = set()
        if _held(execution):
            in_flight = {
                n.node_id
                for n in await self._repository.list_node_executions(execution.id)
                if n.status == RUNNING
            }
        await self._repository.skip_nodes(
            execution.id, [(n.id, n.type) for n in order if n.id not in in_flight]
        )

    async def _workflow_of(self, execution: Execution) -> Optional[WorkflowDefinition]:
        if execution.definition is not None:
            return WorkflowDefinition.model_validate(execution.definition)
        if self._workflows is None:
            return None
        return await self._workflows.get_workflow(execution.workflow_id)

    async def _log(
        self, execution_id: str, message: str, level: str = "info", **data
    ) -> None:
        logger.info(f"[executionId={execution_id}] {message}")
        await self._repository.add_log(
            ExecutionLog(execution_id=execution_id, level=level, message=message, data=data)
        )
