"""Execution dispatcher for blockflow."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from .persistence import Execution, ExecutionLog, ExecutionRepository
from .queue import ExecutionQueue

logger = logging.getLogger(__name__)


class ExecutionDispatcher:
    """Service responsible for starting new executions.

    The execution row is written before the job is published, so a worker
    never receives a job for an execution the store does not know about.
    """

    def __init__(self, repository: ExecutionRepository, queue: ExecutionQueue) -> None:
        self._repository = repository
        self._queue = queue

    async def dispatch(
        self,
        workflow_id: str,
        triggered_by: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
        trigger_type: Optional[str] = None,
    ) -> str:
        """Create a pending execution of ``workflow_id`` and enqueue it.

        Args:
            workflow_id: Workflow to run.
            triggered_by: Optional user or system that requested the run.
            input: Trigger payload handed to the root nodes.
            trigger_type: Optional label such as ``manual`` or ``webhook``.

        Returns:
            Identifier of the new execution.

        Raises:
            QueueUnavailable: If the job could not be published. The
                execution row stays ``pending``; publish its job again
                with :meth:`ExecutionControl.requeue`.
        """
        execution_id = str(uuid.uuid4())
        execution = Execution(
            id=execution_id,
            workflow_id=workflow_id,
            triggered_by=triggered_by,
            trigger_type=trigger_type,
            input=input or {},
        )
        await self._repository.create_execution(execution)
        await self._repository.add_log(
            ExecutionLog(
                execution_id=execution_id,
                message="Execution queued",
                data={"triggered_by": triggered_by, "trigger_type": trigger_type},
            )
        )
        await self._queue.enqueue(execution_id, workflow_id)
        logger.info(f"Dispatched execution {execution_id} of workflow {workflow_id}")
        return execution_id
