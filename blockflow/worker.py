"""Execution worker: turns dequeued jobs into completed or failed executions."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic_core import to_jsonable_python

from .constants import (
    COMPLETED,
    FAILED,
    PAUSED,
    PENDING,
    RUNNING,
    TERMINAL_NODE_STATUSES,
    TERMINAL_STATUSES,
)
from .contracts import ExecutionContext, ExecutionJob, WorkflowDefinition, WorkflowNode
from .db import WorkflowSource
from .errors import (
    ExecutionLeased,
    TransientBlockError,
    WorkflowNotFound,
    WorkflowValidationError,
)
from .graph import descendants, incoming_edges, resolve_inputs, topological_order
from .persistence import Execution, ExecutionLog, ExecutionRepository
from .persistence.models import utcnow
from .queue import ExecutionQueue
from .runtime import BlockRuntime
from .utils import retry as retry_utils
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class ExecutionWorker:
    """Competing consumer that runs workflow graphs node by node.

    Re-entering ``handle_job`` for the same execution is safe: terminal and
    paused executions are left untouched, and completed nodes are not run
    again.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        repository: ExecutionRepository,
        workflows: WorkflowSource,
        runtime: BlockRuntime,
        retry_policy: Optional[RetryPolicy] = None,
        node_timeout: Optional[float] = None,
        worker_id: Optional[str] = None,
        lease_seconds: float = 60.0,
    ) -> None:
        self._queue = queue
        self._repository = repository
        self._workflows = workflows
        self._runtime = runtime
        self._retry_policy = retry_policy or RetryPolicy()
        self._node_timeout = node_timeout
        self._lease_seconds = lease_seconds
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume execution jobs until ``lifespan`` seconds elapse (forever if None)."""
        logger.info(
            f"{self.worker_id} consuming {self._queue.queue_name} "
            f"(prefetch={self._queue.prefetch_count})"
        )
        await self._queue.consume(self.handle_job, lifespan=lifespan)

    # ------------------------------------------------------------------
    async def handle_job(self, job: ExecutionJob) -> Optional[str]:
        """Process one job and return the execution status it left behind."""
        execution = await self._repository.get_execution(job.execution_id)
        if execution is None:
            logger.error(f"Execution {job.execution_id} not found; dropping job")
            return None
        if execution.status in TERMINAL_STATUSES:
            logger.warning(f"Skipping already {execution.status} execution: {execution.id}")
            return execution.status
        if execution.status == PAUSED:
            logger.info(f"Execution {execution.id} is paused; releasing job")
            return PAUSED
        if execution.workflow_id != job.workflow_id:
            logger.warning(
                f"Job for {execution.id} names workflow {job.workflow_id}, "
                f"store says {execution.workflow_id}; using the stored one"
            )

        if not await self._repository.claim(execution.id, self.worker_id, self._lease_deadline()):
            return await self._claim_refused(execution.id)

        await self._record(
            execution.id,
            "info",
            f"Worker {self.worker_id} claimed execution",
            worker_id=self.worker_id,
            message_id=job.message_id,
        )
        heartbeat = asyncio.create_task(self._keep_lease(execution.id))
        try:
            try:
                workflow = await self._load_workflow(execution)
                order = topological_order(workflow)
            except WorkflowValidationError as exc:
                return await self._fail_validation(execution, str(exc))

            if execution.definition is None:
                await self._repository.save_definition(
                    execution.id, workflow.model_dump(mode="json")
                )
            return await self._run_graph(execution, workflow, order)
        finally:
            heartbeat.cancel()
            await self._repository.release(execution.id, self.worker_id)

    def _lease_deadline(self) -> datetime:
        return utcnow() + timedelta(seconds=self._lease_seconds)

    async def _claim_refused(self, execution_id: str) -> Optional[str]:
        execution = await self._repository.get_execution(execution_id)
        if execution is None or execution.status not in (PENDING, RUNNING):
            return execution.status if execution else None
        # Hold the delivery for a while so a requeued job does not spin.
        if execution.lease_expires_at is not None:
            remaining = (execution.lease_expires_at - utcnow()).total_seconds()
            await asyncio.sleep(max(0.0, min(remaining, self._lease_seconds / 3)))
        logger.info(f"Execution {execution_id} is held by {execution.owner}; requeuing job")
        raise ExecutionLeased(execution_id, execution.owner)

    async def _keep_lease(self, execution_id: str) -> None:
        while True:
            await asyncio.sleep(self._lease_seconds / 3)
            if not await self._repository.renew_lease(
                execution_id, self.worker_id, self._lease_deadline()
            ):
                logger.warning(f"{self.worker_id} lost the lease on execution {execution_id}")
                return

    async def _checkpoint(self, execution_id: str) -> Optional[str]:
        """Status to act on at a node boundary.

        A pause is only honoured once this worker has released the execution
        while it is still paused; if a resume got there first the execution is
        running again and stays with this worker.
        """
        status = await self._current_status(execution_id)
        if status == PAUSED and not await self._repository.release(
            execution_id, self.worker_id, PAUSED
        ):
            status = await self._current_status(execution_id)
        return status

    async def _load_workflow(self, execution: Execution) -> WorkflowDefinition:
        if execution.definition is not None:
            return WorkflowDefinition.model_validate(execution.definition)
        workflow = await self._workflows.get_workflow(execution.workflow_id)
        if workflow is None:
            raise WorkflowNotFound(execution.workflow_id)
        return workflow

    async def _fail_validation(self, execution: Execution, error: str) -> str:
        logger.error(f"Execution {execution.id} failed validation: {error}")
        await self._repository.transition(execution.id, [PENDING, RUNNING], FAILED, error)
        await self._record(execution.id, "error", f"Execution failed: {error}")
        return FAILED

    async def _current_status(self, execution_id: str) -> Optional[str]:
        execution = await self._repository.get_execution(execution_id)
        return execution.status if execution else None

    # ------------------------------------------------------------------
    async def _run_graph(
        self,
        execution: Execution,
        workflow: WorkflowDefinition,
        order: List[WorkflowNode],
    ) -> Optional[str]:
        existing = {
            n.node_id: n for n in await self._repository.list_node_executions(execution.id)
        }
        outputs: Dict[str, Any] = {
            node_id: n.output for node_id, n in existing.items() if n.status == COMPLETED
        }
        incoming = incoming_edges(workflow)
        blocked: Set[str] = set()

        for index, node in enumerate(order):
            record = existing.get(node.id)
            if record is not None and record.status in TERMINAL_NODE_STATUSES:
                if record.status == FAILED:
                    if node.fatal:
                        return await self._finish(
                            execution.id, FAILED, f"Node {node.id} failed: {record.error}"
                        )
                    blocked |= descendants(workflow, node.id)
                continue

            status = await self._checkpoint(execution.id)
            if status == PAUSED:
                logger.info(f"Execution {execution.id} paused before node {node.id}")
                await self._record(execution.id, "info", f"Paused before node {node.id}")
                return PAUSED
            if status != RUNNING:
                await self._repository.skip_nodes(execution.id, _pairs(order[index:]))
                logger.info(f"Execution {execution.id} is {status}; skipped remaining nodes")
                await self._record(
                    execution.id, "warning", "Execution stopped externally; remaining nodes skipped"
                )
                return status

            if node.id in blocked:
                await self._repository.skip_nodes(execution.id, [(node.id, node.type)])
                continue

            inputs = resolve_inputs(incoming.get(node.id, []), outputs, execution.input)
            succeeded, output, error = await self._run_node(execution, node, inputs)
            if succeeded:
                outputs[node.id] = output
                continue

            if node.fatal:
                await self._repository.skip_nodes(execution.id, _pairs(order[index + 1 :]))
                return await self._finish(execution.id, FAILED, f"Node {node.id} failed: {error}")
            blocked |= descendants(workflow, node.id)

        return await self._finish(execution.id, COMPLETED)

    async def _run_node(
        self, execution: Execution, node: WorkflowNode, inputs: Dict[str, Any]
    ) -> Tuple[bool, Any, Optional[str]]:
        await self._repository.create_node_execution(
            execution.id, node.id, node.type, to_jsonable_python(inputs)
        )
        tries = 1
        while True:
            record = await self._repository.mark_node_running(execution.id, node.id)
            context = ExecutionContext(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                triggered_by=execution.triggered_by,
                attempt=record.attempt,
            )
            try:
                output = await self._invoke(node, inputs, context)
            except Exception as exc:
                error = _describe(exc)
                if self._retry_policy.should_retry(tries, exc):
                    delay = self._retry_policy.compute_delay(tries)
                    logger.warning(
                        f"[executionId={execution.id}] Node {node.id} attempt {tries} failed: "
                        f"{error}; retrying in {delay:.0f}ms"
                    )
                    await self._record(
                        execution.id,
                        "warning",
                        f"Retry scheduled: {error}",
                        node_id=node.id,
                        attempt=record.attempt,
                        delay_ms=delay,
                    )
                    await retry_utils.schedule_retry(delay)
                    tries += 1
                    continue

                await self._repository.mark_node_finished(
                    execution.id, node.id, FAILED, error=error
                )
                logger.error(f"[executionId={execution.id}] Node {node.id} failed: {error}")
                await self._record(
                    execution.id, "error", f"Node failed: {error}", node_id=node.id,
                    attempt=record.attempt,
                )
                return False, None, error

            output = to_jsonable_python(output, fallback=str)
            await self._repository.mark_node_finished(
                execution.id, node.id, COMPLETED, output=output
            )
            logger.info(f"[executionId={execution.id}] Completed node {node.id}")
            await self._record(
                execution.id, "info", "Node completed", node_id=node.id, attempt=record.attempt
            )
            return True, output, None

    async def _invoke(
        self, node: WorkflowNode, inputs: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        call = self._runtime.execute(node, inputs, context)
        if self._node_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._node_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientBlockError(
                f"Node {node.id} timed out after {self._node_timeout}s"
            ) from exc

    async def _finish(
        self, execution_id: str, status: str, error: Optional[str] = None
    ) -> Optional[str]:
        while not await self._repository.transition(execution_id, [RUNNING], status, error):
            # Paused or cancelled while the last node was running.
            current = await self._checkpoint(execution_id)
            if current != RUNNING:
                logger.info(f"Execution {execution_id} changed to {current} before finishing")
                return current
        level = "info" if status == COMPLETED else "error"
        message = f"Execution {status}" + (f": {error}" if error else "")
        logger.log(
            logging.INFO if status == COMPLETED else logging.ERROR,
            f"[executionId={execution_id}] {message}",
        )
        await self._record(execution_id, level, message)
        return status

    async def _record(
        self,
        execution_id: str,
        level: str,
        message: str,
        node_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        await self._repository.add_log(
            ExecutionLog(
                execution_id=execution_id,
                node_id=node_id,
                level=level,
                message=message,
                data=to_jsonable_python(data, fallback=str),
            )
        )


def _pairs(nodes: Iterable[WorkflowNode]) -> List[Tuple[str, str]]:
    return [(node.id, node.type) for node in nodes]
