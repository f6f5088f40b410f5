"""Exception hierarchy for blockflow."""

from __future__ import annotations


class BlockflowError(Exception):
    """Base class for all engine errors."""


class InfrastructureError(BlockflowError):
    """The engine itself is unavailable (queue or store unreachable)."""


class QueueUnavailable(InfrastructureError):
    """No connection to the queue broker could be established."""


class StoreUnavailable(InfrastructureError):
    """The execution store could not be reached."""


class ExecutionLeased(InfrastructureError):
    """Another live worker holds the execution; the job goes back on the queue."""

    def __init__(self, execution_id: str, owner: str | None) -> None:
        super().__init__(f"Execution {execution_id} is held by {owner}")
        self.execution_id = execution_id
        self.owner = owner


class WorkflowValidationError(BlockflowError):
    """A workflow cannot be executed as defined. Never retried."""


class WorkflowNotFound(WorkflowValidationError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class CyclicWorkflowError(WorkflowValidationError):
    def __init__(self, node_ids: list[str]) -> None:
        super().__init__(
            "Workflow graph contains a cycle involving nodes: " + ", ".join(node_ids)
        )
        self.node_ids = node_ids


class BlockExecutionError(BlockflowError):
    """Raised by a block runtime when a node fails."""

    retryable: bool = False


class TransientBlockError(BlockExecutionError):
    """Network/timeout style failure; subject to the retry policy."""

    retryable = True


class PermanentBlockError(BlockExecutionError):
    """Failure that retrying cannot fix (bad config, rejected request)."""

    retryable = False


class PoisonMessage(BlockflowError):
    """A queue message that can never be processed."""


class ExecutionNotFound(BlockflowError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class InvalidTransition(BlockflowError):
    def __init__(self, execution_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move execution {execution_id} from {current} to {target}"
        )
        self.execution_id = execution_id
        self.current = current
        self.target = target
