"""Shared constants for the execution engine."""

EXECUTION_QUEUE = "BLOCKFLOW.EXECUTION_QUEUE"
DEAD_LETTER_SUFFIX = ".DLQ"

PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"

EXECUTION_STATUSES = (PENDING, RUNNING, PAUSED, COMPLETED, FAILED)
NODE_STATUSES = (PENDING, RUNNING, COMPLETED, FAILED, SKIPPED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})
TERMINAL_NODE_STATUSES = frozenset({COMPLETED, FAILED, SKIPPED})

# Cancellation is stored as a failure carrying this marker.
CANCELLED_ERROR = "Execution cancelled by user"

# trigger_type of an execution started by retrying a failed one.
RETRY_TRIGGER = "retry"

DEFAULT_PREFETCH_COUNT = 1
DEFAULT_ANALYTICS_DAYS = 7


def dead_letter_queue(queue_name: str) -> str:
    return f"{queue_name}{DEAD_LETTER_SUFFIX}"
