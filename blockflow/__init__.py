"""Blockflow: durable, queue-backed execution of block workflow graphs."""

from .analytics import DailyTrend, ExecutionAnalytics
from .config import BlockflowConfig, load_config
from .contracts import ExecutionJob, WorkflowDefinition, WorkflowEdge, WorkflowNode
from .control import ExecutionControl
from .dispatch import ExecutionDispatcher
from .persistence import get_repository
from .queue import ExecutionQueue
from .runtime import BlockRegistry, BlockRuntime
from .transports import get_transport
from .worker import ExecutionWorker

__version__ = "0.1.0"
__all__ = [
    "BlockRegistry",
    "BlockRuntime",
    "BlockflowConfig",
    "DailyTrend",
    "ExecutionAnalytics",
    "ExecutionControl",
    "ExecutionDispatcher",
    "ExecutionJob",
    "ExecutionQueue",
    "ExecutionWorker",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowNode",
    "get_repository",
    "get_transport",
    "load_config",
]
