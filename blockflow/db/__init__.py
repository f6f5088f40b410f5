from .models import WorkflowRecord
from .source import InMemoryWorkflowSource, WorkflowSource
from .workflow_db import WorkflowCatalog

__all__ = [
    "WorkflowRecord",
    "WorkflowSource",
    "InMemoryWorkflowSource",
    "WorkflowCatalog",
]
