"""Where the worker loads workflow definitions from."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol

from ..contracts import WorkflowDefinition


class WorkflowSource(Protocol):
    """Read access to workflow definitions, owned by the editor side."""

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """Return the current definition or ``None`` if it does not exist."""


class InMemoryWorkflowSource(WorkflowSource):
    """Dictionary-backed workflow source for tests and embedding."""

    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {w.id: w for w in workflows}

    def add(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None
