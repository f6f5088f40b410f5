"""Core message and workflow contracts for blockflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import PoisonMessage


class WorkflowNode(BaseModel):
    """A block instance inside a workflow graph."""

    id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    fatal: bool = Field(
        default=True, description="Whether a failure of this node fails the execution"
    )


class WorkflowEdge(BaseModel):
    """Data-flow connection between two nodes."""

    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """Snapshot of a workflow graph as handed to the engine."""

    id: str
    name: Optional[str] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)


class ExecutionJob(BaseModel):
    """
    Envelope exchanged over the execution queue. Only identifiers travel on
    the wire; all state lives in the execution store.
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["execution.run"] = "execution.run"
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str = Field(min_length=1)
    workflow_id: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ExecutionJob":
        """Deserialize a job, raising ``PoisonMessage`` for malformed bodies."""
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise PoisonMessage(f"Malformed execution job: {exc}") from exc


class ExecutionContext(BaseModel):
    """Context passed to the block runtime alongside each node."""

    execution_id: str
    workflow_id: str
    triggered_by: Optional[str] = None
    attempt: int = 1
