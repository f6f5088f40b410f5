"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ExecutionStatus = Literal["pending", "running", "paused", "completed", "failed"]
NodeStatus = Literal["pending", "running", "completed", "failed", "skipped"]
LogLevel = Literal["info", "warning", "error"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Execution(BaseModel):
    """One run of a workflow."""

    id: str
    workflow_id: str
    status: ExecutionStatus = "pending"
    triggered_by: Optional[str] = None
    trigger_type: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    definition: Optional[dict[str, Any]] = None
    # Worker holding the execution and until when; cleared when it lets go.
    owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    retry_of: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class NodeExecution(BaseModel):
    """Execution record of a single workflow node within an execution."""

    id: Optional[int] = None
    execution_id: str
    node_id: str
    node_type: Optional[str] = None
    status: NodeStatus = "pending"
    attempt: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[Any] = None
    error: Optional[str] = None


class ExecutionLog(BaseModel):
    """Lifecycle event emitted while running an execution."""

    id: Optional[int] = None
    execution_id: str
    node_id: Optional[str] = None
    level: LogLevel = "info"
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
