from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(SQLModel, table=True):
    """Stored workflow definition (nodes and edges kept as JSON)."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    name: Optional[str] = None
    version: int = 1
    nodes: list = Field(default_factory=list, sa_column=Column(JSON))
    edges: list = Field(default_factory=list, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=_utcnow)
