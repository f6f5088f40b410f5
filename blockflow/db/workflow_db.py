from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..contracts import WorkflowDefinition
from .models import WorkflowRecord, _utcnow
from .source import WorkflowSource


class WorkflowCatalog(WorkflowSource):
    """Async SQLModel-backed store of workflow definitions."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowRecord:
        """Insert or replace a definition, bumping its version on update."""
        data = workflow.model_dump(mode="json")
        async with self.session() as session:
            record = await session.get(WorkflowRecord, workflow.id)
            if record is None:
                record = WorkflowRecord(
                    id=workflow.id, name=workflow.name, nodes=data["nodes"], edges=data["edges"]
                )
            else:
                record.name = workflow.name
                record.nodes = data["nodes"]
                record.edges = data["edges"]
                record.version += 1
                record.updated_at = _utcnow()
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self.session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                return None
            return WorkflowDefinition(
                id=record.id, name=record.name, nodes=record.nodes, edges=record.edges
            )

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self.session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                return False
            await session.delete(record)
            await session.commit()
            return True
