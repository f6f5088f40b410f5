"""Execution store for blockflow."""

from __future__ import annotations

import os
from typing import Optional

from ..config import BlockflowConfig, load_config
from ..utils.urls import resolve_backend
from .inmemory import InMemoryExecutionRepository
from .models import Execution, ExecutionLog, NodeExecution
from .postgres import PostgresExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

STORE_SCHEMES = {
    "memory": "inmemory",
    "sqlite": "sqlite",
    "postgres": "postgres",
    "postgresql": "postgres",
}

_repository_instance: ExecutionRepository | None = None


def _database_url(config: BlockflowConfig) -> Optional[str]:
    return (
        os.getenv("BLOCKFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )


def get_repository(
    database_url: Optional[str] = None, config: Optional[BlockflowConfig] = None
) -> ExecutionRepository:
    """Return the execution store, building it on first use.

    Without arguments the previously built store is reused, so every
    component of a process shares one store. ``database_url`` (or the
    environment, or ``config.database_url``) selects the backend by scheme:
    ``sqlite://<path>``, ``postgresql://...`` or ``memory://``. No URL at all
    means an in-memory store.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    database_url = database_url or _database_url(config or load_config())
    target = resolve_backend(database_url or "memory://", STORE_SCHEMES)

    if target.backend == "sqlite":
        repository: ExecutionRepository = SQLiteExecutionRepository(target.location)
    elif target.backend == "postgres":
        repository = PostgresExecutionRepository(target.url)
    else:
        repository = InMemoryExecutionRepository()

    _repository_instance = repository
    return repository


__all__ = [
    "Execution",
    "ExecutionLog",
    "NodeExecution",
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "PostgresExecutionRepository",
    "get_repository",
]
