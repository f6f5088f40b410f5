"""Shared fixtures for blockflow tests."""

import pytest

import blockflow.persistence as persistence
from blockflow.contracts import WorkflowDefinition, WorkflowEdge, WorkflowNode
from blockflow.db import InMemoryWorkflowSource
from blockflow.persistence import InMemoryExecutionRepository
from blockflow.queue import ExecutionQueue
from blockflow.runtime import BlockRegistry
from blockflow.transports.inmemory import InMemoryTransport


@pytest.fixture
def repo():
    return InMemoryExecutionRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def queue(transport):
    return ExecutionQueue(transport)


@pytest.fixture
def registry():
    return BlockRegistry()


@pytest.fixture
def workflows():
    return InMemoryWorkflowSource()


@pytest.fixture
def retry_delays(monkeypatch):
    """Record backoff delays instead of sleeping."""
    delays = []

    async def fake_sleep(delay_ms):
        delays.append(delay_ms)

    monkeypatch.setattr("blockflow.utils.retry.schedule_retry", fake_sleep)
    return delays


@pytest.fixture
def linear_workflow():
    """Build a workflow whose nodes run one after another."""

    def build(workflow_id="wf", node_types=("a", "b", "c"), **node_options):
        nodes = [
            WorkflowNode(id=t.upper(), type=t, **node_options.get(t, {}))
            for t in node_types
        ]
        edges = [
            WorkflowEdge(source=prev.id, target=nxt.id)
            for prev, nxt in zip(nodes, nodes[1:])
        ]
        return WorkflowDefinition(id=workflow_id, name=workflow_id, nodes=nodes, edges=edges)

    return build


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from a developer's config and cached repository."""
    monkeypatch.setenv("BLOCKFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))
    for name in (
        "BLOCKFLOW_DATABASE_URL",
        "DATABASE_URL",
        "BLOCKFLOW_WORKFLOWS_URL",
        "BLOCKFLOW_QUEUE",
        "RABBITMQ_URL",
        "QUEUE_PREFETCH_COUNT",
        "NODE_RETRY_COUNT",
        "NODE_RETRY_FACTOR",
        "NODE_RETRY_MIN_TIMEOUT",
        "NODE_RETRY_MAX_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)
