import uuid
from datetime import timedelta

import pytest

from blockflow.constants import CANCELLED_ERROR
from blockflow.persistence import (
    Execution,
    ExecutionLog,
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
)
from blockflow.persistence.models import utcnow


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteExecutionRepository(tmp_path / "exec.db")
    return InMemoryExecutionRepository()


def _execution(workflow_id="wf", **kwargs) -> Execution:
    return Execution(id=str(uuid.uuid4()), workflow_id=workflow_id, **kwargs)


@pytest.mark.asyncio
async def test_execution_crud(store):
    execution = _execution(triggered_by="ada", trigger_type="manual", input={"x": 1})
    await store.create_execution(execution)

    loaded = await store.get_execution(execution.id)
    assert loaded is not None
    assert loaded.status == "pending"
    assert loaded.triggered_by == "ada"
    assert loaded.input == {"x": 1}
    assert loaded.finished_at is None
    assert await store.get_execution("missing") is None

    await store.save_definition(execution.id, {"id": "wf", "nodes": [], "edges": []})
    loaded = await store.get_execution(execution.id)
    assert loaded.definition == {"id": "wf", "nodes": [], "edges": []}


@pytest.mark.asyncio
async def test_finished_at_tracks_terminal_status(store):
    execution = _execution()
    await store.create_execution(execution)

    assert await store.transition(execution.id, ["pending"], "running")
    running = await store.get_execution(execution.id)
    assert running.finished_at is None

    assert await store.transition(execution.id, ["running"], "failed", CANCELLED_ERROR)
    failed = await store.get_execution(execution.id)
    assert failed.finished_at is not None
    assert failed.error == CANCELLED_ERROR
    assert failed.duration_ms is not None


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(store):
    execution = _execution()
    await store.create_execution(execution)
    await store.transition(execution.id, ["pending"], "running")
    await store.transition(execution.id, ["running"], "completed")

    # A late cancel must not overwrite a terminal state.
    assert not await store.transition(execution.id, ["running", "paused"], "failed", "late")
    loaded = await store.get_execution(execution.id)
    assert loaded.status == "completed"
    assert loaded.error is None
    assert not await store.transition("missing", ["pending"], "running")


@pytest.mark.asyncio
async def test_node_attempts_reuse_one_row(store):
    execution = _execution()
    await store.create_execution(execution)

    first = await store.create_node_execution(execution.id, "A", "http", {"url": "x"})
    again = await store.create_node_execution(execution.id, "A", "http")
    assert first.id == again.id
    assert first.attempt == 0

    for expected in (1, 2, 3):
        running = await store.mark_node_running(execution.id, "A")
        assert running.status == "running"
        assert running.attempt == expected
        await store.mark_node_finished(execution.id, "A", "failed", error="boom")

    await store.mark_node_running(execution.id, "A")
    await store.mark_node_finished(execution.id, "A", "completed", output={"ok": True})

    nodes = await store.list_node_executions(execution.id)
    assert len(nodes) == 1
    node = nodes[0]
    assert node.status == "completed"
    assert node.attempt == 4
    assert node.output == {"ok": True}
    assert node.error is None
    assert node.input == {"url": "x"}
    assert node.finished_at is not None


@pytest.mark.asyncio
async def test_skip_nodes_keeps_terminal_rows(store):
    execution = _execution()
    await store.create_execution(execution)
    await store.create_node_execution(execution.id, "A", "noop")
    await store.mark_node_running(execution.id, "A")
    await store.mark_node_finished(execution.id, "A", "completed", output=1)

    await store.skip_nodes(execution.id, [("A", "noop"), ("B", "noop"), ("C", "email")])

    nodes = {n.node_id: n for n in await store.list_node_executions(execution.id)}
    assert nodes["A"].status == "completed"
    assert nodes["B"].status == "skipped"
    assert nodes["C"].status == "skipped"
    assert nodes["C"].node_type == "email"
    assert nodes["C"].attempt == 0


@pytest.mark.asyncio
async def test_claim_gives_one_live_owner(store):
    execution = _execution()
    await store.create_execution(execution)
    lease = utcnow() + timedelta(minutes=1)

    assert await store.claim(execution.id, "w1", lease)
    claimed = await store.get_execution(execution.id)
    assert claimed.status == "running"
    assert claimed.owner == "w1"

    assert not await store.claim(execution.id, "w2", lease)
    assert await store.claim(execution.id, "w1", lease)
    assert await store.renew_lease(execution.id, "w1", lease + timedelta(minutes=1))
    assert not await store.renew_lease(execution.id, "w2", lease)

    # Releasing on pause only succeeds while the execution is still paused.
    assert not await store.release(execution.id, "w1", "paused")
    assert await store.transition(execution.id, ["running"], "paused")
    assert not await store.release(execution.id, "w2", "paused")
    assert await store.release(execution.id, "w1", "paused")
    released = await store.get_execution(execution.id)
    assert released.owner is None
    assert released.lease_expires_at is None

    # Paused executions cannot be claimed until resumed.
    assert not await store.claim(execution.id, "w2", lease)
    assert await store.transition(execution.id, ["paused"], "running")
    assert await store.claim(execution.id, "w2", lease)


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(store):
    execution = _execution()
    await store.create_execution(execution)

    assert await store.claim(execution.id, "crashed", utcnow() - timedelta(seconds=1))
    assert await store.claim(execution.id, "w2", utcnow() + timedelta(minutes=1))
    assert (await store.get_execution(execution.id)).owner == "w2"

    await store.transition(execution.id, ["running"], "completed")
    assert not await store.claim(execution.id, "w3", utcnow() + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_retry_lineage_is_stored(store):
    original = _execution()
    await store.create_execution(original)
    retried = _execution(trigger_type="retry", retry_of=original.id)
    await store.create_execution(retried)

    loaded = await store.get_execution(retried.id)
    assert loaded.retry_of == original.id
    assert loaded.trigger_type == "retry"
    assert (await store.get_execution(original.id)).retry_of is None


@pytest.mark.asyncio
async def test_list_executions_filters_and_orders(store):
    now = utcnow()
    old = _execution("wf-a", started_at=now - timedelta(days=10))
    recent = _execution("wf-a", started_at=now - timedelta(hours=1))
    newest = _execution("wf-b", started_at=now)
    for execution in (old, recent, newest):
        await store.create_execution(execution)

    assert [e.id for e in await store.list_executions()] == [newest.id, recent.id, old.id]
    assert [e.id for e in await store.list_executions(workflow_id="wf-a")] == [recent.id, old.id]
    since = now - timedelta(days=1)
    assert [e.id for e in await store.list_executions(since=since)] == [newest.id, recent.id]
    assert len(await store.list_executions(limit=1)) == 1


@pytest.mark.asyncio
async def test_workflow_node_executions_span_executions(store):
    first = _execution("wf")
    second = _execution("wf")
    other = _execution("other")
    for execution in (first, second, other):
        await store.create_execution(execution)
        await store.create_node_execution(execution.id, "A", "noop")

    rows = await store.list_workflow_node_executions("wf")
    assert sorted(r.execution_id for r in rows) == sorted([first.id, second.id])


@pytest.mark.asyncio
async def test_logs_are_appended_in_order(store):
    execution = _execution()
    await store.create_execution(execution)
    await store.add_log(ExecutionLog(execution_id=execution.id, message="queued"))
    await store.add_log(
        ExecutionLog(
            execution_id=execution.id,
            node_id="A",
            level="warning",
            message="retry",
            data={"delay_ms": 1000},
        )
    )

    logs = await store.list_logs(execution.id)
    assert [log.message for log in logs] == ["queued", "retry"]
    assert logs[1].node_id == "A"
    assert logs[1].level == "warning"
    assert logs[1].data == {"delay_ms": 1000}
    assert logs[0].id is not None
