"""Graph execution tests for the execution worker."""

import asyncio
from datetime import timedelta

import pytest

from blockflow import ExecutionControl, ExecutionDispatcher, ExecutionWorker
from blockflow.constants import CANCELLED_ERROR
from blockflow.contracts import ExecutionJob, WorkflowDefinition, WorkflowEdge, WorkflowNode
from blockflow.errors import ExecutionLeased, PermanentBlockError, TransientBlockError
from blockflow.persistence.models import utcnow
from blockflow.utils import RetryPolicy


@pytest.fixture
def worker(queue, repo, workflows, registry):
    return ExecutionWorker(queue, repo, workflows, registry, worker_id="worker-test")


@pytest.fixture
def control(repo, queue):
    return ExecutionControl(repo, queue)


@pytest.fixture
def dispatch(repo, queue):
    dispatcher = ExecutionDispatcher(repo, queue)

    async def _dispatch(workflow_id="wf", **kwargs):
        execution_id = await dispatcher.dispatch(workflow_id, **kwargs)
        return execution_id, ExecutionJob(execution_id=execution_id, workflow_id=workflow_id)

    return _dispatch


def _register_counting(registry, calls, *block_types):
    for block_type in block_types:

        def handler(node, inputs, context, block_type=block_type):
            calls.append(node.id)
            return {"node": node.id, "inputs": inputs}

        registry.register(block_type, handler)


@pytest.mark.asyncio
async def test_linear_workflow_completes_in_order(
    worker, repo, transport, workflows, registry, linear_workflow, dispatch
):
    workflows.add(linear_workflow())
    calls = []

    @registry.block("a")
    async def first(node, inputs, context):
        calls.append(node.id)
        return {"value": inputs["seed"]}

    @registry.block("b")
    async def second(node, inputs, context):
        calls.append(node.id)
        return {"value": inputs["A"]["value"] + 1}

    @registry.block("c")
    def third(node, inputs, context):
        calls.append(node.id)
        return inputs["B"]["value"] * 10

    execution_id, _ = await dispatch(input={"seed": 1}, triggered_by="ada")
    await worker.start(lifespan=0.3)

    execution = await repo.get_execution(execution_id)
    assert execution.status == "completed"
    assert execution.finished_at is not None
    assert execution.error is None
    assert calls == ["A", "B", "C"]

    nodes = await repo.list_node_executions(execution_id)
    assert [n.node_id for n in nodes] == ["A", "B", "C"]
    assert all(n.status == "completed" for n in nodes)
    assert all(n.attempt == 1 for n in nodes)
    assert nodes[2].output == 20
    assert nodes[1].input == {"A": {"value": 1}}

    assert transport.unacked_count == 0
    assert await transport.stats(worker._queue.queue_name) == {
        worker._queue.queue_name: 0,
        f"{worker._queue.queue_name}.DLQ": 0,
    }


@pytest.mark.asyncio
async def test_transient_failures_are_retried(
    worker, repo, workflows, registry, linear_workflow, dispatch, retry_delays
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "c")
    attempts = []

    @registry.block("b")
    async def flaky(node, inputs, context):
        attempts.append(context.attempt)
        if len(attempts) < 3:
            raise TransientBlockError("upstream timeout")
        return "ok"

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "completed"

    assert attempts == [1, 2, 3]
    assert retry_delays == [1000, 2000]
    nodes = {n.node_id: n for n in await repo.list_node_executions(execution_id)}
    assert nodes["B"].status == "completed"
    assert nodes["B"].attempt == 3
    assert (await repo.get_execution(execution_id)).status == "completed"

    logs = await repo.list_logs(execution_id)
    retries = [log for log in logs if log.message.startswith("Retry scheduled")]
    assert [log.data["delay_ms"] for log in retries] == [1000, 2000]


@pytest.mark.asyncio
async def test_exhausted_retries_fail_execution(
    worker, repo, workflows, registry, linear_workflow, dispatch, retry_delays
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "c")

    @registry.block("b")
    async def broken(node, inputs, context):
        raise TransientBlockError("connection reset")

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"

    # No delay after the final failed attempt.
    assert retry_delays == [1000, 2000]
    assert calls == ["A"]
    execution = await repo.get_execution(execution_id)
    assert execution.error == "Node B failed: TransientBlockError: connection reset"
    assert execution.finished_at is not None
    nodes = {n.node_id: n for n in await repo.list_node_executions(execution_id)}
    assert nodes["B"].status == "failed"
    assert nodes["B"].attempt == 3
    assert nodes["C"].status == "skipped"


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried(
    worker, repo, workflows, registry, linear_workflow, dispatch, retry_delays
):
    workflows.add(linear_workflow(node_types=("a",)))

    @registry.block("a")
    def reject(node, inputs, context):
        raise PermanentBlockError("invalid recipient")

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"

    assert retry_delays == []
    node = (await repo.list_node_executions(execution_id))[0]
    assert node.attempt == 1
    assert node.error == "PermanentBlockError: invalid recipient"


@pytest.mark.asyncio
async def test_unknown_block_type_fails_node(worker, repo, workflows, linear_workflow, dispatch):
    workflows.add(linear_workflow(node_types=("mystery",)))

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"
    execution = await repo.get_execution(execution_id)
    assert "No handler registered for block type: mystery" in execution.error


@pytest.mark.asyncio
async def test_pause_stops_before_next_node(
    worker, repo, workflows, registry, linear_workflow, dispatch, control, transport
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "b", "c")

    @registry.block("a")
    async def pausing(node, inputs, context):
        calls.append(node.id)
        await control.pause(context.execution_id)
        return "a-done"

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "paused"

    execution = await repo.get_execution(execution_id)
    assert execution.status == "paused"
    assert execution.finished_at is None
    nodes = {n.node_id: n for n in await repo.list_node_executions(execution_id)}
    assert nodes["A"].status == "completed"
    assert "B" not in nodes

    # A redelivered job for a paused execution is released without work.
    assert await worker.handle_job(job) == "paused"
    assert calls == ["A"]

    await control.resume(execution_id)
    assert (await repo.get_execution(execution_id)).status == "running"
    assert await worker.handle_job(job) == "completed"
    assert calls == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_resume_uses_workflow_snapshot(
    worker, repo, workflows, registry, linear_workflow, dispatch, control
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "b", "c", "z")

    @registry.block("a")
    async def pausing(node, inputs, context):
        calls.append(node.id)
        await control.pause(context.execution_id)

    execution_id, job = await dispatch()
    await worker.handle_job(job)

    # The definition is edited while the execution is paused.
    workflows.add(
        WorkflowDefinition(id="wf", nodes=[WorkflowNode(id="Z", type="z")], edges=[])
    )
    await control.resume(execution_id)
    assert await worker.handle_job(job) == "completed"
    assert calls == ["A", "B", "C"]
    assert (await repo.get_execution(execution_id)).definition["nodes"][0]["id"] == "A"


@pytest.mark.asyncio
async def test_cancel_mid_run_skips_remaining_nodes(
    worker, repo, workflows, registry, linear_workflow, dispatch, control
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "c")

    @registry.block("b")
    async def cancelling(node, inputs, context):
        calls.append(node.id)
        await control.cancel(context.execution_id)
        return "b-done"

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"

    execution = await repo.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.error == CANCELLED_ERROR
    assert execution.finished_at is not None
    assert calls == ["A", "B"]
    nodes = {n.node_id: n for n in await repo.list_node_executions(execution_id)}
    assert nodes["B"].status == "completed"
    assert nodes["C"].status == "skipped"


@pytest.mark.asyncio
async def test_redelivered_terminal_execution_is_noop(
    worker, repo, workflows, registry, linear_workflow, dispatch
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "b", "c")

    execution_id, job = await dispatch()
    await worker.handle_job(job)
    finished = await repo.get_execution(execution_id)

    assert await worker.handle_job(job) == "completed"
    assert calls == ["A", "B", "C"]
    again = await repo.get_execution(execution_id)
    assert again.finished_at == finished.finished_at
    assert len(await repo.list_node_executions(execution_id)) == 3


@pytest.mark.asyncio
async def test_reentry_skips_completed_nodes(
    worker, repo, workflows, registry, linear_workflow, dispatch
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "b", "c")

    # A worker crashed after finishing A; the job is redelivered.
    execution_id, job = await dispatch()
    await repo.transition(execution_id, ["pending"], "running")
    await repo.create_node_execution(execution_id, "A", "a")
    await repo.mark_node_running(execution_id, "A")
    await repo.mark_node_finished(execution_id, "A", "completed", output={"cached": True})

    assert await worker.handle_job(job) == "completed"
    assert calls == ["B", "C"]
    nodes = {n.node_id: n for n in await repo.list_node_executions(execution_id)}
    assert nodes["B"].input == {"A": {"cached": True}}
    assert nodes["A"].attempt == 1


@pytest.mark.asyncio
async def test_missing_workflow_fails_execution(worker, repo, dispatch):
    execution_id, job = await dispatch("missing")
    assert await worker.handle_job(job) == "failed"

    execution = await repo.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.error == "Workflow missing not found"
    assert execution.finished_at is not None


@pytest.mark.asyncio
async def test_cyclic_workflow_fails_execution(worker, repo, workflows, registry, dispatch):
    workflows.add(
        WorkflowDefinition(
            id="loop",
            nodes=[WorkflowNode(id="A", type="a"), WorkflowNode(id="B", type="b")],
            edges=[WorkflowEdge(source="A", target="B"), WorkflowEdge(source="B", target="A")],
        )
    )
    execution_id, job = await dispatch("loop")
    assert await worker.handle_job(job) == "failed"

    execution = await repo.get_execution(execution_id)
    assert "cycle" in execution.error
    assert await repo.list_node_executions(execution_id) == []


@pytest.mark.asyncio
async def test_missing_execution_is_dropped(worker):
    job = ExecutionJob(execution_id="ghost", workflow_id="wf")
    assert await worker.handle_job(job) is None


@pytest.mark.asyncio
async def test_non_fatal_failure_skips_descendants_only(
    worker, repo, workflows, registry, dispatch
):
    workflows.add(
        WorkflowDefinition(
            id="fanout",
            nodes=[
                WorkflowNode(id="start", type="ok"),
                WorkflowNode(id="optional", type="broken", fatal=False),
                WorkflowNode(id="after_optional", type="ok"),
                WorkflowNode(id="main", type="ok"),
            ],
            edges=[
                WorkflowEdge(source="start", target="optional"),
                WorkflowEdge(source="optional", target="after_optional"),
                WorkflowEdge(source="start", target="main"),
            ],
        )
    )
    calls = []
    _register_counting(registry, calls, "ok")

    @registry.block("broken")
    def broken(node, inputs, context):
        raise ValueError("bad template")

    execution_id, job = await dispatch("fanout")
    assert await worker.handle_job(job) == "completed"

    nodes = {n.node_id: n.status for n in await repo.list_node_executions(execution_id)}
    assert nodes == {
        "start": "completed",
        "optional": "failed",
        "after_optional": "skipped",
        "main": "completed",
    }
    assert calls == ["start", "main"]


@pytest.mark.asyncio
async def test_node_timeout_counts_as_failure(
    queue, repo, workflows, registry, linear_workflow, dispatch
):
    workflows.add(linear_workflow(node_types=("a",)))

    @registry.block("a")
    async def slow(node, inputs, context):
        await asyncio.sleep(1)

    worker = ExecutionWorker(
        queue,
        repo,
        workflows,
        registry,
        retry_policy=RetryPolicy(attempts=1),
        node_timeout=0.05,
    )
    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"
    execution = await repo.get_execution(execution_id)
    assert "timed out" in execution.error


@pytest.mark.asyncio
async def test_retry_reruns_only_unfinished_nodes(
    worker, repo, workflows, registry, linear_workflow, dispatch, control
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "c")
    failures = []

    @registry.block("b")
    async def fails_once(node, inputs, context):
        calls.append(node.id)
        if not failures:
            failures.append(context.attempt)
            raise PermanentBlockError("quota exceeded")
        return "b-done"

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "failed"

    retried = await control.retry(execution_id)
    retry_job = ExecutionJob(execution_id=retried.id, workflow_id="wf")
    assert await worker.handle_job(retry_job) == "completed"
    assert calls == ["A", "B", "B", "C"]

    nodes = {n.node_id: n for n in await repo.list_node_executions(retried.id)}
    assert nodes["A"].attempt == 0
    assert nodes["A"].status == "completed"
    assert nodes["B"].attempt == 1
    assert nodes["B"].input == {"A": {"node": "A", "inputs": {}}}
    assert nodes["C"].status == "completed"

    original = {n.node_id: n.status for n in await repo.list_node_executions(execution_id)}
    assert original == {"A": "completed", "B": "failed", "C": "skipped"}
    assert (await repo.get_execution(execution_id)).status == "failed"
    # Redelivering the old job does not revive the failed execution.
    assert await worker.handle_job(job) == "failed"


@pytest.mark.asyncio
async def test_resume_during_in_flight_node_keeps_one_owner(
    queue, repo, workflows, registry, linear_workflow, dispatch, control
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "b", "c")
    started = asyncio.Event()
    release = asyncio.Event()

    @registry.block("a")
    async def slow(node, inputs, context):
        calls.append(node.id)
        started.set()
        await release.wait()
        return "a-done"

    first = ExecutionWorker(queue, repo, workflows, registry, worker_id="first")
    second = ExecutionWorker(queue, repo, workflows, registry, worker_id="second", lease_seconds=0.3)
    execution_id, job = await dispatch()

    running = asyncio.create_task(first.handle_job(job))
    await started.wait()
    await control.pause(execution_id)
    await control.resume(execution_id)

    # The resume job reaches another worker while A is still running.
    with pytest.raises(ExecutionLeased):
        await second.handle_job(job)
    assert (await repo.get_execution(execution_id)).owner == "first"

    release.set()
    assert await running == "completed"
    assert calls == ["A", "B", "C"]
    nodes = await repo.list_node_executions(execution_id)
    assert all(n.attempt == 1 for n in nodes)

    # Once the first worker let go, the leftover job is a no-op.
    assert await second.handle_job(job) == "completed"
    assert (await repo.get_execution(execution_id)).owner is None


@pytest.mark.asyncio
async def test_cancel_while_paused_skips_remaining_nodes(
    worker, repo, workflows, registry, linear_workflow, dispatch, control
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "b", "c")

    @registry.block("a")
    async def pausing(node, inputs, context):
        calls.append(node.id)
        await control.pause(context.execution_id)

    execution_id, job = await dispatch()
    assert await worker.handle_job(job) == "paused"
    assert (await repo.get_execution(execution_id)).owner is None

    await control.cancel(execution_id)

    execution = await repo.get_execution(execution_id)
    assert execution.error == CANCELLED_ERROR
    nodes = await repo.list_node_executions(execution_id)
    assert [n.status for n in nodes] == ["completed", "skipped", "skipped"]
    assert await worker.handle_job(job) == "failed"
    assert calls == ["A"]


@pytest.mark.asyncio
async def test_crashed_owner_is_taken_over_after_lease_expires(
    worker, repo, workflows, registry, linear_workflow, dispatch
):
    workflows.add(linear_workflow())
    calls = []
    _register_counting(registry, calls, "a", "b", "c")

    execution_id, job = await dispatch()
    await repo.claim(execution_id, "crashed", utcnow() - timedelta(seconds=1))

    assert await worker.handle_job(job) == "completed"
    assert calls == ["A", "B", "C"]
