"""Example running a workflow in-process with the in-memory backends."""

import asyncio
import logging

from blockflow import (
    BlockRegistry,
    ExecutionAnalytics,
    ExecutionDispatcher,
    ExecutionQueue,
    ExecutionWorker,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    get_repository,
    get_transport,
)
from blockflow.db import InMemoryWorkflowSource

registry = BlockRegistry()


@registry.block("price")
async def fetch_price(node, inputs, context):
    return {"symbol": node.config["symbol"], "price": 101.5}


@registry.block("threshold")
def check_threshold(node, inputs, context):
    price = inputs["price"]["price"]
    return {"triggered": price > node.config["above"]}


@registry.block("notify")
async def notify(node, inputs, context):
    print(f"Notify {context.triggered_by}: {inputs}")


async def main():
    workflow = WorkflowDefinition(
        id="price-alert",
        name="Price alert",
        nodes=[
            WorkflowNode(id="price", type="price", config={"symbol": "ETH"}),
            WorkflowNode(id="check", type="threshold", config={"above": 100}),
            WorkflowNode(id="notify", type="notify", fatal=False),
        ],
        edges=[
            WorkflowEdge(source="price", target="check"),
            WorkflowEdge(source="check", target="notify"),
        ],
    )

    repository = get_repository()
    queue = ExecutionQueue(get_transport("inmemory"))
    worker = ExecutionWorker(queue, repository, InMemoryWorkflowSource([workflow]), registry)

    execution_id = await ExecutionDispatcher(repository, queue).dispatch(
        workflow.id, triggered_by="user-123", trigger_type="manual"
    )
    await worker.start(lifespan=1)

    execution = await repository.get_execution(execution_id)
    print(f"Execution {execution_id}: {execution.status}")
    for node in await repository.list_node_executions(execution_id):
        print(f"- {node.node_id}: {node.status} -> {node.output}")

    summary = await ExecutionAnalytics(repository).summary(workflow.id)
    print(f"Success rate: {summary.success_rate:.0f}%")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
