"""Transport tests."""

import pytest

from blockflow.contracts import ExecutionJob
from blockflow.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    await transport.publish("jobs", ExecutionJob(execution_id="exec-1", workflow_id="wf"))

    message_received = False
    async for raw_msg, job in transport.subscribe("jobs"):
        assert job.execution_id == "exec-1"
        assert job.workflow_id == "wf"
        assert transport.unacked_count == 1

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.unacked_count == 0
    assert await transport.stats("jobs") == {"jobs": 0, "jobs.DLQ": 0}


@pytest.mark.asyncio
async def test_nack_requeues_at_front():
    transport = InMemoryTransport()
    await transport.publish("jobs", ExecutionJob(execution_id="first", workflow_id="wf"))
    await transport.publish("jobs", ExecutionJob(execution_id="second", workflow_id="wf"))

    deliveries = transport.subscribe("jobs")
    raw, job = await deliveries.__anext__()
    assert job.execution_id == "first"
    await transport.nack(raw, requeue=True)

    raw, job = await deliveries.__anext__()
    assert job.execution_id == "first"
    await transport.nack(raw, requeue=False)
    await deliveries.aclose()

    assert await transport.stats("jobs") == {"jobs": 1, "jobs.DLQ": 1}


@pytest.mark.asyncio
async def test_poison_messages_go_to_dead_letter_queue():
    transport = InMemoryTransport()
    await transport.publish_raw("jobs", '{"execution_id": ""}')
    await transport.publish("jobs", ExecutionJob(execution_id="good", workflow_id="wf"))

    received = []
    async for raw, job in transport.subscribe("jobs", lifespan=0.2):
        received.append(job.execution_id)
        await transport.ack(raw)

    assert received == ["good"]
    assert await transport.stats("jobs") == {"jobs": 0, "jobs.DLQ": 1}


@pytest.mark.asyncio
async def test_unacked_deliveries_are_redelivered():
    transport = InMemoryTransport()
    await transport.publish("jobs", ExecutionJob(execution_id="exec-1", workflow_id="wf"))

    deliveries = transport.subscribe("jobs")
    await deliveries.__anext__()
    await deliveries.aclose()

    # Consumer vanished without settling the delivery.
    assert await transport.redeliver_unacked() == 1
    assert await transport.stats("jobs") == {"jobs": 1, "jobs.DLQ": 0}


def test_redis_transport_defaults():
    from blockflow.transports.redis import RedisTransport

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert RedisTransport._processing_key("jobs") == "blockflow:jobs:processing"


def test_rabbitmq_transport_defaults():
    from blockflow.transports.rabbitmq import RabbitMQTransport

    transport = RabbitMQTransport(prefetch_count=4)
    assert transport.prefetch_count == 4
    assert transport.url.startswith("amqp://")
