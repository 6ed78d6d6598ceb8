import asyncio
import json

import pytest

from inference_agent.channel import AgentChannel
from inference_agent.errors import SubscriptionExhausted, TransportError
from inference_agent.messages import HealthStatus, ResultStatus, TaskResult
from inference_agent.subscriber import Subscription
from inference_agent.transport import AsyncBaseTransport, MemoryTransport


def _assignment(task_id="t-1", recipient=None, kind="task_assignment", payload=None):
    envelope = {
        "type": kind,
        "sender": "coordinator",
        "sequence_num": 1,
        "timestamp": "2025-01-01T00:00:00Z",
        "payload": payload
        if payload is not None
        else {"task_id": task_id, "model_id": "m-1", "input": "2+2?"},
    }
    if recipient:
        envelope["recipient"] = recipient
    return json.dumps(envelope).encode()


def _channel(transport=None, queue_size=16):
    return AgentChannel(
        transport or MemoryTransport(), "agent-1", "tasks", "results", queue_size=queue_size
    )


@pytest.mark.asyncio
async def test_filters_inbound_messages():
    channel = _channel()
    assert await channel.handle_message(_assignment())
    assert await channel.handle_message(_assignment("t-2", recipient="agent-1"))
    assert not await channel.handle_message(_assignment("t-3", recipient="agent-9"))
    assert not await channel.handle_message(_assignment(kind="heartbeat"))
    assert not await channel.handle_message(b"{broken")
    assert not await channel.handle_message(_assignment(payload={"input": "x"}))
    assert channel.tasks.qsize() == 2
    assert channel.tasks.get_nowait().task_id == "t-1"
    assert channel.tasks.get_nowait().task_id == "t-2"


@pytest.mark.asyncio
async def test_full_queue_applies_backpressure():
    channel = _channel(queue_size=1)
    await channel.handle_message(_assignment("t-1"))
    blocked = asyncio.create_task(channel.handle_message(_assignment("t-2")))
    await asyncio.sleep(0.01)
    assert not blocked.done()
    channel.tasks.get_nowait()
    assert await asyncio.wait_for(blocked, 1)
    assert channel.tasks.get_nowait().task_id == "t-2"


@pytest.mark.asyncio
async def test_consume_raises_when_subscription_exhausted():
    channel = _channel()
    sub = Subscription("tasks")
    await sub.messages.put(_assignment())
    sub.exhausted = True
    sub.attempts = 11
    sub.closed.set()
    with pytest.raises(SubscriptionExhausted):
        await channel.consume(sub)
    assert channel.tasks.qsize() == 1


@pytest.mark.asyncio
async def test_publish_increments_sequence():
    transport = MemoryTransport()
    channel = _channel(transport)
    await channel.publish_result(
        TaskResult(task_id="t-1", status=ResultStatus.COMPLETED, output="4")
    )
    await channel.publish_health(
        HealthStatus(
            agent_id="agent-1",
            status="idle",
            uptime_seconds=5,
            completed_tasks=1,
            failed_tasks=0,
        )
    )
    sent = [json.loads(m) for m in transport.messages("results")]
    assert [m["sequence_num"] for m in sent] == [1, 2]
    assert [m["type"] for m in sent] == ["task_result", "heartbeat"]
    assert sent[0]["sender"] == "agent-1"
    assert sent[0]["task_id"] == "t-1"
    assert sent[0]["payload"] == {"task_id": "t-1", "status": "completed", "output": "4"}
    assert "active_task_id" not in sent[1]["payload"]


@pytest.mark.asyncio
async def test_publish_failure_is_transport_error():
    class Broken(AsyncBaseTransport):
        async def publish(self, subject, data, timeout=2.0):
            raise ConnectionError("no route")

    channel = _channel(Broken())
    with pytest.raises(TransportError):
        await channel.publish_result(TaskResult(task_id="t", status=ResultStatus.FAILED))
