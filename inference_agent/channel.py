"""Inbound task filtering and outbound result/heartbeat publishing."""

from __future__ import annotations

import asyncio
import itertools
import logging

from .errors import SubscriptionExhausted, TransportError
from .messages import (
    Envelope,
    HealthStatus,
    MessageType,
    TaskAssignment,
    TaskResult,
    parse_assignment,
    parse_envelope,
)
from .subscriber import Subscription
from .transport import AsyncBaseTransport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 16


class AgentChannel:
    """Bridge between the messaging transport and the pipeline worker.

    Inbound messages that are malformed, not task assignments, or addressed
    to another agent are dropped. Accepted assignments go into
    :attr:`tasks`, a bounded queue whose ``put`` waits for room.
    """

    def __init__(
        self,
        transport: AsyncBaseTransport,
        agent_id: str,
        task_channel: str,
        result_channel: str,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        publish_timeout: float = 2.0,
    ) -> None:
        self._transport = transport
        self.agent_id = agent_id
        self.task_channel = task_channel
        self.result_channel = result_channel
        self.tasks: asyncio.Queue[TaskAssignment] = asyncio.Queue(maxsize=queue_size)
        self._sequence = itertools.count(1)
        self._publish_timeout = publish_timeout

    async def consume(self, subscription: Subscription) -> None:
        """Feed ``subscription`` into :attr:`tasks` until it closes."""
        async for raw in subscription:
            await self.handle_message(raw)
        if subscription.exhausted:
            raise SubscriptionExhausted(
                f"subscription to {subscription.channel} exhausted "
                f"after {subscription.attempts} attempts"
            )
        logger.info("subscription to %s closed", subscription.channel)

    async def handle_message(self, raw: bytes) -> bool:
        """Queue the assignment carried by ``raw``; return whether it was accepted."""
        envelope = parse_envelope(raw)
        if envelope is None:
            logger.debug("dropping malformed message on %s", self.task_channel)
            return False
        if envelope.type is not MessageType.TASK_ASSIGNMENT:
            logger.debug("ignoring %s message from %s", envelope.type.value, envelope.sender)
            return False
        if not envelope.addressed_to(self.agent_id):
            logger.debug("ignoring task addressed to %s", envelope.recipient)
            return False
        task = parse_assignment(envelope)
        if task is None:
            logger.debug("dropping invalid task assignment from %s", envelope.sender)
            return False
        await self.tasks.put(task)
        return True

    async def publish_result(self, result: TaskResult) -> None:
        payload = result.model_dump(mode="json", exclude_none=True)
        await self._publish(MessageType.TASK_RESULT, result.task_id, payload)

    async def publish_health(self, status: HealthStatus) -> None:
        payload = status.model_dump(mode="json", exclude_none=True)
        await self._publish(MessageType.HEARTBEAT, None, payload)

    async def _publish(self, kind: MessageType, task_id: str | None, payload: dict) -> None:
        envelope = Envelope(
            type=kind,
            sender=self.agent_id,
            task_id=task_id,
            sequence_num=next(self._sequence),
            payload=payload,
        )
        try:
            await self._transport.publish(
                self.result_channel, envelope.encode(), timeout=self._publish_timeout
            )
        except Exception as exc:
            raise TransportError(f"publish {kind.value} to {self.result_channel}: {exc}") from exc
