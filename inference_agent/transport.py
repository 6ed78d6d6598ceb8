"""Transport clients for the inbound task and outbound result channels."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List


class AsyncBaseTransport:
    """Abstract asynchronous transport client interface."""

    async def publish(self, subject: str, data: bytes, timeout: float = 2.0) -> None:
        """Send ``data`` on ``subject`` within ``timeout`` seconds."""
        raise NotImplementedError

    def subscribe(self, subject: str, from_start: bool = True) -> AsyncIterator[bytes]:
        """Yield raw messages from ``subject``.

        With ``from_start`` the subscription replays the channel from its
        earliest retained message. The iterator raises on transport failure.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AsyncNatsClient(AsyncBaseTransport):
    """Asynchronous NATS transport using a nats-py connection.

    With ``jetstream`` enabled subscriptions use an ordered consumer that
    starts from the first message retained by the stream. Core NATS has no
    history so ``from_start`` only applies to JetStream.
    """

    def __init__(self, connection: Any, jetstream: bool = True) -> None:
        self._connection = connection
        self._jetstream = jetstream

    async def publish(self, subject: str, data: bytes, timeout: float = 2.0) -> None:
        await self._connection.publish(subject, data)
        await self._connection.flush(timeout=timeout)

    async def subscribe(self, subject: str, from_start: bool = True) -> AsyncIterator[bytes]:
        if self._jetstream:
            from nats.js.api import ConsumerConfig, DeliverPolicy

            policy = DeliverPolicy.ALL if from_start else DeliverPolicy.NEW
            sub = await self._connection.jetstream().subscribe(
                subject,
                ordered_consumer=True,
                config=ConsumerConfig(deliver_policy=policy),
            )
        else:
            sub = await self._connection.subscribe(subject)
        try:
            async for msg in sub.messages:
                yield msg.data
        finally:
            await sub.unsubscribe()

    async def close(self) -> None:
        await self._connection.drain()


class MemoryTransport(AsyncBaseTransport):
    """In-process transport keeping every published message per subject."""

    def __init__(self) -> None:
        self._log: Dict[str, List[bytes]] = defaultdict(list)
        self._changed = asyncio.Condition()

    def messages(self, subject: str) -> List[bytes]:
        return list(self._log[subject])

    async def publish(self, subject: str, data: bytes, timeout: float = 2.0) -> None:
        async with self._changed:
            self._log[subject].append(data)
            self._changed.notify_all()

    async def subscribe(self, subject: str, from_start: bool = True) -> AsyncIterator[bytes]:
        position = 0 if from_start else len(self._log[subject])
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: len(self._log[subject]) > position)
                pending = self._log[subject][position:]
            position += len(pending)
            for data in pending:
                yield data


def get_client(transport: str, **kwargs: Any) -> AsyncBaseTransport:
    """Return a transport client for ``transport``."""
    if transport == "nats":
        return AsyncNatsClient(**kwargs)
    if transport == "memory":
        return MemoryTransport()
    raise ValueError(f"Unknown transport type: {transport}")


__all__ = [
    "AsyncBaseTransport",
    "AsyncNatsClient",
    "MemoryTransport",
    "get_client",
]
