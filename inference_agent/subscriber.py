"""Long-lived subscription to the inbound task channel.

The subscriber resubscribes from the start of the channel after a transport
failure, waiting a fixed delay between attempts, until ``max_attempts`` is
spent. Failures are reported on a bounded error queue that never blocks the
loop. Once attempts run out both streams are closed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from . import metrics
from .errors import TransportError
from .transport import AsyncBaseTransport

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 2.0
DEFAULT_MAX_ATTEMPTS = 11


class Subscription:
    """Message and error streams of one :class:`ReconnectingSubscriber` run."""

    def __init__(self, channel: str, buffer: int = 16) -> None:
        self.channel = channel
        self.messages: asyncio.Queue[bytes] = asyncio.Queue(maxsize=buffer)
        self.errors: asyncio.Queue[Exception] = asyncio.Queue(maxsize=buffer)
        self.closed = asyncio.Event()
        self.exhausted = False
        self.attempts = 0
        self._task: asyncio.Task[None] | None = None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        while True:
            if not self.messages.empty():
                return self.messages.get_nowait()
            if self.closed.is_set():
                raise StopAsyncIteration
            getter = asyncio.ensure_future(self.messages.get())
            closer = asyncio.ensure_future(self.closed.wait())
            try:
                await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                closer.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()

    def report(self, error: Exception) -> None:
        try:
            self.errors.put_nowait(error)
        except asyncio.QueueFull:
            logger.debug("error queue full, dropping: %s", error)

    def drain_errors(self) -> list[Exception]:
        errors = []
        while not self.errors.empty():
            errors.append(self.errors.get_nowait())
        return errors

    async def wait_closed(self) -> None:
        await self.closed.wait()

    async def cancel(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        # a task cancelled before its first step never runs its finally block
        self.closed.set()


class ReconnectingSubscriber:
    """Keep a subscription alive across transport failures."""

    def __init__(
        self,
        transport: AsyncBaseTransport,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        buffer: int = 16,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self._buffer = buffer

    def subscribe(self, channel: str) -> Subscription:
        """Start consuming ``channel`` in the background."""
        subscription = Subscription(channel, self._buffer)
        subscription._task = asyncio.get_running_loop().create_task(
            self._run(subscription), name=f"subscribe:{channel}"
        )
        return subscription

    async def _run(self, sub: Subscription) -> None:
        try:
            for attempt in range(1, self.max_attempts + 1):
                sub.attempts = attempt
                try:
                    async for data in self._transport.subscribe(sub.channel, from_start=True):
                        await sub.messages.put(data)
                    error = TransportError(f"subscription to {sub.channel} ended")
                except Exception as exc:
                    error = TransportError(f"subscription to {sub.channel} failed: {exc}")
                    error.__cause__ = exc

                metrics.SUBSCRIBER_RECONNECTS.inc()
                logger.warning(
                    "subscription attempt %d/%d on %s failed: %s",
                    attempt,
                    self.max_attempts,
                    sub.channel,
                    error,
                )
                sub.report(error)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.reconnect_delay)

            sub.exhausted = True
            logger.error(
                "subscription to %s exhausted %d attempts", sub.channel, self.max_attempts
            )
            sub.report(
                TransportError(
                    f"exhausted {self.max_attempts} subscription attempts on {sub.channel}"
                )
            )
        finally:
            sub.closed.set()
