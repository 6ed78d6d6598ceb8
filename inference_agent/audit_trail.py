"""Ordered, best-effort publication of pipeline audit events."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from . import metrics
from .clients.base import AuditClient
from .models import AuditEvent

logger = logging.getLogger(__name__)


class AuditTrail:
    """Publish audit events one at a time in the order they were emitted.

    :meth:`emit` never blocks and never raises. It returns a future that
    resolves to the submission id, or to ``None`` when publishing failed or
    no audit client is configured.
    """

    def __init__(self, client: Optional[AuditClient]) -> None:
        self._client = client
        self._queue: asyncio.Queue[Tuple[AuditEvent, asyncio.Future]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._current: Optional[asyncio.Future] = None

    def emit(self, event: AuditEvent) -> "asyncio.Future[Optional[str]]":
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        if self._client is None:
            future.set_result(None)
            return future
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(), name="audit-trail"
            )
        self._queue.put_nowait((event, future))
        return future

    async def _drain(self) -> None:
        while True:
            event, future = await self._queue.get()
            self._current = future
            try:
                submission_id: Optional[str] = await self._client.publish(event)
            except Exception as exc:
                metrics.AUDIT_PUBLISH_FAILURES.labels(event.type.value).inc()
                logger.warning(
                    "audit event %s for task %s not published: %s",
                    event.type.value,
                    event.task_id,
                    exc,
                )
                submission_id = None
            finally:
                self._current = None
                self._queue.task_done()
            if not future.done():
                future.set_result(submission_id)

    async def flush(self) -> None:
        """Wait until every emitted event has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop publishing; events still queued are dropped."""
        dropped = []
        if self._current is not None:
            dropped.append(self._current)
        while not self._queue.empty():
            _event, future = self._queue.get_nowait()
            self._queue.task_done()
            dropped.append(future)
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for future in dropped:
            if not future.done():
                future.set_result(None)
        if dropped:
            logger.info("dropped %d unpublished audit events", len(dropped))
