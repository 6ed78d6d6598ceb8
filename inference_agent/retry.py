"""Bounded retry with exponential backoff for submit-and-confirm operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import (
    AuthenticationError,
    ConfigError,
    NotFound,
    Rejected,
    RetryExhausted,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL = (Rejected, NotFound, AuthenticationError, ConfigError)


def is_retryable(exc: BaseException) -> bool:
    """Return ``False`` for failures that another attempt cannot fix."""
    return not isinstance(exc, _TERMINAL)


@dataclass
class RetryPolicy:
    """Run an operation up to ``max_retries + 1`` times.

    The wait before retry ``n`` is ``base_delay * 2 ** (n - 1)``. Operations
    handed to :meth:`execute` must be safe to repeat, either because they have
    no side effects until confirmed or because the remote side deduplicates
    them.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    retryable: Callable[[BaseException], bool] = is_retryable

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
    ) -> T:
        attempts = self.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                last_error = exc
                if attempt == attempts:
                    break
                delay = self.base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
        assert last_error is not None
        raise RetryExhausted(description, attempts, last_error) from last_error
