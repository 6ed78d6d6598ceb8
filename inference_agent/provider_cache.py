"""Time-boxed cache of compute providers keyed by model id."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .errors import NotFound
from .models import ProviderRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0

Discovery = Callable[[], Awaitable[Iterable[ProviderRecord]]]


class ProviderCache:
    """Resolve model ids to provider endpoints.

    A miss or an expired entry set triggers one discovery call; concurrent
    resolvers wait on the same lock and reuse its outcome. A successful
    discovery replaces the whole provider set. When discovery fails and a
    static ``fallback_endpoint`` is configured it is returned instead.
    """

    def __init__(
        self,
        discover: Discovery,
        ttl: float = DEFAULT_TTL,
        fallback_endpoint: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._discover = discover
        self.ttl = ttl
        self.fallback_endpoint = fallback_endpoint
        self._clock = clock
        self._providers: Dict[str, ProviderRecord] = {}
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return bool(self._providers) and self._clock() < self._expires_at

    def providers(self) -> list[ProviderRecord]:
        return list(self._providers.values())

    def invalidate(self) -> None:
        self._expires_at = 0.0

    async def resolve(self, model_id: str) -> ProviderRecord:
        if self._fresh() and model_id in self._providers:
            return self._providers[model_id]

        async with self._lock:
            # another resolver may have refreshed while we waited
            if not self._fresh():
                try:
                    await self.refresh()
                except Exception as exc:
                    return self._fallback(model_id, exc)

        record = self._providers.get(model_id)
        if record is None:
            raise NotFound(f"no provider serves model {model_id}")
        return record

    async def refresh(self) -> None:
        """Replace the cached provider set with a new discovery result."""
        records = list(await self._discover())
        self._providers = {record.model: record for record in records}
        self._expires_at = self._clock() + self.ttl
        logger.info("discovered %d compute providers", len(self._providers))

    def _fallback(self, model_id: str, exc: Exception) -> ProviderRecord:
        if not self.fallback_endpoint:
            if isinstance(exc, NotFound):
                raise exc
            raise NotFound(f"provider discovery failed for model {model_id}: {exc}") from exc
        logger.warning(
            "provider discovery failed, using static endpoint %s: %s",
            self.fallback_endpoint,
            exc,
        )
        return ProviderRecord(
            model=model_id,
            url=self.fallback_endpoint,
            name="static",
        )
