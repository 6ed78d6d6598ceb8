"""Agent run loop: subscription, heartbeat and a single pipeline worker."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Optional

import httpx

from .auth import SessionAuthenticator
from .chain import ChainClient
from .channel import AgentChannel
from .clients import BrokerComputeClient, ChainMintClient, DAAuditClient, NodeStorageClient
from .errors import ConfigError, TransportError
from .messages import HealthStatus
from .pipeline import TaskPipeline
from .retry import RetryPolicy
from .subscriber import ReconnectingSubscriber
from .transport import AsyncBaseTransport

logger = logging.getLogger(__name__)

SEEN_TASKS_LIMIT = 1024


class InferenceAgent:
    """Run the inference agent until cancelled.

    The subscriber, the heartbeat and the pipeline worker run as separate
    tasks. Tasks are processed strictly one at a time; a task id that is
    active or was recently handled is skipped, since resubscribing replays
    the channel from its start.
    """

    def __init__(
        self,
        agent_id: str,
        channel: AgentChannel,
        subscriber: ReconnectingSubscriber,
        pipeline: TaskPipeline,
        health_interval: float = 30.0,
        seen_limit: int = SEEN_TASKS_LIMIT,
    ) -> None:
        self.agent_id = agent_id
        self.channel = channel
        self.subscriber = subscriber
        self.pipeline = pipeline
        self.health_interval = health_interval
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_limit = seen_limit
        self._started_at: Optional[float] = None

    def health(self) -> HealthStatus:
        uptime = 0 if self._started_at is None else time.monotonic() - self._started_at
        active = self.pipeline.active_task_id
        return HealthStatus(
            agent_id=self.agent_id,
            status="processing" if active else "idle",
            active_task_id=active,
            uptime_seconds=int(uptime),
            completed_tasks=self.pipeline.completed_tasks,
            failed_tasks=self.pipeline.failed_tasks,
        )

    async def run(self) -> None:
        """Process tasks until cancelled or the subscription is exhausted."""
        self._started_at = time.monotonic()
        subscription = self.subscriber.subscribe(self.channel.task_channel)
        logger.info("agent %s listening on %s", self.agent_id, self.channel.task_channel)
        tasks = [
            asyncio.create_task(self.channel.consume(subscription), name="consume"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
            asyncio.create_task(self._work_loop(), name="worker"),
        ]
        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await subscription.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.pipeline.close()
            logger.info("agent %s stopped", self.agent_id)

    def _remember(self, task_id: str) -> None:
        self._seen[task_id] = None
        self._seen.move_to_end(task_id)
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

    async def _work_loop(self) -> None:
        while True:
            task = await self.channel.tasks.get()
            if task.task_id in self._seen or self.pipeline.is_active(task.task_id):
                logger.info("skipping duplicate delivery of task %s", task.task_id)
                continue
            self._remember(task.task_id)
            logger.info("processing task %s (model %s)", task.task_id, task.model_id)
            await self.pipeline.process(task)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            try:
                await self.channel.publish_health(self.health())
            except TransportError as exc:
                logger.warning("heartbeat not published: %s", exc)


def build_chain(cfg: Dict[str, Any], client: httpx.AsyncClient) -> Optional[ChainClient]:
    """Return a chain client when any configured service needs one."""
    needed = cfg.get("serving_contract") or cfg.get("flow_contract") or cfg.get("token_contract")
    if not needed:
        return None
    return ChainClient(
        cfg["chain_rpc"], client, private_key=cfg.get("private_key"), chain_id=cfg["chain_id"]
    )


async def check_chain(chain: ChainClient, expected: int) -> None:
    """Fail startup when the RPC endpoint is unreachable or on another chain."""
    chain_id = await chain.get_chain_id()
    if chain_id != expected:
        raise ConfigError(f"chain RPC reports chain id {chain_id}, expected {expected}")


def build_agent(
    cfg: Dict[str, Any],
    transport: AsyncBaseTransport,
    client: httpx.AsyncClient,
    chain: Optional[ChainClient] = None,
) -> InferenceAgent:
    """Wire the configured service clients into an :class:`InferenceAgent`."""
    if not cfg.get("private_key"):
        raise ConfigError("INFERENCE_PRIVATE_KEY is required to sign provider sessions")
    compute_sources = ("compute_endpoint", "provider_endpoint", "serving_contract")
    if not any(cfg.get(key) for key in compute_sources):
        raise ConfigError("no compute endpoint, provider endpoint or serving contract configured")
    if not (cfg.get("storage_endpoint") or cfg.get("flow_contract")):
        raise ConfigError("no storage endpoint or flow contract configured")
    if not cfg.get("token_contract"):
        raise ConfigError("INFERENCE_TOKEN_CONTRACT is required")
    chain = chain or build_chain(cfg, client)

    compute = BrokerComputeClient(
        client,
        SessionAuthenticator(cfg["private_key"]),
        endpoint=cfg.get("compute_endpoint"),
        chain=chain,
        serving_contract=cfg.get("serving_contract"),
        provider_endpoint=cfg.get("provider_endpoint"),
        cache_ttl=cfg["provider_cache_ttl"],
        poll_interval=cfg["poll_interval"],
        poll_timeout=cfg["poll_timeout"],
    )
    storage = NodeStorageClient(
        client,
        endpoint=cfg.get("storage_endpoint"),
        chain=chain,
        flow_contract=cfg.get("flow_contract"),
    )
    minter = ChainMintClient(
        chain,
        cfg["token_contract"],
        key=cfg["encryption_key_bytes"],
        key_id=cfg["encryption_key_id"],
    )
    audit = None
    if cfg.get("audit_endpoint"):
        audit = DAAuditClient(
            client,
            cfg["audit_endpoint"],
            namespace=cfg["audit_namespace"],
            retry=RetryPolicy(
                max_retries=cfg["audit_max_retries"], base_delay=cfg["audit_backoff"]
            ),
        )
    else:
        logger.warning("no audit endpoint configured, audit events will not be published")

    channel = AgentChannel(
        transport,
        cfg["agent_id"],
        cfg["task_channel"],
        cfg["result_channel"],
        queue_size=cfg["queue_size"],
    )
    subscriber = ReconnectingSubscriber(
        transport,
        reconnect_delay=cfg["reconnect_delay"],
        max_attempts=cfg["reconnect_max_attempts"],
        buffer=cfg["queue_size"],
    )
    pipeline = TaskPipeline(
        agent_id=cfg["agent_id"],
        compute=compute,
        storage=storage,
        minter=minter,
        reporter=channel,
        audit=audit,
    )
    return InferenceAgent(
        cfg["agent_id"],
        channel,
        subscriber,
        pipeline,
        health_interval=cfg["health_interval"],
    )
