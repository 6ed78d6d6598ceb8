"""Compute broker client: provider discovery, job submission and polling."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from eth_abi import decode, encode

from ..auth import SessionAuthenticator
from ..chain import ChainClient, selector
from ..errors import NotFound, OperationTimeout, Rejected
from ..http_utils import decode_json, raise_for_status, request as http_request
from ..models import JobRequest, JobResult, JobStatus, ProviderRecord
from ..provider_cache import ProviderCache
from .base import ComputeClient

logger = logging.getLogger(__name__)

GET_ALL_SERVICES = "getAllServices(uint256,uint256)"
SERVICE_TUPLE = "(address,string,string,uint256,uint256,uint256,string,string,string,address,bool)"
DISCOVERY_PAGE_SIZE = 50


def _parse_result(job_id: str, body: Dict[str, Any]) -> JobResult:
    if body.get("error"):
        error = body["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        return JobResult(job_id=job_id, status=JobStatus.FAILED, error=message)
    choices = body.get("choices") or []
    if not choices:
        return JobResult(job_id=job_id, status=JobStatus.PENDING)
    content = choices[0].get("message", {}).get("content", "")
    usage = body.get("usage") or {}
    return JobResult(
        job_id=job_id,
        status=JobStatus.COMPLETED,
        output=content,
        tokens_used=int(usage.get("total_tokens", 0)),
    )


class BrokerComputeClient(ComputeClient):
    """Run chat-completion jobs on providers found through the broker.

    Provider discovery reads the serving contract when ``chain`` and
    ``serving_contract`` are set and falls back to the broker's HTTP listing.
    Providers answer synchronously, so completed results are kept in memory
    and returned by :meth:`get_result` without polling.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        authenticator: SessionAuthenticator,
        endpoint: Optional[str] = None,
        chain: Optional[ChainClient] = None,
        serving_contract: Optional[str] = None,
        provider_endpoint: Optional[str] = None,
        cache_ttl: float = 300.0,
        poll_interval: float = 2.0,
        poll_timeout: float = 300.0,
    ) -> None:
        self._client = client
        self._auth = authenticator
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self._chain = chain
        self.serving_contract = serving_contract
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.providers = ProviderCache(
            self.list_models, ttl=cache_ttl, fallback_endpoint=provider_endpoint
        )
        self._completed: Dict[str, JobResult] = {}

    async def list_models(self) -> List[ProviderRecord]:
        records: List[ProviderRecord] = []
        if self._chain is not None and self.serving_contract:
            try:
                records = await self._discover_on_chain()
            except Exception as exc:
                if self.endpoint is None:
                    raise
                logger.warning("on-chain provider discovery failed, trying HTTP: %s", exc)
        if not records and self.endpoint is not None:
            records = await self._discover_over_http()
        if not records:
            raise NotFound("no compute providers available")
        return records

    async def _discover_on_chain(self) -> List[ProviderRecord]:
        data = selector(GET_ALL_SERVICES) + encode(
            ["uint256", "uint256"], [0, DISCOVERY_PAGE_SIZE]
        )
        raw = await self._chain.call(self.serving_contract, data)
        if not raw:
            return []
        services, _total = decode([SERVICE_TUPLE + "[]", "uint256"], raw)
        records = []
        for provider, name, url, _in, _out, _updated, model, *_rest in services:
            if not url or not model:
                continue
            records.append(
                ProviderRecord(model=model, url=url.rstrip("/"), provider=provider, name=name)
            )
        return records

    async def _discover_over_http(self) -> List[ProviderRecord]:
        url = f"{self.endpoint}/api/services/list"
        response = await http_request(self._client, "GET", url)
        raise_for_status(response, "list services")
        entries = decode_json(response, "list services") or []
        return [
            ProviderRecord(
                model=entry.get("model", ""),
                url=entry.get("url", "").rstrip("/"),
                provider=entry.get("providerAddress", ""),
                name=entry.get("name", ""),
                service_type=entry.get("serviceType", "chatbot"),
            )
            for entry in entries
            if entry.get("model") and entry.get("url")
        ]

    async def submit_job(self, request: JobRequest) -> str:
        provider = await self.providers.resolve(request.model_id)
        body: Dict[str, Any] = {
            "model": request.model_id,
            "messages": [{"role": "user", "content": request.input}],
            "temperature": request.temperature,
        }
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens

        url = f"{provider.url}/v1/proxy/chat/completions"
        response = await self._auth.execute_with_auth_retry(self._client, "POST", url, json=body)
        raise_for_status(response, f"submit job to {provider.name or provider.url}")
        payload = decode_json(response, "submit job")
        job_id = payload.get("id")
        if not job_id:
            raise Rejected("provider response carries no job id")

        result = _parse_result(job_id, payload)
        if result.status is JobStatus.FAILED:
            raise Rejected(f"job {job_id} rejected: {result.error}")
        if result.status is JobStatus.COMPLETED:
            self._completed[job_id] = result
        logger.info("submitted job %s for model %s", job_id, request.model_id)
        return job_id

    async def get_result(self, job_id: str, timeout: Optional[float] = None) -> JobResult:
        cached = self._completed.pop(job_id, None)
        if cached is not None:
            return cached
        if self.endpoint is None:
            raise NotFound(f"job {job_id} unknown and no broker endpoint to poll")

        budget = self.poll_timeout if timeout is None else min(timeout, self.poll_timeout)
        if budget <= 0:
            raise OperationTimeout(f"no time left to wait for job {job_id}")
        deadline = time.monotonic() + budget
        url = f"{self.endpoint}/api/services/query/{job_id}"
        while True:
            response = await http_request(self._client, "GET", url)
            if response.status_code != 404:
                raise_for_status(response, f"query job {job_id}")
                result = _parse_result(job_id, decode_json(response, "query job"))
                if result.status is JobStatus.FAILED:
                    raise Rejected(f"job {job_id} failed: {result.error}")
                if result.status is JobStatus.COMPLETED:
                    return result
            if time.monotonic() + self.poll_interval > deadline:
                raise OperationTimeout(f"job {job_id} not finished after {budget:.0f}s")
            await asyncio.sleep(self.poll_interval)
