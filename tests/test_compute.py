import asyncio
import json

import httpx
import pytest
from eth_abi import encode

from inference_agent.auth import SessionAuthenticator
from inference_agent.chain import ChainClient
from inference_agent.clients.compute import SERVICE_TUPLE, BrokerComputeClient
from inference_agent.errors import NotFound, OperationTimeout, Rejected
from inference_agent.models import JobRequest, JobStatus

from conftest import TEST_KEY

PROVIDER = "0x" + "ab" * 20


def _services_result(services):
    rows = [
        (PROVIDER, name, url, 0, 0, 0, model, "none", "", "0x" + "00" * 20, True)
        for name, url, model in services
    ]
    return "0x" + encode([SERVICE_TUPLE + "[]", "uint256"], [rows, len(rows)]).hex()


class Broker:
    """Fake broker, provider and RPC node served through one MockTransport."""

    def __init__(self):
        self.paths = []
        self.listing = [
            {"providerAddress": PROVIDER, "name": "Test", "serviceType": "chatbot",
             "url": "http://provider", "model": "m-1"}
        ]
        self.chain_services = None
        self.query_responses = []
        self.completion = {
            "id": "job-1",
            "choices": [{"message": {"role": "assistant", "content": "4"}}],
            "usage": {"total_tokens": 3},
        }
        self.completion_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.host == "rpc":
            body = json.loads(request.content)
            if self.chain_services is None:
                return httpx.Response(503)
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.chain_services}
            )
        if request.url.path == "/api/services/list":
            return httpx.Response(200, json=self.listing)
        if request.url.path == "/v1/proxy/chat/completions":
            assert request.headers["Authorization"].startswith("Bearer app-sk-")
            sent = json.loads(request.content)
            assert sent["messages"] == [{"role": "user", "content": "2+2?"}]
            return httpx.Response(self.completion_status, json=self.completion)
        if request.url.path.startswith("/api/services/query/"):
            status, body = self.query_responses.pop(0)
            return httpx.Response(status, json=body)
        return httpx.Response(404)


def _client(broker, chain=False, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(broker))
    chain_client = ChainClient("http://rpc", http) if chain else None
    compute = BrokerComputeClient(
        http,
        SessionAuthenticator(TEST_KEY),
        endpoint="http://broker",
        chain=chain_client,
        serving_contract="0x" + "cd" * 20 if chain else None,
        poll_interval=0.01,
        poll_timeout=1,
        **kwargs,
    )
    return http, compute


@pytest.mark.asyncio
async def test_submit_and_short_circuit_result():
    broker = Broker()
    http, compute = _client(broker)
    async with http:
        job_id = await compute.submit_job(JobRequest(model_id="m-1", input="2+2?", max_tokens=8))
        result = await compute.get_result(job_id)
    assert job_id == "job-1"
    assert result.status is JobStatus.COMPLETED
    assert result.output == "4"
    assert result.tokens_used == 3
    assert "/api/services/query/job-1" not in broker.paths


@pytest.mark.asyncio
async def test_polls_until_complete():
    broker = Broker()
    broker.completion = {"id": "job-2", "choices": []}
    broker.query_responses = [
        (404, {}),
        (200, {"id": "job-2", "choices": [{"message": {"content": "done"}}], "usage": {"total_tokens": 5}}),
    ]
    http, compute = _client(broker)
    async with http:
        job_id = await compute.submit_job(JobRequest(model_id="m-1", input="2+2?"))
        result = await compute.get_result(job_id)
    assert result.output == "done"
    assert result.tokens_used == 5
    assert broker.paths.count("/api/services/query/job-2") == 2


@pytest.mark.asyncio
async def test_failed_job_is_rejected():
    broker = Broker()
    broker.query_responses = [(200, {"id": "job-3", "error": {"message": "gpu on fire"}})]
    http, compute = _client(broker)
    async with http:
        with pytest.raises(Rejected, match="gpu on fire"):
            await compute.get_result("job-3")


@pytest.mark.asyncio
async def test_poll_timeout(monkeypatch):
    broker = Broker()
    broker.query_responses = [(404, {})] * 100
    http, compute = _client(broker)
    async with http:
        with pytest.raises(OperationTimeout):
            await compute.get_result("job-4", timeout=0.03)


@pytest.mark.asyncio
async def test_submit_rejected_by_provider():
    broker = Broker()
    broker.completion_status = 400
    broker.completion = {"error": "bad request"}
    http, compute = _client(broker)
    async with http:
        with pytest.raises(Rejected):
            await compute.submit_job(JobRequest(model_id="m-1", input="2+2?"))


@pytest.mark.asyncio
async def test_unknown_model_not_found():
    http, compute = _client(Broker())
    async with http:
        with pytest.raises(NotFound):
            await compute.submit_job(JobRequest(model_id="m-404", input="2+2?"))


@pytest.mark.asyncio
async def test_chain_discovery_first():
    broker = Broker()
    broker.chain_services = _services_result([("Chain", "http://chain-provider/", "m-1")])
    http, compute = _client(broker, chain=True)
    async with http:
        records = await compute.list_models()
    assert [(r.model, r.url, r.name) for r in records] == [("m-1", "http://chain-provider", "Chain")]
    assert "/api/services/list" not in broker.paths


@pytest.mark.asyncio
async def test_chain_failure_falls_back_to_http():
    broker = Broker()
    http, compute = _client(broker, chain=True)
    async with http:
        records = await compute.list_models()
    assert records[0].url == "http://provider"
    assert "/api/services/list" in broker.paths


@pytest.mark.asyncio
async def test_empty_listing_is_not_found():
    broker = Broker()
    broker.listing = []
    http, compute = _client(broker)
    async with http:
        with pytest.raises(NotFound):
            await compute.list_models()


@pytest.mark.asyncio
async def test_listing_is_cached():
    broker = Broker()
    http, compute = _client(broker)
    async with http:
        await asyncio.gather(
            compute.submit_job(JobRequest(model_id="m-1", input="2+2?")),
            compute.submit_job(JobRequest(model_id="m-1", input="2+2?")),
        )
    assert broker.paths.count("/api/services/list") == 1
