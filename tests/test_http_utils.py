import asyncio

import httpx
import pytest

from inference_agent.errors import (
    AuthenticationError,
    NotFound,
    Rejected,
    ServiceUnreachable,
)
from inference_agent.http_utils import decode_json, raise_for_status, request


@pytest.mark.parametrize(
    "status, error",
    [(404, NotFound), (401, AuthenticationError), (403, AuthenticationError),
     (500, ServiceUnreachable), (503, ServiceUnreachable), (400, Rejected), (422, Rejected)],
)
def test_raise_for_status_maps_codes(status, error):
    with pytest.raises(error, match=f"status {status}"):
        raise_for_status(httpx.Response(status, text="nope"), "call")


def test_success_passes():
    raise_for_status(httpx.Response(204), "call")


def test_connection_errors_are_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await request(client, "GET", "http://svc/x")

    with pytest.raises(ServiceUnreachable, match="refused"):
        asyncio.run(run())


def test_timeouts_are_unreachable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await request(client, "GET", "http://svc/x")

    with pytest.raises(ServiceUnreachable, match="timed out"):
        asyncio.run(run())


def test_decode_json_rejects_garbage():
    assert decode_json(httpx.Response(200, json={"a": 1}), "call") == {"a": 1}
    with pytest.raises(Rejected):
        decode_json(httpx.Response(200, text="<html>"), "call")
