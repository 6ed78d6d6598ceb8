import httpx
import pytest
from eth_account import Account

from inference_agent.auth import SessionAuthenticator, TOKEN_PREFIX, verify_credential
from inference_agent.errors import AuthenticationError

from conftest import TEST_KEY


class Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        self.now += 1
        return self.now


def test_credential_is_signed_by_agent_key():
    auth = SessionAuthenticator(TEST_KEY, clock=Clock())
    token = auth.credential()
    assert token.startswith(TOKEN_PREFIX)
    assert verify_credential(token) == Account.from_key(TEST_KEY).address


def test_fresh_timestamp_gives_fresh_credential():
    auth = SessionAuthenticator(TEST_KEY, clock=Clock())
    assert auth.credential() != auth.credential()


def test_authenticate_sets_bearer_header():
    auth = SessionAuthenticator(TEST_KEY)
    request = auth.authenticate(httpx.Request("GET", "http://provider/x"))
    assert request.headers["Authorization"].startswith("Bearer " + TOKEN_PREFIX)


def test_tampered_credential_rejected():
    with pytest.raises(AuthenticationError):
        verify_credential("not-a-token")


def _client(statuses, seen):
    def handler(request):
        seen.append(request.headers["Authorization"])
        return httpx.Response(statuses[min(len(seen), len(statuses)) - 1], json={})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_retries_once_after_unauthorized():
    seen = []
    auth = SessionAuthenticator(TEST_KEY, clock=Clock())
    async with _client([401, 200], seen) as client:
        response = await auth.execute_with_auth_retry(client, "POST", "http://p/v1", json={})
    assert response.status_code == 200
    assert len(seen) == 2
    assert seen[0] != seen[1]


@pytest.mark.asyncio
async def test_second_unauthorized_is_terminal():
    seen = []
    auth = SessionAuthenticator(TEST_KEY, clock=Clock())
    async with _client([401, 401, 200], seen) as client:
        with pytest.raises(AuthenticationError):
            await auth.execute_with_auth_retry(client, "POST", "http://p/v1")
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_other_failures_are_not_retried():
    seen = []
    auth = SessionAuthenticator(TEST_KEY)
    async with _client([500], seen) as client:
        response = await auth.execute_with_auth_retry(client, "GET", "http://p/v1")
    assert response.status_code == 500
    assert len(seen) == 1


def test_credentials_differ_within_one_millisecond():
    auth = SessionAuthenticator(TEST_KEY, clock=lambda: 1_700_000_000.0)
    first, second = auth.credential(), auth.credential()
    assert first != second
    assert verify_credential(first) == verify_credential(second) == auth.address


@pytest.mark.asyncio
async def test_resent_request_carries_new_credential_at_same_instant():
    seen = []
    auth = SessionAuthenticator(TEST_KEY, clock=lambda: 1_700_000_000.0)
    async with _client([401, 200], seen) as client:
        await auth.execute_with_auth_retry(client, "POST", "http://p/v1", json={})
    assert seen[0] != seen[1]
