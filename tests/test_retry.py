import asyncio

import pytest

from inference_agent.errors import Rejected, RetryExhausted, ServiceUnreachable
from inference_agent.retry import RetryPolicy


@pytest.fixture
def sleeps(monkeypatch):
    recorded: list[float] = []

    async def fake_sleep(s):
        recorded.append(s)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ServiceUnreachable("down")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.asyncio
async def test_succeeds_after_failures(sleeps):
    op = Flaky(2)
    result = await RetryPolicy(max_retries=3).execute(op)
    assert result == "ok"
    assert op.calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_wraps_last_error(sleeps):
    op = Flaky(4)
    with pytest.raises(RetryExhausted) as info:
        await RetryPolicy(max_retries=3).execute(op, description="submit")
    assert op.calls == 4
    assert info.value.attempts == 4
    assert info.value.last_error is op.error
    assert info.value.kind == "service-unreachable"
    assert "all 4 attempts failed" in str(info.value)
    assert sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_generic_errors_are_retried(sleeps):
    op = Flaky(1, error=RuntimeError("flaky"))
    assert await RetryPolicy(max_retries=1, base_delay=0.5).execute(op) == "ok"
    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_rejected_is_not_retried(sleeps):
    op = Flaky(5, error=Rejected("reverted"))
    with pytest.raises(Rejected):
        await RetryPolicy().execute(op)
    assert op.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_cancellation_during_backoff():
    op = Flaky(10)
    policy = RetryPolicy(max_retries=3, base_delay=10)
    task = asyncio.create_task(policy.execute(op))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert op.calls == 1
