import os
import sys
from pathlib import Path

import pytest

# Ensure package root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from inference_agent.clients.base import (  # noqa: E402
    AuditClient,
    ComputeClient,
    MintClient,
    StorageClient,
)
from inference_agent.models import JobResult, JobStatus  # noqa: E402

TEST_KEY = "0x" + "11" * 32


class FakeCompute(ComputeClient):
    def __init__(self, output="4", tokens=3, submit_error=None, result_error=None):
        self.output = output
        self.tokens = tokens
        self.submit_error = submit_error
        self.result_error = result_error
        self.calls = []

    async def submit_job(self, request):
        self.calls.append(("submit", request.model_id, request.input))
        if self.submit_error is not None:
            raise self.submit_error
        return "job-1"

    async def get_result(self, job_id, timeout=None):
        self.calls.append(("result", job_id, timeout))
        if self.result_error is not None:
            raise self.result_error
        return JobResult(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            output=self.output,
            tokens_used=self.tokens,
        )

    async def list_models(self):
        return []


class FakeStorage(StorageClient):
    def __init__(self, content_id="cid-1", error=None):
        self.content_id = content_id
        self.error = error
        self.uploads = []

    async def upload(self, data, metadata):
        self.uploads.append((data, metadata))
        if self.error is not None:
            raise self.error
        return self.content_id


class FakeMinter(MintClient):
    def __init__(self, token_id="42", error=None):
        self.token_id = token_id
        self.error = error
        self.requests = []

    async def mint(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.token_id


class FakeAudit(AuditClient):
    def __init__(self, submission_id="sub-1", error=None):
        self.submission_id = submission_id
        self.error = error
        self.events = []

    async def publish(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.submission_id

    async def verify(self, submission_id):
        return submission_id == self.submission_id


class FakeReporter:
    def __init__(self, error=None):
        self.error = error
        self.results = []

    async def publish_result(self, result):
        self.results.append(result)
        if self.error is not None:
            raise self.error


@pytest.fixture
def compute():
    return FakeCompute()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def minter():
    return FakeMinter()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("INFERENCE_"):
            monkeypatch.delenv(name, raising=False)
    yield
