"""Audit log client for a data-availability submission service."""

from __future__ import annotations

import base64
import json
import logging
from typing import Optional

import httpx

from ..errors import Rejected
from ..http_utils import decode_json, raise_for_status, request
from ..models import AuditEvent
from ..retry import RetryPolicy
from .base import AuditClient

logger = logging.getLogger(__name__)


def encode_event(event: AuditEvent) -> bytes:
    return json.dumps(event.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


class DAAuditClient(AuditClient):
    """Publish audit events as blobs in a data-availability namespace."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        namespace: str = "inference-audit",
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._client = client
        self.endpoint = endpoint.rstrip("/")
        self.namespace = namespace
        self._retry = retry or RetryPolicy()

    async def publish(self, event: AuditEvent) -> str:
        body = {
            "data": base64.b64encode(encode_event(event)).decode("ascii"),
            "namespace": self.namespace,
        }
        submission_id = await self._retry.execute(
            lambda: self._submit(body),
            description=f"publish {event.type.value} for {event.task_id}",
        )
        logger.debug("published %s for %s as %s", event.type.value, event.task_id, submission_id)
        return submission_id

    async def _submit(self, body: dict) -> str:
        response = await request(self._client, "POST", f"{self.endpoint}/api/da/submit", json=body)
        raise_for_status(response, "audit submit")
        result = decode_json(response, "audit submit")
        submission_id = result.get("submission_id")
        if not submission_id:
            raise Rejected("audit service returned no submission id")
        return submission_id

    async def verify(self, submission_id: str) -> bool:
        response = await request(
            self._client, "GET", f"{self.endpoint}/api/da/verify/{submission_id}"
        )
        raise_for_status(response, f"verify {submission_id}")
        return bool(decode_json(response, "audit verify").get("available"))
