"""Content-addressed storage client with optional on-chain anchoring."""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import List, Optional

import httpx

from ..chain import ChainClient, selector
from ..errors import IntegrityError, NotFound
from ..http_utils import decode_json, raise_for_status, request
from ..models import StorageMetadata
from ..retry import RetryPolicy
from .base import StorageClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4 * 1024 * 1024
SUBMIT_ROOT = "submit(bytes32)"


def content_id_for(data: bytes) -> str:
    """Return the content address of ``data``."""
    return hashlib.sha256(data).hexdigest()


class NodeStorageClient(StorageClient):
    """Store results on a storage node and anchor their root on chain.

    Either side is optional: without ``endpoint`` content is only anchored,
    without ``chain``/``flow_contract`` it is only pushed to the node. Both
    steps are keyed by the content id. An anchor is signed once and only its
    broadcast is retried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: Optional[str] = None,
        chain: Optional[ChainClient] = None,
        flow_contract: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._client = client
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self._chain = chain
        self.flow_contract = flow_contract
        self._retry = retry or RetryPolicy()
        self.chunk_size = chunk_size

    @property
    def anchoring(self) -> bool:
        return self._chain is not None and bool(self.flow_contract)

    async def upload(self, data: bytes, metadata: StorageMetadata) -> str:
        content_id = content_id_for(data)
        if self.endpoint is None and not self.anchoring:
            raise NotFound("no storage node or flow contract configured")

        if self.endpoint is not None:
            await self._retry.execute(
                lambda: self._push(content_id, data, metadata),
                description=f"upload {content_id}",
            )
        if self.anchoring:
            root = bytes.fromhex(content_id)
            await self._chain.submit_and_confirm(
                self.flow_contract,
                selector(SUBMIT_ROOT) + root,
                retry=self._retry,
                description=f"anchor {content_id}",
            )
        logger.info("stored %d bytes as %s", len(data), content_id)
        return content_id

    async def _push(self, content_id: str, data: bytes, metadata: StorageMetadata) -> None:
        chunks = [data[i:i + self.chunk_size] for i in range(0, len(data), self.chunk_size)]
        chunks = chunks or [b""]
        for index, chunk in enumerate(chunks):
            body = {
                "content_id": content_id,
                "data": base64.b64encode(chunk).decode("ascii"),
                "name": metadata.name,
                "content_type": metadata.content_type,
                "tags": metadata.tags,
                "chunk_index": index,
                "total_chunks": len(chunks),
            }
            response = await request(
                self._client, "POST", f"{self.endpoint}/api/storage", json=body
            )
            if response.status_code not in (200, 201):
                raise_for_status(response, f"upload chunk {index} of {content_id}")

    async def download(self, content_id: str) -> bytes:
        if self.endpoint is None:
            raise NotFound("no storage node configured")
        response = await request(self._client, "GET", f"{self.endpoint}/api/storage/{content_id}")
        raise_for_status(response, f"download {content_id}")
        data = response.content
        if content_id_for(data) != content_id:
            raise IntegrityError(f"content {content_id} failed digest check")
        return data

    async def list(self, prefix: str = "") -> List[StorageMetadata]:
        if self.endpoint is None:
            raise NotFound("no storage node configured")
        response = await request(
            self._client, "GET", f"{self.endpoint}/api/storage", params={"prefix": prefix}
        )
        raise_for_status(response, "list storage")
        body = decode_json(response, "list storage") or {}
        return [
            StorageMetadata(
                content_id=item.get("content_id", ""),
                name=item.get("name", ""),
                size=int(item.get("size", 0)),
                content_type=item.get("content_type", "application/octet-stream"),
                created_at=item.get("created_at"),
                tags=item.get("tags") or {},
            )
            for item in body.get("items", [])
        ]
