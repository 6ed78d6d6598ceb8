"""Interfaces of the four external service roles driven by the pipeline."""

from __future__ import annotations

from typing import List, Optional

from ..models import (
    AuditEvent,
    EncryptedMetadata,
    JobRequest,
    JobResult,
    MintRequest,
    ProviderRecord,
    StorageMetadata,
    TokenStatus,
)


class ComputeClient:
    """Abstract compute provider client."""

    async def submit_job(self, request: JobRequest) -> str:
        """Submit ``request`` and return the provider's job id."""
        raise NotImplementedError

    async def get_result(self, job_id: str, timeout: Optional[float] = None) -> JobResult:
        """Wait for ``job_id`` to finish, polling for at most ``timeout`` seconds."""
        raise NotImplementedError

    async def list_models(self) -> List[ProviderRecord]:
        raise NotImplementedError


class StorageClient:
    """Abstract content-addressed storage client."""

    async def upload(self, data: bytes, metadata: StorageMetadata) -> str:
        """Store ``data`` and return its content id."""
        raise NotImplementedError

    async def download(self, content_id: str) -> bytes:
        raise NotImplementedError

    async def list(self, prefix: str = "") -> List[StorageMetadata]:
        raise NotImplementedError


class MintClient:
    """Abstract provenance token client."""

    async def mint(self, request: MintRequest) -> str:
        """Mint a token for ``request`` and return its id."""
        raise NotImplementedError

    async def update_metadata(self, token_id: str, encrypted: EncryptedMetadata) -> None:
        raise NotImplementedError

    async def get_status(self, token_id: str) -> TokenStatus:
        raise NotImplementedError


class AuditClient:
    """Abstract audit log client."""

    async def publish(self, event: AuditEvent) -> str:
        """Append ``event`` to the audit log and return its submission id."""
        raise NotImplementedError

    async def verify(self, submission_id: str) -> bool:
        raise NotImplementedError
