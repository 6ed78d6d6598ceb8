"""Clients for the compute, storage, mint and audit services."""

from .audit import DAAuditClient
from .base import AuditClient, ComputeClient, MintClient, StorageClient
from .compute import BrokerComputeClient
from .mint import ChainMintClient
from .storage import NodeStorageClient

__all__ = [
    "AuditClient",
    "ComputeClient",
    "MintClient",
    "StorageClient",
    "BrokerComputeClient",
    "ChainMintClient",
    "DAAuditClient",
    "NodeStorageClient",
]
