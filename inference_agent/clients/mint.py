"""Provenance token client for an ERC-721 style contract."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from eth_abi import decode, encode
from eth_utils import to_checksum_address

from ..chain import ChainClient, selector
from ..crypto import encrypt_metadata
from ..errors import NotFound, Rejected
from ..models import EncryptedMetadata, MintRequest, TokenStatus
from ..retry import RetryPolicy
from .base import MintClient

logger = logging.getLogger(__name__)

MINT = "mint(address,string,bytes,bytes32,string)"
UPDATE_METADATA = "updateMetadata(uint256,bytes)"
OWNER_OF = "ownerOf(uint256)"
# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def token_id_from_receipt(receipt: Dict[str, Any], contract: str) -> str:
    """Return the id of the token minted in ``receipt``.

    The id is the third indexed topic of the contract's ``Transfer`` log,
    rendered in decimal.
    """
    for log in receipt.get("logs", []):
        if log.get("address", "").lower() != contract.lower():
            continue
        topics = log.get("topics", [])
        if len(topics) == 4 and topics[0].lower() == TRANSFER_TOPIC:
            return str(int(topics[3], 16))
    raise Rejected(f"no Transfer event in receipt {receipt.get('transactionHash')}")


def _sealed(encrypted: EncryptedMetadata) -> bytes:
    return json.dumps(encrypted.to_dict(), sort_keys=True).encode("utf-8")


class ChainMintClient(MintClient):
    """Mint provenance tokens whose metadata is encrypted before it leaves the agent."""

    def __init__(
        self,
        chain: ChainClient,
        contract: str,
        key: bytes,
        key_id: str = "default",
        retry: Optional[RetryPolicy] = None,
        owner: Optional[str] = None,
    ) -> None:
        self._chain = chain
        self.contract = contract
        self._key = key
        self.key_id = key_id
        self._retry = retry or RetryPolicy()
        self._owner = owner

    async def _send(self, data: bytes, description: str) -> Dict[str, Any]:
        # signed once: retries rebroadcast the same transaction, never a new nonce
        return await self._chain.submit_and_confirm(
            self.contract, data, retry=self._retry, description=description
        )

    async def mint(self, request: MintRequest) -> str:
        encrypted = encrypt_metadata(self._key, self.key_id, request.plaintext_meta)
        owner = to_checksum_address(self._owner or self._chain.address)
        result_hash = bytes.fromhex(request.result_hash.removeprefix("0x"))
        data = selector(MINT) + encode(
            ["address", "string", "bytes", "bytes32", "string"],
            [owner, request.name, _sealed(encrypted), result_hash, request.storage_content_id],
        )
        receipt = await self._send(data, f"mint {request.inference_job_id}")
        token_id = token_id_from_receipt(receipt, self.contract)
        logger.info("minted token %s for job %s", token_id, request.inference_job_id)
        return token_id

    async def update_metadata(self, token_id: str, encrypted: EncryptedMetadata) -> None:
        data = selector(UPDATE_METADATA) + encode(
            ["uint256", "bytes"], [int(token_id), _sealed(encrypted)]
        )
        await self._send(data, f"update token {token_id}")

    async def reencrypt(self, token_id: str, metadata: Dict[str, Any]) -> EncryptedMetadata:
        """Encrypt ``metadata`` afresh and store it on ``token_id``."""
        encrypted = encrypt_metadata(self._key, self.key_id, metadata)
        await self.update_metadata(token_id, encrypted)
        return encrypted

    async def get_status(self, token_id: str) -> TokenStatus:
        data = selector(OWNER_OF) + encode(["uint256"], [int(token_id)])
        try:
            raw = await self._chain.call(self.contract, data)
        except Rejected as exc:
            raise NotFound(f"token {token_id} not found: {exc}") from exc
        if not raw:
            raise NotFound(f"token {token_id} not found")
        (owner,) = decode(["address"], raw)
        return TokenStatus(token_id=token_id, owner=to_checksum_address(owner))
