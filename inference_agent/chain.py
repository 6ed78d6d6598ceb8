"""Minimal EVM JSON-RPC client used for discovery, anchoring and minting."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, Optional

import httpx
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from .errors import OperationTimeout, Rejected
from .http_utils import decode_json, raise_for_status, request
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

INSUFFICIENT_FUNDS_CODE = -32000
# node replies for a raw transaction already in its pool
_KNOWN_TX_MARKERS = ("already known", "known transaction", "alreadyknown")
RECEIPT_POLL_INTERVAL = 2.0
RECEIPT_TIMEOUT = 120.0


def selector(signature: str) -> bytes:
    """Return the 4-byte function selector for ``signature``."""
    return function_signature_to_4byte_selector(signature)


class ChainClient:
    """Talk to an EVM node over JSON-RPC.

    Transactions are signed locally with ``private_key``; read-only use only
    needs the RPC URL.
    """

    def __init__(
        self,
        rpc_url: str,
        client: httpx.AsyncClient,
        private_key: Optional[str] = None,
        chain_id: int = 16602,
        poll_interval: float = RECEIPT_POLL_INTERVAL,
        receipt_timeout: float = RECEIPT_TIMEOUT,
    ) -> None:
        self.rpc_url = rpc_url
        self._client = client
        self._account = Account.from_key(private_key) if private_key else None
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self._ids = itertools.count(1)

    @property
    def address(self) -> str:
        if self._account is None:
            raise Rejected("no signing key configured")
        return self._account.address

    async def rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await request(self._client, "POST", self.rpc_url, json=payload)
        raise_for_status(response, method)
        body = decode_json(response, method)
        error = body.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", "")
            if code == INSUFFICIENT_FUNDS_CODE:
                raise Rejected(f"{method}: insufficient funds or gas: {message}")
            raise Rejected(f"{method}: rpc error {code}: {message}")
        return body.get("result")

    async def get_chain_id(self) -> int:
        return int(await self.rpc("eth_chainId", []), 16)

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self.rpc(
            "eth_call", [{"to": to, "data": "0x" + data.hex()}, "latest"]
        )
        if not result or result == "0x":
            return b""
        return bytes.fromhex(result[2:])

    async def sign_transaction(self, to: str, data: bytes) -> str:
        """Build and sign a transaction; return it raw and hex encoded.

        The nonce is read once here, so broadcasting the returned value any
        number of times can only ever land one transaction.
        """
        sender = self.address
        tx: Dict[str, Any] = {
            "from": sender,
            "to": to_checksum_address(to),
            "data": "0x" + data.hex(),
            "value": 0,
            "chainId": self.chain_id,
        }
        nonce = await self.rpc("eth_getTransactionCount", [sender, "pending"])
        gas_price = await self.rpc("eth_gasPrice", [])
        gas = await self.rpc(
            "eth_estimateGas", [{"from": sender, "to": tx["to"], "data": tx["data"]}]
        )
        tx.update(nonce=int(nonce, 16), gasPrice=int(gas_price, 16), gas=int(gas, 16))
        del tx["from"]
        signed = self._account.sign_transaction(tx)
        return "0x" + bytes(signed.raw_transaction).hex()

    async def broadcast(self, raw: str) -> str:
        """Send a signed transaction and return its hash.

        A node that already holds ``raw`` counts as success.
        """
        try:
            return await self.rpc("eth_sendRawTransaction", [raw])
        except Rejected as exc:
            if not any(marker in str(exc).lower() for marker in _KNOWN_TX_MARKERS):
                raise
            tx_hash = "0x" + keccak(hexstr=raw).hex()
            logger.info("transaction %s already known to the node", tx_hash)
            return tx_hash

    async def send_transaction(self, to: str, data: bytes) -> str:
        return await self.broadcast(await self.sign_transaction(to, data))

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            receipt = await self.rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(receipt.get("status", "0x1"), 16) == 0:
                    raise Rejected(f"transaction {tx_hash} reverted")
                return receipt
            if time.monotonic() >= deadline:
                raise OperationTimeout(
                    f"no receipt for {tx_hash} after {self.receipt_timeout:.0f}s"
                )
            await asyncio.sleep(self.poll_interval)

    async def submit_and_confirm(
        self,
        to: str,
        data: bytes,
        retry: Optional[RetryPolicy] = None,
        description: str = "transaction",
    ) -> Dict[str, Any]:
        """Sign once, broadcast under ``retry`` and wait once for the receipt."""
        retry = retry or RetryPolicy(max_retries=0)
        raw = await retry.execute(
            lambda: self.sign_transaction(to, data), description=f"sign {description}"
        )
        tx_hash = await retry.execute(
            lambda: self.broadcast(raw), description=f"broadcast {description}"
        )
        logger.info("submitted transaction %s to %s", tx_hash, to)
        return await self.wait_for_receipt(tx_hash)
