"""Signed session credentials for compute provider requests."""

from __future__ import annotations

import base64
import json
import logging
import time
import uuid
from typing import Any, Callable

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import AuthenticationError
from .http_utils import send_request

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "app-sk-"
DEFAULT_TOKEN_TTL = 24 * 3600.0


class SessionAuthenticator:
    """Attach a bearer credential signed with the agent's key.

    The credential is a base64url JSON document holding the signer address,
    an issue timestamp, an expiry, a random nonce and an EIP-191 signature
    over the other fields. Every call to :meth:`credential` signs a new one.
    """

    def __init__(
        self,
        private_key: str,
        token_ttl: float = DEFAULT_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = Account.from_key(private_key)
        self.token_ttl = token_ttl
        self._clock = clock

    @property
    def address(self) -> str:
        return self._account.address

    def credential(self) -> str:
        issued = int(self._clock() * 1000)
        claims: dict[str, Any] = {
            "address": self._account.address,
            "timestamp": issued,
            "expires_at": issued + int(self.token_ttl * 1000),
            "nonce": uuid.uuid4().hex,
        }
        message = json.dumps(claims, sort_keys=True, separators=(",", ":"))
        signed = self._account.sign_message(encode_defunct(text=message))
        claims["signature"] = "0x" + bytes(signed.signature).hex()
        token = base64.urlsafe_b64encode(
            json.dumps(claims, sort_keys=True, separators=(",", ":")).encode()
        ).decode()
        return TOKEN_PREFIX + token

    def authenticate(self, request: httpx.Request) -> httpx.Request:
        request.headers["Authorization"] = f"Bearer {self.credential()}"
        return request

    async def execute_with_auth_retry(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated request, re-signing once after a 401."""
        response = await send_request(
            client, self.authenticate(client.build_request(method, url, **kwargs))
        )
        if response.status_code != 401:
            return response

        logger.info("provider rejected session credential, re-signing once: %s", url)
        response = await send_request(
            client, self.authenticate(client.build_request(method, url, **kwargs))
        )
        if response.status_code == 401:
            raise AuthenticationError(f"{method} {url}: credential rejected twice")
        return response


def verify_credential(token: str) -> str:
    """Return the address that signed ``token``; used by providers and tests."""
    if not token.startswith(TOKEN_PREFIX):
        raise AuthenticationError("not a session credential")
    try:
        claims = json.loads(base64.urlsafe_b64decode(token[len(TOKEN_PREFIX):]))
        signature = claims.pop("signature")
    except (ValueError, KeyError) as exc:
        raise AuthenticationError("malformed session credential") from exc
    message = json.dumps(claims, sort_keys=True, separators=(",", ":"))
    signer = Account.recover_message(encode_defunct(text=message), signature=signature)
    if signer != claims.get("address"):
        raise AuthenticationError("session credential signature mismatch")
    return signer
