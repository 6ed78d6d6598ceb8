"""Helpers that turn httpx outcomes into agent errors."""

from __future__ import annotations

from typing import Any

import httpx

from .errors import AuthenticationError, NotFound, Rejected, ServiceUnreachable


async def send_request(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Send ``request`` and map connection problems to :class:`ServiceUnreachable`."""
    try:
        return await client.send(request)
    except httpx.TimeoutException as exc:
        raise ServiceUnreachable(f"{request.method} {request.url} timed out") from exc
    except httpx.HTTPError as exc:
        raise ServiceUnreachable(f"{request.method} {request.url}: {exc}") from exc


async def request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Build and send a request through :func:`send_request`."""
    return await send_request(client, client.build_request(method, url, **kwargs))


def raise_for_status(response: httpx.Response, what: str) -> None:
    """Raise the agent error matching a non-success ``response``."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:200]
    message = f"{what}: status {status}: {body}"
    if status == 404:
        raise NotFound(message)
    if status in (401, 403):
        raise AuthenticationError(message)
    if status >= 500:
        raise ServiceUnreachable(message)
    raise Rejected(message)


def decode_json(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise Rejected(f"{what}: invalid JSON response") from exc
