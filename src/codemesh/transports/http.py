"""HTTP transport: MCP streamable HTTP over httpx.

Each JSON-RPC message is POSTed to the provider URL. Responses arrive
either as a JSON body or as a ``text/event-stream`` whose ``data:`` events
carry JSON-RPC messages. The ``Mcp-Session-Id`` header assigned during
``initialize`` is echoed on every later request.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from codemesh.core.models import ProviderDescriptor
from codemesh.exceptions import TransportError
from codemesh.transports.base import JsonRpcConnection, match_response

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HttpConnection(JsonRpcConnection):
    """Connection to a request/response provider."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(descriptor)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None

    async def _open(self) -> None:
        self._client = httpx.AsyncClient(
            headers={
                "Accept": "application/json, text/event-stream",
                **self._descriptor.connection.headers,
            },
            timeout=self._descriptor.timeout_seconds,
            transport=self._transport,
        )

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise TransportError(self.provider_id, "connection is not open")
        headers = {SESSION_HEADER: self._session_id} if self._session_id else {}
        try:
            response = await self._client.post(
                self._descriptor.connection.url or "",
                json=message,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                self.provider_id,
                f"HTTP {response.status_code} for {message['method']!r}",
                details={"status_code": response.status_code, "body": response.text[:2000]},
            )
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return response

    async def _send(self, message: dict[str, Any]) -> None:
        await self._post(message)

    async def _exchange(self, message: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(message)
        content_type = response.headers.get("content-type", "")

        if content_type.startswith("text/event-stream"):
            candidates = list(_parse_sse(response.text))
        else:
            try:
                body = response.json()
            except ValueError as e:
                raise TransportError(self.provider_id, f"response is not JSON: {e}") from e
            candidates = body if isinstance(body, list) else [body]

        for candidate in candidates:
            if match_response(candidate, message["id"]):
                return candidate
        raise TransportError(self.provider_id, f"no response to {message['method']!r} in HTTP reply")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


def _parse_sse(text: str):
    """Yield decoded JSON payloads from a server-sent event stream body."""
    data_lines: list[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line and data_lines:
            try:
                yield json.loads("\n".join(data_lines))
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable SSE event")
            data_lines = []
