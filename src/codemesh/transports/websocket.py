"""WebSocket transport: JSON-RPC text frames over a persistent socket."""

from __future__ import annotations

import json
import logging
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from codemesh.core.models import ProviderDescriptor
from codemesh.exceptions import TransportError
from codemesh.transports.base import JsonRpcConnection, match_response

logger = logging.getLogger(__name__)

SUBPROTOCOL = "mcp"


class WebSocketConnection(JsonRpcConnection):
    """Connection to a socket provider."""

    def __init__(self, descriptor: ProviderDescriptor):
        super().__init__(descriptor)
        self._ws: ClientConnection | None = None

    async def _open(self) -> None:
        connection = self._descriptor.connection
        try:
            self._ws = await connect(
                connection.url or "",
                additional_headers=connection.headers or None,
                subprotocols=[SUBPROTOCOL],
                open_timeout=self._descriptor.timeout_seconds,
            )
        except (WebSocketException, OSError) as e:
            raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e

    async def _send(self, message: dict[str, Any]) -> None:
        ws = self._require_socket()
        try:
            await ws.send(json.dumps(message))
        except WebSocketException as e:
            raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e

    async def _exchange(self, message: dict[str, Any]) -> dict[str, Any]:
        await self._send(message)
        ws = self._require_socket()
        while True:
            try:
                frame = await ws.recv()
            except WebSocketException as e:
                raise TransportError(self.provider_id, f"{type(e).__name__}: {e}") from e
            try:
                decoded = json.loads(frame)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON frame", extra={"provider_id": self.provider_id})
                continue
            if match_response(decoded, message["id"]):
                return decoded

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    def _require_socket(self) -> ClientConnection:
        if self._ws is None:
            raise TransportError(self.provider_id, "connection is not open")
        return self._ws
