"""
CodeMesh Transport Base

Abstract connection primitive shared by every transport. A Connection is
opened for exactly one discovery pass or one tool call, then closed; the
pipeline never keeps a live connection across calls.

All bundled transports speak MCP over JSON-RPC 2.0. JsonRpcConnection
implements the protocol (handshake, paginated tool listing, tool calls) on
top of three wire hooks that each transport provides:

    _open()                 establish the underlying channel
    _exchange(message)      send a request, return the matching response
    _send(message)          send a notification (no response expected)
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any

from codemesh.core.models import ProviderDescriptor, ToolDescriptor
from codemesh.exceptions import ProtocolError, TransportError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "codemesh", "version": "0.1.0"}

# Guards against a provider that keeps returning a cursor
MAX_LIST_PAGES = 100


class Connection(ABC):
    """One short-lived connection to a provider."""

    def __init__(self, descriptor: ProviderDescriptor):
        self._descriptor = descriptor

    @property
    def descriptor(self) -> ProviderDescriptor:
        return self._descriptor

    @property
    def provider_id(self) -> str:
        return self._descriptor.id

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel and complete any handshake."""
        ...

    @abstractmethod
    async def list_tools(self) -> list[ToolDescriptor]:
        """Enumerate the provider's tools."""
        ...

    @abstractmethod
    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Invoke a tool and return the provider's raw result payload."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Must be idempotent."""
        ...


class JsonRpcConnection(Connection):
    """MCP JSON-RPC 2.0 client logic over an abstract wire."""

    def __init__(self, descriptor: ProviderDescriptor):
        super().__init__(descriptor)
        self._ids = itertools.count(1)
        self.server_info: dict[str, Any] = {}

    # ─── Wire hooks ──────────────────────────────────────────

    @abstractmethod
    async def _open(self) -> None:
        ...

    @abstractmethod
    async def _exchange(self, message: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def _send(self, message: dict[str, Any]) -> None:
        ...

    # ─── Protocol ────────────────────────────────────────────

    async def connect(self) -> None:
        await self._open()
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self.notify("notifications/initialized")

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a JSON-RPC request and return its ``result``."""
        request_id = next(self._ids)
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        response = await self._exchange(message)
        return self._unwrap(response, request_id)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def list_tools(self) -> list[ToolDescriptor]:
        tools: list[ToolDescriptor] = []
        cursor: str | None = None
        for _ in range(MAX_LIST_PAGES):
            result = await self.request("tools/list", {"cursor": cursor} if cursor else {})
            if not isinstance(result, dict):
                raise TransportError(self.provider_id, "tools/list returned a non-object result")
            page = result.get("tools", [])
            if not isinstance(page, list):
                raise TransportError(self.provider_id, f"tools/list returned a non-list 'tools': {page!r}")
            for raw in page:
                tools.append(parse_tool(self.provider_id, raw))
            cursor = result.get("nextCursor")
            if cursor is not None and not isinstance(cursor, str):
                raise TransportError(self.provider_id, f"tools/list returned a non-string cursor: {cursor!r}")
            if not cursor:
                return tools
        raise TransportError(self.provider_id, f"tools/list did not terminate after {MAX_LIST_PAGES} pages")

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        return await self.request("tools/call", {"name": tool_name, "arguments": arguments})

    def _unwrap(self, response: dict[str, Any], request_id: int) -> Any:
        if response.get("id") != request_id:
            raise TransportError(
                self.provider_id,
                f"response id {response.get('id')!r} does not match request id {request_id}",
            )
        error = response.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise TransportError(self.provider_id, f"malformed error object: {error!r}")
            code = error.get("code", -32603)
            if isinstance(code, bool) or not isinstance(code, int):
                raise TransportError(self.provider_id, f"malformed error code: {code!r}")
            raise ProtocolError(
                self.provider_id,
                code,
                str(error.get("message", "RPC error")),
                error.get("data"),
            )
        if "result" not in response:
            raise TransportError(self.provider_id, "response has neither result nor error")
        return response["result"]


def parse_tool(provider_id: str, raw: Any) -> ToolDescriptor:
    """Normalize one ``tools/list`` entry into a ToolDescriptor."""
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"]:
        raise TransportError(provider_id, f"malformed tool entry: {raw!r}")

    input_schema = raw.get("inputSchema")
    if not isinstance(input_schema, dict):
        input_schema = {"type": "object", "properties": {}}
    output_schema = raw.get("outputSchema")
    if not isinstance(output_schema, dict):
        output_schema = None

    return ToolDescriptor(
        provider_id=provider_id,
        tool_name=raw["name"],
        input_schema=input_schema,
        output_schema=output_schema,
        description=str(raw.get("description") or ""),
    )


def match_response(message: Any, request_id: Any) -> bool:
    """True if a decoded wire message is the response to ``request_id``."""
    return (
        isinstance(message, dict)
        and message.get("id") == request_id
        and ("result" in message or "error" in message)
    )
