"""
CodeMesh Transports

Connection primitives for every provider transport:

    open_connection(descriptor) -> Connection
    Connection.list_tools() / call_tool(name, args) / close()

Components:
- HttpConnection: request/response providers (MCP streamable HTTP)
- StdioConnection: subprocess providers (newline-delimited JSON-RPC)
- WebSocketConnection: socket providers
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from codemesh.core.models import ProviderDescriptor, TransportKind
from codemesh.transports.base import Connection, JsonRpcConnection
from codemesh.transports.http import HttpConnection
from codemesh.transports.stdio import StdioConnection
from codemesh.transports.websocket import WebSocketConnection

Connector = Callable[[ProviderDescriptor], Awaitable[Connection]]

_CONNECTION_TYPES: dict[TransportKind, type[Connection]] = {
    TransportKind.HTTP: HttpConnection,
    TransportKind.STDIO: StdioConnection,
    TransportKind.WEBSOCKET: WebSocketConnection,
}


async def open_connection(descriptor: ProviderDescriptor) -> Connection:
    """Open a handshaken connection to a provider.

    If the handshake fails or is cancelled, the half-open connection is
    closed before the error propagates.
    """
    connection = _CONNECTION_TYPES[descriptor.transport](descriptor)
    try:
        await connection.connect()
    except BaseException:
        await connection.close()
        raise
    return connection


__all__ = [
    "Connection",
    "Connector",
    "HttpConnection",
    "JsonRpcConnection",
    "StdioConnection",
    "WebSocketConnection",
    "open_connection",
]
