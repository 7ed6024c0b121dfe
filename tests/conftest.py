"""Shared test fixtures for the CodeMesh test suite.

Most tests talk to in-process fake providers through a FakeNetwork
connector instead of spawning processes or opening sockets.
"""

import asyncio
import json

import pytest

from codemesh.core.models import (
    ConnectionInfo,
    ProviderDescriptor,
    ToolDescriptor,
    TransportKind,
)
from codemesh.providers.registry import ProviderRegistry
from codemesh.transports.base import Connection, parse_tool

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo the input text",
    "inputSchema": {
        "type": "object",
        "properties": {"text": {"type": "string", "description": "Text to echo"}},
        "required": ["text"],
    },
}


def echo_handler(tool_name, arguments):
    return {"content": [{"type": "text", "text": json.dumps({"text": arguments.get("text")})}]}


class FakeProvider:
    """Scripted behaviour for one provider id."""

    def __init__(
        self,
        tools=(),
        handler=None,
        connect_error=None,
        call_errors=(),
        call_delay=0.0,
        list_delay=0.0,
    ):
        self.tools = list(tools)
        self.handler = handler or echo_handler
        self.connect_error = connect_error
        self.call_errors = list(call_errors)
        self.call_delay = call_delay
        self.list_delay = list_delay
        self.opened = 0
        self.closed = 0
        self.calls = []

    @property
    def open_connections(self):
        return self.opened - self.closed


class FakeConnection(Connection):
    def __init__(self, descriptor, provider):
        super().__init__(descriptor)
        self.provider = provider
        self._closed = False

    async def connect(self):
        self.provider.opened += 1
        if self.provider.connect_error is not None:
            raise self.provider.connect_error

    async def list_tools(self):
        if self.provider.list_delay:
            await asyncio.sleep(self.provider.list_delay)
        return [parse_tool(self.provider_id, raw) for raw in self.provider.tools]

    async def call_tool(self, tool_name, arguments):
        self.provider.calls.append((tool_name, arguments))
        if self.provider.call_delay:
            await asyncio.sleep(self.provider.call_delay)
        if self.provider.call_errors:
            raise self.provider.call_errors.pop(0)
        return self.provider.handler(tool_name, arguments)

    async def close(self):
        if not self._closed:
            self._closed = True
            self.provider.closed += 1


class FakeNetwork:
    """Connector that routes provider ids to FakeProviders."""

    def __init__(self):
        self.providers = {}

    def add(self, provider_id, **kwargs):
        provider = FakeProvider(**kwargs)
        self.providers[provider_id] = provider
        return provider

    async def connect(self, descriptor):
        connection = FakeConnection(descriptor, self.providers[descriptor.id])
        try:
            await connection.connect()
        except BaseException:
            await connection.close()
            raise
        return connection


def make_descriptor(provider_id, transport=TransportKind.STDIO, **kwargs):
    if transport == TransportKind.STDIO:
        connection = ConnectionInfo(command=("fake-provider", provider_id))
    elif transport == TransportKind.HTTP:
        connection = ConnectionInfo(url=f"http://{provider_id}.example.com/mcp")
    else:
        connection = ConnectionInfo(url=f"ws://{provider_id}.example.com/mcp")
    return ProviderDescriptor(
        id=provider_id,
        display_name=provider_id.title(),
        transport=transport,
        connection=kwargs.pop("connection", connection),
        **kwargs,
    )


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def descriptor_factory():
    return make_descriptor


@pytest.fixture
def echo_network(network):
    network.add("local", tools=[ECHO_TOOL])
    return network


@pytest.fixture
def echo_registry():
    registry = ProviderRegistry()
    registry.register(make_descriptor("local"))
    return registry


@pytest.fixture
def echo_tool():
    return ToolDescriptor(
        provider_id="local",
        tool_name="echo",
        input_schema=ECHO_TOOL["inputSchema"],
        description=ECHO_TOOL["description"],
    )
