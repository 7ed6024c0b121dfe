"""Tests for the discovery service."""

import pytest

from codemesh.core.models import ToolKey
from codemesh.discovery.service import DiscoveryService
from codemesh.exceptions import NoProvidersReachableError, TransportError
from codemesh.providers.registry import ProviderRegistry
from codemesh.transports.base import JsonRpcConnection

from conftest import ECHO_TOOL

SEARCH_TOOL = {"name": "search", "description": "Search", "inputSchema": {"type": "object"}}


class ScriptedConnection(JsonRpcConnection):
    """JSON-RPC connection whose provider answers every method from a fixed script."""

    def __init__(self, descriptor, answers):
        super().__init__(descriptor)
        self.answers = answers

    async def _open(self):
        pass

    async def _send(self, message):
        pass

    async def _exchange(self, message):
        answer = self.answers.get(message["method"], {"result": {}})
        return {"jsonrpc": "2.0", "id": message["id"], **answer}

    async def close(self):
        pass


def _scripted_connector(network, provider_id, answers):
    async def connect(descriptor):
        if descriptor.id != provider_id:
            return await network.connect(descriptor)
        connection = ScriptedConnection(descriptor, answers)
        await connection.connect()
        return connection
    return connect


def _registry(descriptor_factory, *provider_ids, **kwargs):
    registry = ProviderRegistry()
    for provider_id in provider_ids:
        registry.register(descriptor_factory(provider_id, **kwargs))
    return registry


class TestDiscoverAll:
    @pytest.mark.asyncio
    async def test_merges_all_providers(self, network, descriptor_factory):
        network.add("a", tools=[ECHO_TOOL, SEARCH_TOOL])
        network.add("b", tools=[SEARCH_TOOL])
        catalog = await DiscoveryService(network.connect).discover_all(
            _registry(descriptor_factory, "a", "b"),
        )
        assert set(catalog.keys()) == {
            ToolKey("a", "echo"), ToolKey("a", "search"), ToolKey("b", "search"),
        }
        assert catalog.failures == {}
        assert catalog.reachable_providers == ["a", "b"]

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, network, descriptor_factory):
        network.add("good", tools=[ECHO_TOOL])
        network.add("bad", connect_error=TransportError("bad", "connection refused"))
        catalog = await DiscoveryService(network.connect).discover_all(
            _registry(descriptor_factory, "good", "bad"),
        )
        assert list(catalog.keys()) == [ToolKey("good", "echo")]
        failure = catalog.failures["bad"]
        assert failure.error_type == "TransportError"
        assert "connection refused" in failure.message
        assert catalog.reachable_providers == ["good"]

    @pytest.mark.asyncio
    async def test_all_unreachable(self, network, descriptor_factory):
        network.add("a", connect_error=OSError("refused"))
        network.add("b", connect_error=TransportError("b", "eof"))
        with pytest.raises(NoProvidersReachableError) as exc_info:
            await DiscoveryService(network.connect).discover_all(_registry(descriptor_factory, "a", "b"))
        assert {f.provider_id for f in exc_info.value.failures} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_empty_registry(self, network):
        with pytest.raises(NoProvidersReachableError):
            await DiscoveryService(network.connect).discover_all(ProviderRegistry())

    @pytest.mark.asyncio
    async def test_provider_with_no_tools_is_reachable(self, network, descriptor_factory):
        network.add("empty")
        network.add("full", tools=[ECHO_TOOL])
        catalog = await DiscoveryService(network.connect).discover_all(
            _registry(descriptor_factory, "empty", "full"),
        )
        assert catalog.reachable_providers == ["empty", "full"]
        assert catalog.for_provider("empty") == []

    @pytest.mark.asyncio
    async def test_connections_closed(self, network, descriptor_factory):
        a = network.add("a", tools=[ECHO_TOOL])
        b = network.add("b", connect_error=OSError("refused"))
        await DiscoveryService(network.connect).discover_all(_registry(descriptor_factory, "a", "b"))
        assert a.opened == 1 and a.open_connections == 0
        assert b.open_connections == 0


class TestDiscoverProvider:
    @pytest.mark.asyncio
    async def test_timeout_recorded(self, network, descriptor_factory):
        network.add("slow", tools=[ECHO_TOOL], list_delay=1.0)
        descriptor = descriptor_factory("slow", timeout_ms=50)
        listing = await DiscoveryService(network.connect).discover_provider(descriptor)
        assert not listing.ok
        assert listing.failure.error_type == "TimeoutError"
        assert "50ms" in listing.failure.message
        assert network.providers["slow"].open_connections == 0

    @pytest.mark.asyncio
    async def test_duplicate_tool_names_keep_first(self, network, descriptor_factory):
        second = {**ECHO_TOOL, "description": "Second echo"}
        network.add("dup", tools=[ECHO_TOOL, second])
        listing = await DiscoveryService(network.connect).discover_provider(descriptor_factory("dup"))
        assert listing.ok
        assert len(listing.tools) == 1
        assert listing.tools[0].description == "Echo the input text"

    @pytest.mark.asyncio
    async def test_malformed_tool_entry_fails_provider(self, network, descriptor_factory):
        network.add("broken", tools=[{"description": "no name"}])
        listing = await DiscoveryService(network.connect).discover_provider(descriptor_factory("broken"))
        assert not listing.ok
        assert listing.failure.error_type == "TransportError"

    @pytest.mark.asyncio
    async def test_schemas_normalized(self, network, descriptor_factory):
        network.add("p", tools=[{"name": "bare"}])
        listing = await DiscoveryService(network.connect).discover_provider(descriptor_factory("p"))
        tool = listing.tools[0]
        assert tool.input_schema == {"type": "object", "properties": {}}
        assert tool.output_schema is None
        assert tool.description == ""


class TestMalformedProviders:
    @pytest.mark.parametrize("answer", [
        {"result": {"tools": None}},
        {"result": {"tools": {"name": "search"}}},
        {"result": {"tools": [], "nextCursor": 5}},
        {"result": ["search"]},
        {"error": {"code": "oops", "message": "bad"}},
        {"error": {"code": None, "message": "bad"}},
    ])
    @pytest.mark.asyncio
    async def test_recorded_as_failure(self, network, descriptor_factory, answer):
        network.add("good", tools=[ECHO_TOOL])
        connector = _scripted_connector(network, "broken", {"tools/list": answer})
        catalog = await DiscoveryService(connector).discover_all(
            _registry(descriptor_factory, "good", "broken"),
        )
        assert catalog.keys() == [ToolKey("good", "echo")]
        assert catalog.failures["broken"].error_type == "TransportError"

    @pytest.mark.asyncio
    async def test_protocol_error_recorded(self, network, descriptor_factory):
        network.add("good", tools=[ECHO_TOOL])
        answer = {"error": {"code": -32601, "message": "Method not found"}}
        connector = _scripted_connector(network, "broken", {"tools/list": answer})
        catalog = await DiscoveryService(connector).discover_all(
            _registry(descriptor_factory, "good", "broken"),
        )
        assert catalog.failures["broken"].error_type == "ProtocolError"
        assert "Method not found" in catalog.failures["broken"].message


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_repeated_discovery_yields_same_keys(self, network, descriptor_factory):
        network.add("b", tools=[SEARCH_TOOL, ECHO_TOOL])
        network.add("a", tools=[ECHO_TOOL])
        registry = _registry(descriptor_factory, "b", "a")
        service = DiscoveryService(network.connect)

        first = await service.discover_all(registry)
        second = await service.discover_all(registry)

        assert first.keys() == second.keys()
        assert first.reachable_providers == second.reachable_providers
        assert first is not second
