"""Tests for the call proxy: adapter building, validation, retries, decoding."""

import pytest

from conftest import ECHO_TOOL, make_descriptor
from codemesh.core.models import ToolCatalog, ToolDescriptor, ToolKey
from codemesh.exceptions import (
    InvalidArgumentError,
    ProtocolError,
    ToolInvocationError,
    TransportError,
    UnknownToolError,
)
from codemesh.providers.registry import ProviderRegistry
from codemesh.proxy.builder import AdapterSpec, CallProxyBuilder, decode_tool_result, validate_arguments

ECHO_KEY = ToolKey("local", "echo")


def _catalog(provider_id="local", tools=(ECHO_TOOL,)):
    return ToolCatalog(
        tools=[
            ToolDescriptor(
                provider_id=provider_id,
                tool_name=raw["name"],
                input_schema=raw.get("inputSchema", {"type": "object"}),
                description=raw.get("description", ""),
            )
            for raw in tools
        ],
        providers=[provider_id],
    )


def _registry(**kwargs):
    registry = ProviderRegistry()
    registry.register(make_descriptor("local", **kwargs))
    return registry


def _echo_adapter(network, **descriptor_kwargs):
    adapters = CallProxyBuilder(_registry(**descriptor_kwargs), network.connect).build([ECHO_KEY], _catalog())
    return adapters["echo_local"]


class TestBuild:
    def test_only_selected_tools(self, echo_network):
        tools = [ECHO_TOOL, {"name": "reverse", "inputSchema": {"type": "object"}}]
        adapters = CallProxyBuilder(_registry(), echo_network.connect).build([ECHO_KEY], _catalog(tools=tools))

        assert list(adapters) == ["echo_local"]
        assert adapters["echo_local"].key == ECHO_KEY
        assert adapters["echo_local"].provider.id == "local"

    def test_empty_selection(self, echo_network):
        assert CallProxyBuilder(_registry(), echo_network.connect).build([], _catalog()) == {}

    def test_unknown_key(self, echo_network):
        builder = CallProxyBuilder(_registry(), echo_network.connect)
        with pytest.raises(UnknownToolError, match="local/missing"):
            builder.build([ToolKey("local", "missing")], _catalog())

    def test_building_opens_no_connections(self, echo_network):
        CallProxyBuilder(_registry(), echo_network.connect).build([ECHO_KEY], _catalog())
        assert echo_network.providers["local"].opened == 0


class TestValidation:
    def _spec(self, schema):
        return AdapterSpec("echo_local", "local", "echo", schema)

    def test_valid_arguments_pass_through(self):
        assert validate_arguments(self._spec(ECHO_TOOL["inputSchema"]), {"text": "hi"}) == {"text": "hi"}

    def test_none_is_empty_object(self):
        assert validate_arguments(self._spec({"type": "object"}), None) == {}

    def test_non_object_rejected(self):
        with pytest.raises(InvalidArgumentError, match="got list"):
            validate_arguments(self._spec({"type": "object"}), ["hi"])

    def test_errors_are_described(self):
        with pytest.raises(InvalidArgumentError) as exc_info:
            validate_arguments(self._spec(ECHO_TOOL["inputSchema"]), {"text": 5})
        assert "text: 5 is not of type 'string'" in str(exc_info.value)
        assert exc_info.value.function_name == "echo_local"

    def test_missing_required_reported_at_root(self):
        with pytest.raises(InvalidArgumentError, match="<root>: 'text' is a required property"):
            validate_arguments(self._spec(ECHO_TOOL["inputSchema"]), {})

    def test_invalid_provider_schema_skips_validation(self):
        spec = self._spec({"type": "object", "properties": {"n": {"type": "not-a-type"}}})
        assert validate_arguments(spec, {"n": 1}) == {"n": 1}


class TestInvoke:
    @pytest.mark.asyncio
    async def test_round_trip(self, echo_network):
        adapter = _echo_adapter(echo_network)
        result = await adapter({"text": "hello"})

        provider = echo_network.providers["local"]
        assert result == {"text": "hello"}
        assert provider.calls == [("echo", {"text": "hello"})]
        assert provider.opened == provider.closed == 1

    @pytest.mark.asyncio
    async def test_connection_per_call(self, echo_network):
        adapter = _echo_adapter(echo_network)
        await adapter({"text": "a"})
        await adapter({"text": "b"})
        provider = echo_network.providers["local"]
        assert provider.opened == 2
        assert provider.open_connections == 0

    @pytest.mark.asyncio
    async def test_invalid_arguments_never_connect(self, echo_network):
        adapter = _echo_adapter(echo_network)
        with pytest.raises(InvalidArgumentError):
            await adapter({"text": 42})
        assert echo_network.providers["local"].opened == 0

    @pytest.mark.asyncio
    async def test_retries_until_success(self, network):
        provider = network.add(
            "local",
            tools=[ECHO_TOOL],
            call_errors=[TransportError("local", "reset"), OSError("broken pipe")],
        )
        adapter = _echo_adapter(network, retry_count=2)

        assert await adapter({"text": "third time"}) == {"text": "third time"}
        assert len(provider.calls) == 3
        assert provider.open_connections == 0

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, network):
        provider = network.add(
            "local",
            tools=[ECHO_TOOL],
            call_errors=[TransportError("local", "reset")] * 3,
        )
        adapter = _echo_adapter(network, retry_count=1)

        with pytest.raises(ToolInvocationError) as exc_info:
            await adapter({"text": "x"})

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, TransportError)
        assert len(provider.calls) == 2
        assert provider.open_connections == 0

    @pytest.mark.asyncio
    async def test_connect_failure_is_retried(self, network):
        provider = network.add("local", tools=[ECHO_TOOL], connect_error=TransportError("local", "refused"))
        adapter = _echo_adapter(network, retry_count=1)

        with pytest.raises(ToolInvocationError, match="refused"):
            await adapter({"text": "x"})
        assert provider.opened == 2
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_protocol_error_not_retried(self, network):
        provider = network.add(
            "local",
            tools=[ECHO_TOOL],
            call_errors=[ProtocolError("local", -32602, "bad params")],
        )
        adapter = _echo_adapter(network, retry_count=3)

        with pytest.raises(ToolInvocationError) as exc_info:
            await adapter({"text": "x"})
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, ProtocolError)
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_retries_and_closes(self, network):
        provider = network.add("local", tools=[ECHO_TOOL], call_delay=5.0)
        adapter = _echo_adapter(network, retry_count=1, timeout_ms=50)

        with pytest.raises(ToolInvocationError, match="timed out after 50ms"):
            await adapter({"text": "x"})
        assert provider.opened == 2
        assert provider.open_connections == 0

    @pytest.mark.asyncio
    async def test_tool_error_is_returned(self, network):
        def failing(tool_name, arguments):
            return {"isError": True, "content": [{"type": "text", "text": "quota exceeded"}]}

        network.add("local", tools=[ECHO_TOOL], handler=failing)
        adapter = _echo_adapter(network)
        assert await adapter({"text": "x"}) == {"isError": True, "content": "quota exceeded"}


class TestDecode:
    def test_structured_content_wins(self):
        result = {"structuredContent": {"a": 1}, "content": [{"type": "text", "text": "ignored"}]}
        assert decode_tool_result(result) == {"a": 1}

    def test_json_text_block(self):
        assert decode_tool_result({"content": [{"type": "text", "text": "[1, 2]"}]}) == [1, 2]

    def test_plain_text_block(self):
        assert decode_tool_result({"content": [{"type": "text", "text": "not json"}]}) == "not json"

    def test_multiple_blocks(self):
        image = {"type": "image", "data": "...", "mimeType": "image/png"}
        result = {"content": [{"type": "text", "text": "{\"ok\": true}"}, image]}
        assert decode_tool_result(result) == [{"ok": True}, image]

    def test_non_dict_passthrough(self):
        assert decode_tool_result("raw") == "raw"
        assert decode_tool_result({"other": 1}) == {"other": 1}
