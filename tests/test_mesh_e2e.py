"""End-to-end tests: discovery, signatures, sandboxed runs and augmentation through CodeMesh."""

import json
import sys
from pathlib import Path

import pytest

from conftest import ECHO_TOOL, make_descriptor
from codemesh import CodeMesh, format_execution_result
from codemesh.augmentation.store import AugmentationStore
from codemesh.core.models import ExecutionStatus, ToolKey
from codemesh.exceptions import ConfigError, InvalidRequestError, TransportError, UnknownToolError
from codemesh.providers.registry import ProviderRegistry

ECHO_SERVER = Path(__file__).parent / "fixtures" / "echo_server.py"


def _mesh(network, *provider_ids, augmentations=None):
    registry = ProviderRegistry()
    for provider_id in provider_ids:
        registry.register(make_descriptor(provider_id))
    return CodeMesh(registry, augmentations=augmentations, connector=network.connect)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_discover_and_load_signatures(self, echo_network):
        mesh = _mesh(echo_network, "local")
        assert mesh.catalog is None

        catalog = await mesh.discover()
        signatures = await mesh.load_signatures()

        assert mesh.catalog is catalog
        assert catalog.keys() == [ToolKey("local", "echo")]
        assert list(signatures) == ["echo_local"]
        assert signatures["echo_local"].parameter_type == "EchoLocalInput"

    @pytest.mark.asyncio
    async def test_run_discovers_lazily(self, echo_network):
        mesh = _mesh(echo_network, "local")
        result = await mesh.run_code('return await echo_local({"text": "lazy"})', ["echo_local"])
        assert result.status == ExecutionStatus.COMPLETED
        assert result.return_value == {"text": "lazy"}
        assert mesh.catalog is not None

    @pytest.mark.asyncio
    async def test_key_forms(self, echo_network):
        mesh = _mesh(echo_network, "local")
        source = 'return await echo_local({"text": "k"})'
        for keys in (["echo_local"], ["local/echo"], [ToolKey("local", "echo")], "local/echo"):
            result = await mesh.run_code(source, keys)
            assert result.return_value == {"text": "k"}, keys

    @pytest.mark.asyncio
    async def test_bare_key_tuple(self, echo_network):
        mesh = _mesh(echo_network, "local")
        result = await mesh.run_code('return await echo_local({"text": "t"})', ("local", "echo"))
        assert result.return_value == {"text": "t"}
        assert result.tools_called == ["local/echo"]

    @pytest.mark.parametrize("timeout_ms", [0, -5, 600_001, 1.5, True])
    @pytest.mark.asyncio
    async def test_out_of_range_timeout(self, echo_network, timeout_ms):
        mesh = _mesh(echo_network, "local")
        with pytest.raises(InvalidRequestError, match="timeout_ms"):
            await mesh.run_code("return 1", ["echo_local"], timeout_ms=timeout_ms)
        # Rejected before any provider is contacted
        assert echo_network.providers["local"].opened == 0

    @pytest.mark.asyncio
    async def test_unknown_key_raises(self, echo_network):
        mesh = _mesh(echo_network, "local")
        with pytest.raises(UnknownToolError):
            await mesh.run_code("return 1", ["local/missing"])
        with pytest.raises(UnknownToolError):
            await mesh.load_signatures(["nope"])

    @pytest.mark.asyncio
    async def test_only_selected_tools_are_injected(self, network):
        network.add("local", tools=[ECHO_TOOL, {"name": "reverse", "inputSchema": {"type": "object"}}])
        mesh = _mesh(network, "local")
        result = await mesh.run_code("return await reverse_local({})", ["echo_local"])
        assert result.status == ExecutionStatus.FAILED
        assert "NameError" in result.error_message

    @pytest.mark.asyncio
    async def test_partial_provider_failure(self, network):
        network.add("local", tools=[ECHO_TOOL])
        network.add("down", connect_error=TransportError("down", "refused"))
        mesh = _mesh(network, "local", "down")

        catalog = await mesh.discover()
        assert list(catalog.failures) == ["down"]
        result = await mesh.run_code('return await echo_local({"text": "up"})', ["local/echo"])
        assert result.return_value == {"text": "up"}

    @pytest.mark.asyncio
    async def test_timeout_override(self, network):
        network.add("local", tools=[ECHO_TOOL], call_delay=5.0)
        mesh = _mesh(network, "local")
        result = await mesh.run_code('await echo_local({"text": "x"})', ["echo_local"], timeout_ms=150)
        assert result.status == ExecutionStatus.TIMED_OUT


class TestExplorationWorkflow:
    @pytest.mark.asyncio
    async def test_explore_document_then_run(self, echo_network, tmp_path):
        store = AugmentationStore(tmp_path)
        mesh = _mesh(echo_network, "local", augmentations=store)
        exploring = '# EXPLORING\nr = await echo_local({"text": "sample"})\nconsole.log(r)'

        gated = await mesh.run_code(exploring, ["echo_local"])
        assert gated.status == ExecutionStatus.AUGMENTATION_REQUIRED
        assert gated.missing_augmentations == [ToolKey("local", "echo")]
        assert "Augmentation required" in format_execution_result(gated)

        mesh.record_augmentation(
            "local", "echo",
            output_shape_description="Object with a single text field (str)",
            parsing_example='text = result["text"]',
        )

        signature = (await mesh.load_signatures(["local/echo"]))["echo_local"]
        assert "Object with a single text field (str)" in signature.doc_text

        rerun = await mesh.run_code(exploring, ["echo_local"])
        assert rerun.status == ExecutionStatus.COMPLETED

        # A fresh instance over the same directory sees the note
        reopened = _mesh(echo_network, "local", augmentations=AugmentationStore(tmp_path))
        assert reopened.augmentations.has("local", "echo")

    @pytest.mark.asyncio
    async def test_record_for_unknown_tool_still_appends(self, echo_network):
        mesh = _mesh(echo_network, "local")
        await mesh.discover()
        mesh.record_augmentation("local", "ghost", "shape", "example")
        assert mesh.augmentations.has("local", "ghost")


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_mapping_config(self, echo_network, tmp_path):
        config = {
            "servers": [{"id": "local", "name": "Local", "type": "stdio", "command": ["fake-provider"]}],
            "augmentationDir": str(tmp_path / "ignored"),
            "sandbox": {"default_timeout_ms": 2000},
        }
        mesh = CodeMesh.from_config(config, augmentation_dir=tmp_path / "notes", connector=echo_network.connect)

        assert mesh.registry.resolve("local").name == "Local"
        assert mesh.augmentations.root == tmp_path / "notes"
        result = await mesh.run_code('return await echo_local(text="cfg")', ["echo_local"])
        assert result.return_value == {"text": "cfg"}

    def test_invalid_config(self):
        with pytest.raises(ConfigError):
            CodeMesh.from_config({"servers": [{"id": "x"}]})

    @pytest.mark.asyncio
    async def test_real_stdio_provider(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({
            "servers": [{
                "id": "echo",
                "name": "Echo",
                "type": "stdio",
                "command": [sys.executable, str(ECHO_SERVER)],
                "env": {"ECHO_GREETING": "hello from stdio"},
                "timeout": 10000,
            }],
        }))
        mesh = CodeMesh.from_config(config_path)

        catalog = await mesh.discover()
        assert [t.tool_name for t in catalog.tools()] == ["echo", "greeting", "crash"]

        source = (
            'echoed = await echo_echo({"text": "round trip"})\n'
            "greeting = await greeting_echo()\n"
            'return {"echoed": echoed["text"], "greeting": greeting}'
        )
        result = await mesh.run_code(source, ["echo/echo", "echo/greeting"], timeout_ms=20000)

        assert result.status == ExecutionStatus.COMPLETED, result.error_message
        assert result.return_value == {"echoed": "round trip", "greeting": "hello from stdio"}
        assert result.tools_called == ["echo/echo", "echo/greeting"]
