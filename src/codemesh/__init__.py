"""
CodeMesh: Typed, Sandboxed Code Execution over Many Tool Providers

Usage:
    from codemesh import CodeMesh, load_config_auto

    mesh = CodeMesh.from_config(load_config_auto())
    catalog = await mesh.discover()
    signatures = await mesh.load_signatures()

    result = await mesh.run_code(
        '''
        weather = await get_forecast_weather({"city": "Prague"})
        console.log(weather)
        return weather["temperature"]
        ''',
        tool_keys=["get_forecast_weather"],
    )

    # After an exploratory run, document what the tool really returns:
    mesh.record_augmentation(
        "weather", "get_forecast",
        output_shape_description="Object with temperature (float, Celsius) and conditions (str)",
        parsing_example='temp = result["temperature"]',
    )
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from codemesh.augmentation.store import AugmentationStore
from codemesh.config import MeshConfig, load_config, load_config_auto, load_providers, parse_config
from codemesh.core.models import (
    MAX_TIMEOUT_MS,
    Augmentation,
    AugmentationEntry,
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    GeneratedSignature,
    ProviderDescriptor,
    ToolCatalog,
    ToolDescriptor,
    ToolKey,
    TransportKind,
)
from codemesh.discovery.service import DiscoveryService
from codemesh.exceptions import CodeMeshError, InvalidRequestError, UnknownToolError
from codemesh.formatting import format_catalog, format_execution_result
from codemesh.logging import get_logger
from codemesh.providers.registry import ProviderRegistry
from codemesh.proxy.builder import CallProxyBuilder
from codemesh.sandbox.executor import CodeSandbox, SandboxConfig
from codemesh.signatures.generator import SignatureGenerator
from codemesh.signatures.naming import derive_function_names
from codemesh.transports import Connector, open_connection

__version__ = "0.1.0"

__all__ = [
    # Main API
    "CodeMesh",
    "__version__",
    # Configuration
    "MeshConfig",
    "SandboxConfig",
    "load_config",
    "load_config_auto",
    "load_providers",
    # Models
    "Augmentation",
    "AugmentationEntry",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "GeneratedSignature",
    "ProviderDescriptor",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolKey",
    "TransportKind",
    # Components
    "AugmentationStore",
    "CallProxyBuilder",
    "CodeSandbox",
    "DiscoveryService",
    "ProviderRegistry",
    "SignatureGenerator",
    # Formatting
    "format_catalog",
    "format_execution_result",
    # Errors
    "CodeMeshError",
    "InvalidRequestError",
    "UnknownToolError",
]

logger = get_logger(__name__)


class CodeMesh:
    """Main CodeMesh pipeline, the public API.

    Pipeline:
    1. Discover tools from every registered provider into a ToolCatalog
    2. Generate typed signatures, including recorded augmentations
    3. Build adapters for just the tools a caller selects
    4. Run agent code against those adapters in a fresh sandbox
    5. Gate exploratory runs until their tools are documented

    The catalog is a snapshot replaced by each ``discover`` call; adapters
    are rebuilt for every run so they never outlive the catalog they
    came from.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        augmentations: AugmentationStore | None = None,
        connector: Connector = open_connection,
        sandbox_config: SandboxConfig | None = None,
    ):
        """Initialize CodeMesh.

        Args:
            registry: Providers to discover and call.
            augmentations: Store for agent-authored output notes. Defaults
                to an in-memory store.
            connector: Opens a connection for a provider descriptor.
            sandbox_config: Limits applied to every sandbox run.
        """
        self._registry = registry
        self._augmentations = augmentations if augmentations is not None else AugmentationStore()
        self._connector = connector
        self._sandbox_config = sandbox_config or SandboxConfig()
        self._catalog: ToolCatalog | None = None

    @classmethod
    def from_config(
        cls,
        config: MeshConfig | dict | str | Path,
        augmentation_dir: str | Path | None = None,
        connector: Connector = open_connection,
    ) -> CodeMesh:
        """Build a CodeMesh from a config object, parsed mapping, or file path.

        ``augmentation_dir`` overrides the document's ``augmentationDir``.
        """
        if isinstance(config, (str, Path)):
            config = load_config(config)
        elif not isinstance(config, MeshConfig):
            config = parse_config(config)

        registry = load_providers(config)
        root = augmentation_dir if augmentation_dir is not None else config.augmentation_dir
        return cls(
            registry,
            augmentations=AugmentationStore(root),
            connector=connector,
            sandbox_config=config.sandbox,
        )

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def augmentations(self) -> AugmentationStore:
        return self._augmentations

    @property
    def catalog(self) -> ToolCatalog | None:
        """The latest discovery snapshot, or None before the first discovery."""
        return self._catalog

    async def discover(self) -> ToolCatalog:
        """Run a discovery pass and replace the catalog snapshot."""
        catalog = await DiscoveryService(self._connector).discover_all(self._registry)
        self._catalog = catalog
        return catalog

    async def load_signatures(
        self,
        tool_keys: Iterable[ToolKey | str] | None = None,
    ) -> dict[str, GeneratedSignature]:
        """Typed signatures for the selected tools (all tools when None)."""
        catalog = await self._ensure_catalog()
        keys = None if tool_keys is None else self._resolve_keys(catalog, tool_keys)
        return SignatureGenerator().generate(catalog, self._augmentations, keys)

    async def run_code(
        self,
        source_code: str,
        tool_keys: Iterable[ToolKey | str],
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Run agent code with adapters for exactly ``tool_keys`` injected.

        Keys may be ToolKeys, ``provider/tool`` strings, or generated
        function names. Raises UnknownToolError for a key the catalog does
        not know and InvalidRequestError for a timeout outside
        ``1..MAX_TIMEOUT_MS``; agent-code failures are reported in the result.
        """
        if timeout_ms is None:
            timeout_ms = self._sandbox_config.default_timeout_ms
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or not 0 < timeout_ms <= MAX_TIMEOUT_MS:
            raise InvalidRequestError(
                f"timeout_ms must be an integer in 1..{MAX_TIMEOUT_MS}, got {timeout_ms!r}",
                details={"timeout_ms": timeout_ms},
            )

        catalog = await self._ensure_catalog()
        keys = self._resolve_keys(catalog, tool_keys)
        request = ExecutionRequest(source_code=source_code, selected_tool_keys=keys, timeout_ms=timeout_ms)

        adapters = CallProxyBuilder(self._registry, self._connector).build(request.selected_tool_keys, catalog)
        sandbox = CodeSandbox(self._sandbox_config, self._augmentations)
        return await sandbox.execute(request, adapters)

    def record_augmentation(
        self,
        provider_id: str,
        tool_name: str,
        output_shape_description: str,
        parsing_example: str,
    ) -> Augmentation:
        """Append an augmentation; later signatures for the tool include it."""
        if self._catalog is not None and ToolKey(provider_id, tool_name) not in self._catalog:
            logger.warning(
                "Recording augmentation for a tool missing from the current catalog",
                extra={"provider_id": provider_id, "tool_name": tool_name},
            )
        entry = AugmentationEntry(
            output_shape_description=output_shape_description,
            parsing_example=parsing_example,
        )
        return self._augmentations.append(provider_id, tool_name, entry)

    # ─── Internals ───────────────────────────────────────────

    async def _ensure_catalog(self) -> ToolCatalog:
        if self._catalog is None:
            return await self.discover()
        return self._catalog

    @staticmethod
    def _resolve_keys(catalog: ToolCatalog, tool_keys: Iterable[ToolKey | str]) -> list[ToolKey]:
        if isinstance(tool_keys, (str, ToolKey)):
            tool_keys = [tool_keys]
        elif _is_plain_key(catalog, tool_keys):
            tool_keys = [ToolKey(*tool_keys)]
        by_name = {name: key for key, name in derive_function_names(catalog.keys()).items()}
        resolved: list[ToolKey] = []
        for item in tool_keys:
            if isinstance(item, str):
                key = by_name.get(item) or _split_key(item)
            else:
                key = ToolKey(*item)
            if key is None or key not in catalog:
                raise UnknownToolError(str(item))
            if key not in resolved:
                resolved.append(key)
        return resolved


def _is_plain_key(catalog: ToolCatalog, value: object) -> bool:
    """A bare ``(provider_id, tool_name)`` tuple naming a catalog tool."""
    return (
        type(value) is tuple
        and len(value) == 2
        and all(isinstance(part, str) for part in value)
        and ToolKey(*value) in catalog
    )


def _split_key(text: str) -> ToolKey | None:
    provider_id, sep, tool_name = text.partition("/")
    if not sep or not provider_id or not tool_name:
        return None
    return ToolKey(provider_id, tool_name)
