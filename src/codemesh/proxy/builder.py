"""
CodeMesh Call Proxy Builder

Materialises callable adapters for the tools a caller selected, and only
those. Each adapter is a tagged AdapterSpec plus its provider descriptor;
every call goes through the one generic ``invoke_tool`` routine:

1. Validate arguments against the input schema (no connection on failure)
2. Open a fresh connection to the owning provider
3. Call the tool under the provider's timeout, retrying immediately on
   transport failure up to the provider's retry count
4. Close the connection, success or failure
5. Decode and return the result; tool-reported errors are returned, not raised
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Iterable
from typing import Any, NamedTuple

from jsonschema import SchemaError, ValidationError
from jsonschema.validators import validator_for

from codemesh.core.models import ProviderDescriptor, ToolCatalog, ToolKey
from codemesh.exceptions import (
    InvalidArgumentError,
    ProtocolError,
    ToolInvocationError,
    TransportError,
    UnknownToolError,
)
from codemesh.observability.metrics import record_tool_call
from codemesh.providers.registry import ProviderRegistry
from codemesh.signatures.naming import derive_function_names
from codemesh.transports import Connector, open_connection

logger = logging.getLogger(__name__)


class AdapterSpec(NamedTuple):
    """Dispatch-table entry: everything needed to route one tool call."""
    function_name: str
    provider_id: str
    tool_name: str
    input_schema: dict[str, Any]

    @property
    def key(self) -> ToolKey:
        return ToolKey(self.provider_id, self.tool_name)


class CallAdapter:
    """Callable stand-in for one remote tool.

    Holds configuration only, never a connection, so it is safe to call
    repeatedly, and concurrently, from agent code.
    """

    def __init__(self, spec: AdapterSpec, provider: ProviderDescriptor, connector: Connector = open_connection):
        self.spec = spec
        self.provider = provider
        self._connector = connector

    @property
    def function_name(self) -> str:
        return self.spec.function_name

    @property
    def key(self) -> ToolKey:
        return self.spec.key

    async def __call__(self, arguments: Any = None) -> Any:
        return await invoke_tool(self.spec, self.provider, arguments, self._connector)

    def __repr__(self) -> str:
        return f"CallAdapter({self.spec.function_name!r} -> {self.spec.key})"


class CallProxyBuilder:
    """Builds the adapter namespace for a selection of catalog tools."""

    def __init__(self, registry: ProviderRegistry, connector: Connector = open_connection):
        self._registry = registry
        self._connector = connector

    def build(self, selected_keys: Iterable[ToolKey], catalog: ToolCatalog) -> dict[str, CallAdapter]:
        """Return ``{function_name: CallAdapter}`` for exactly the selected tools.

        Raises UnknownToolError for a key the catalog does not contain.
        """
        names = derive_function_names(catalog.keys())
        adapters: dict[str, CallAdapter] = {}
        for key in selected_keys:
            key = ToolKey(*key)
            tool = catalog.get(key)
            if tool is None:
                raise UnknownToolError(str(key))
            spec = AdapterSpec(
                function_name=names[key],
                provider_id=tool.provider_id,
                tool_name=tool.tool_name,
                input_schema=tool.input_schema,
            )
            adapters[spec.function_name] = CallAdapter(
                spec, self._registry.resolve(tool.provider_id), self._connector,
            )
        return adapters


# ─── Generic invoke ──────────────────────────────────────────

def validate_arguments(spec: AdapterSpec, arguments: Any) -> dict[str, Any]:
    """Check ``arguments`` against the tool's input schema.

    ``None`` is treated as an empty argument object. A provider schema that
    is itself invalid cannot be enforced; it is logged and skipped.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidArgumentError(
            spec.function_name,
            f"expected an object of named arguments, got {type(arguments).__name__}",
        )

    validator_cls = validator_for(spec.input_schema)
    try:
        validator_cls.check_schema(spec.input_schema)
    except SchemaError as e:
        logger.warning(
            "Provider input schema is invalid; skipping argument validation: %s", e.message,
            extra={"provider_id": spec.provider_id, "tool_name": spec.tool_name},
        )
        return arguments

    errors = sorted(validator_cls(spec.input_schema).iter_errors(arguments), key=_error_sort_key)
    if errors:
        raise InvalidArgumentError(
            spec.function_name,
            "; ".join(_describe(e) for e in errors[:5]),
            details={"errors": [_describe(e) for e in errors]},
        )
    return arguments


async def invoke_tool(
    spec: AdapterSpec,
    provider: ProviderDescriptor,
    arguments: Any,
    connector: Connector = open_connection,
) -> Any:
    """Validate, call with retries, close, decode."""
    arguments = validate_arguments(spec, arguments)

    attempts = provider.retry_count + 1
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                _call_once(spec, provider, arguments, connector),
                timeout=provider.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            last_error = TransportError(provider.id, f"timed out after {provider.timeout_ms}ms")
            last_error.__cause__ = e
        except ProtocolError as e:
            # The provider understood and rejected the call; repeating it cannot help
            last_error = e
            break
        except (TransportError, OSError) as e:
            last_error = e
        else:
            logger.debug(
                "Tool call succeeded",
                extra={
                    "function_name": spec.function_name,
                    "provider_id": provider.id,
                    "attempt": attempt,
                    "duration_ms": round((time.monotonic() - start) * 1000, 1),
                },
            )
            record_tool_call(function_name=spec.function_name, success=True, attempts=attempt)
            return decode_tool_result(result)

        logger.warning(
            "Tool call attempt failed: %s", last_error,
            extra={"function_name": spec.function_name, "provider_id": provider.id, "attempt": attempt},
        )

    record_tool_call(function_name=spec.function_name, success=False, attempts=attempt)
    raise ToolInvocationError(
        spec.function_name,
        attempt,
        str(last_error),
        details={"provider_id": provider.id, "tool_name": spec.tool_name},
    ) from last_error


async def _call_once(
    spec: AdapterSpec,
    provider: ProviderDescriptor,
    arguments: dict[str, Any],
    connector: Connector,
) -> Any:
    connection = await connector(provider)
    try:
        return await connection.call_tool(spec.tool_name, arguments)
    finally:
        await connection.close()


# ─── Result decoding ─────────────────────────────────────────

def decode_tool_result(result: Any) -> Any:
    """Turn a raw ``tools/call`` result into a plain value.

    - ``structuredContent`` wins when present
    - text content blocks are parsed as JSON when possible
    - one block returns its value, several return a list
    - ``isError`` results are returned as ``{"isError": True, "content": ...}``
    """
    if not isinstance(result, dict):
        return result
    if result.get("isError"):
        return {"isError": True, "content": _decode_content(result.get("content") or [])}
    if result.get("structuredContent") is not None:
        return result["structuredContent"]
    if "content" in result:
        return _decode_content(result["content"])
    return result


def _decode_content(blocks: Any) -> Any:
    if not isinstance(blocks, list):
        return blocks
    values = [_decode_block(block) for block in blocks]
    if len(values) == 1:
        return values[0]
    return values


def _decode_block(block: Any) -> Any:
    if not isinstance(block, dict) or block.get("type") != "text":
        return block
    text = block.get("text", "")
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def _error_sort_key(error: ValidationError) -> tuple:
    return (len(error.path), list(map(str, error.path)))


def _describe(error: ValidationError) -> str:
    path = "/".join(str(p) for p in error.absolute_path) or "<root>"
    return f"{path}: {error.message}"
