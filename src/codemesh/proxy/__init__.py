"""CodeMesh Call Proxy: per-call adapters for selected catalog tools."""

from codemesh.proxy.builder import (
    AdapterSpec,
    CallAdapter,
    CallProxyBuilder,
    decode_tool_result,
    invoke_tool,
    validate_arguments,
)

__all__ = [
    "AdapterSpec",
    "CallAdapter",
    "CallProxyBuilder",
    "decode_tool_result",
    "invoke_tool",
    "validate_arguments",
]
