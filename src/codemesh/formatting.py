"""Plain-text rendering of execution results and catalogs for the outer surface."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from codemesh.core.models import ExecutionResult, ExecutionStatus, GeneratedSignature, ToolCatalog

_STATUS_LABELS = {
    ExecutionStatus.COMPLETED: "Success",
    ExecutionStatus.FAILED: "Failed",
    ExecutionStatus.TIMED_OUT: "Timed out",
    ExecutionStatus.AUGMENTATION_REQUIRED: "Augmentation required",
}


def format_execution_result(result: ExecutionResult) -> str:
    """Status line, console output, then the JSON result or the error block."""
    sections = [
        "CodeMesh Execution Complete",
        "",
        f"Status: {_STATUS_LABELS[result.status]}",
    ]

    if result.captured_output_lines:
        sections += ["", "Console Output:"]
        sections += [f"  {line}" for line in result.captured_output_lines]

    if result.status == ExecutionStatus.COMPLETED and result.return_value is not None:
        sections += ["", "Execution Result:", "```json", _to_json(result.return_value), "```"]

    if result.error_message:
        sections += ["", "Error:", "```", result.error_message, "```"]

    if result.missing_augmentations:
        sections += ["", "Missing augmentations:"]
        sections += [f"  - {key}" for key in result.missing_augmentations]

    return "\n".join(sections)


def format_catalog(
    catalog: ToolCatalog,
    signatures: Mapping[str, GeneratedSignature] | None = None,
) -> str:
    """List tools grouped by provider, followed by unreachable providers.

    ``signatures`` is the mapping returned by SignatureGenerator.generate;
    when given, tools are listed under their generated function names.
    """
    by_key = {s.key: s for s in signatures.values()} if signatures else {}
    lines = [f"Discovered {len(catalog)} tool(s) from {len(catalog.reachable_providers)} provider(s)"]

    for provider_id in catalog.reachable_providers:
        lines += ["", f"{provider_id}:"]
        for tool in catalog.for_provider(provider_id):
            signature = by_key.get(tool.key)
            name = signature.function_name if signature else tool.tool_name
            summary = (tool.description or "").strip().splitlines()
            lines.append(f"  - {name}" + (f": {summary[0]}" if summary else ""))

    failures = catalog.failures
    if failures:
        lines += ["", "Unavailable providers:"]
        for failure in failures.values():
            lines.append(f"  - {failure.provider_id}: {failure.error_type}: {failure.message}")

    return "\n".join(lines)


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)
