"""
CodeMesh Signature Generator

Converts every catalog tool into a GeneratedSignature: a collision-free
function name, structural parameter/return types translated from the
tool's JSON Schemas, and documentation text that folds in every recorded
augmentation for that (provider, tool) pair.

A schema the translator cannot express never aborts the pass; the tool is
kept with an untyped passthrough signature and the translation error noted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from codemesh.core.models import Augmentation, GeneratedSignature, ToolCatalog, ToolDescriptor, ToolKey
from codemesh.exceptions import SchemaTranslationError, UnknownToolError
from codemesh.signatures.naming import derive_function_names
from codemesh.signatures.schema import DEFAULT_MAX_DEPTH, camel_case, translate_schema

if TYPE_CHECKING:
    from codemesh.augmentation.store import AugmentationStore

logger = logging.getLogger(__name__)

PROVIDER_RESPONSE_TYPE = "ProviderResponse"
PROVIDER_RESPONSE_DEFINITION = (
    f"{PROVIDER_RESPONSE_TYPE} = Any  # decoded provider payload; shape not declared by the provider"
)
PASSTHROUGH_PARAMETER_TYPE = "dict[str, Any]"


class SignatureGenerator:
    """Builds typed signatures for catalog tools."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self._max_depth = max_depth

    def generate(
        self,
        catalog: ToolCatalog,
        augmentations: AugmentationStore | None = None,
        keys: Iterable[ToolKey] | None = None,
    ) -> dict[str, GeneratedSignature]:
        """Generate signatures keyed by function name.

        Args:
            catalog: The discovery snapshot.
            augmentations: Store to read augmentation notes from.
            keys: Restrict output to these tools. Names are still derived
                from the whole catalog so they match the proxy namespace.
        """
        names = derive_function_names(catalog.keys())
        if keys is None:
            selected = list(catalog.keys())
        else:
            selected = []
            for key in keys:
                key = ToolKey(*key)
                if key not in catalog:
                    raise UnknownToolError(str(key))
                selected.append(key)

        signatures: dict[str, GeneratedSignature] = {}
        for key in sorted(selected, key=lambda k: names[k]):
            notes = augmentations.read(key.provider_id, key.tool_name) if augmentations else ()
            signature = self.generate_one(catalog[key], names[key], notes)
            signatures[signature.function_name] = signature
        return signatures

    def generate_one(
        self,
        tool: ToolDescriptor,
        function_name: str,
        augmentations: Iterable[Augmentation] = (),
    ) -> GeneratedSignature:
        doc_text = render_doc_text(tool, augmentations)
        type_prefix = camel_case(function_name)
        try:
            parameter = translate_schema(tool.input_schema, f"{type_prefix}Input", self._max_depth)
            if tool.output_schema is not None:
                returned = translate_schema(tool.output_schema, f"{type_prefix}Output", self._max_depth)
            else:
                returned = None
        except SchemaTranslationError as e:
            logger.warning(
                "Falling back to untyped signature: %s", e,
                extra={"provider_id": tool.provider_id, "tool_name": tool.tool_name},
            )
            return GeneratedSignature(
                function_name=function_name,
                provider_id=tool.provider_id,
                tool_name=tool.tool_name,
                parameter_type=PASSTHROUGH_PARAMETER_TYPE,
                return_type=PROVIDER_RESPONSE_TYPE,
                type_definitions=PROVIDER_RESPONSE_DEFINITION,
                doc_text=doc_text,
                typed=False,
                translation_error=str(e),
            )

        definitions = list(parameter.definitions)
        if returned is None:
            return_type = PROVIDER_RESPONSE_TYPE
            definitions.append(PROVIDER_RESPONSE_DEFINITION)
        else:
            return_type = returned.expression
            definitions.extend(returned.definitions)

        return GeneratedSignature(
            function_name=function_name,
            provider_id=tool.provider_id,
            tool_name=tool.tool_name,
            parameter_type=parameter.expression,
            return_type=return_type,
            type_definitions="\n\n".join(definitions),
            doc_text=doc_text,
        )


def render_doc_text(tool: ToolDescriptor, augmentations: Iterable[Augmentation] = ()) -> str:
    """Tool description, origin line, then every augmentation in insertion order."""
    sections = [
        tool.description.strip() or "No description provided.",
        f"Provider: {tool.provider_id}, tool: {tool.tool_name}",
    ]
    notes = list(augmentations)
    if notes:
        sections.append(f"Output notes ({len(notes)}):")
        for i, note in enumerate(notes, start=1):
            sections.append(
                f"[{i}] recorded {note.created_at.isoformat()}\n"
                f"Output shape:\n{_indent(note.output_shape_description)}\n"
                f"Parsing example:\n{_indent(note.parsing_example)}"
            )
    return "\n\n".join(sections)


def _indent(text: str) -> str:
    return "\n".join(f"    {line}".rstrip() for line in text.strip().splitlines())
