"""
JSON Schema to Python type translation.

Turns a tool's input/output JSON Schema into Python structural types:

    object + properties      -> TypedDict (optional keys as NotRequired[...])
    object + additionalProps -> dict[str, T]
    array / prefixItems      -> list[T] / tuple[...]
    enum / const             -> Literal[...]
    anyOf / oneOf / [types]  -> T1 | T2
    allOf (objects)          -> merged TypedDict
    $ref (local)             -> named type, forward reference on recursion

Constructs without a structural equivalent (``not``, conditionals, the
``false`` schema, remote refs, nesting beyond the depth bound) raise
SchemaTranslationError; callers degrade the tool to an untyped signature.
"""

from __future__ import annotations

import keyword
import re
from typing import Any, NamedTuple

from codemesh.exceptions import SchemaTranslationError

DEFAULT_MAX_DEPTH = 8

_SCALARS = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "null": "None",
}
_UNSUPPORTED_KEYWORDS = ("not", "if", "then", "else", "dependentSchemas", "unevaluatedProperties")


class TranslatedType(NamedTuple):
    """A type expression plus the definitions it refers to."""
    expression: str
    definitions: list[str]


def camel_case(value: str) -> str:
    parts = re.split(r"[^A-Za-z0-9]+", value)
    joined = "".join(p[:1].upper() + p[1:] for p in parts if p)
    if joined and joined[0].isdigit():
        joined = f"T{joined}"
    return joined


def _is_identifier(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name)


class TypeTranslator:
    """Translates one root schema; instances are single-use."""

    def __init__(self, schema: Any, type_name: str, max_depth: int = DEFAULT_MAX_DEPTH):
        self._root = schema
        self._type_name = type_name
        self._max_depth = max_depth
        self._definitions: dict[str, str] = {}
        self._taken: set[str] = set()
        self._ref_names: dict[str, str] = {}
        self._in_progress: set[str] = set()

    def translate(self) -> TranslatedType:
        self._taken.add(self._type_name)
        self._ref_names["#"] = self._type_name
        self._in_progress.add("#")
        expression = self._translate(self._root, self._type_name, "#", 0, reserved=True)
        self._in_progress.discard("#")
        return TranslatedType(expression, list(self._definitions.values()))

    # ─── Dispatch ────────────────────────────────────────────

    def _translate(self, schema: Any, name: str, pointer: str, depth: int, reserved: bool = False) -> str:
        if depth > self._max_depth:
            raise SchemaTranslationError(f"schema nesting exceeds depth bound {self._max_depth}", pointer)
        if schema is True:
            return "Any"
        if schema is False:
            raise SchemaTranslationError("'false' schema accepts no value", pointer)
        if not isinstance(schema, dict):
            raise SchemaTranslationError(f"schema must be an object, got {type(schema).__name__}", pointer)

        if "$ref" in schema:
            return self._translate_ref(schema["$ref"], name, pointer, depth)

        for kw in _UNSUPPORTED_KEYWORDS:
            if kw in schema:
                raise SchemaTranslationError(f"'{kw}' has no structural equivalent", pointer)

        if "const" in schema:
            return self._literal([schema["const"]], schema, name, pointer, depth)
        if "enum" in schema:
            if not isinstance(schema["enum"], list) or not schema["enum"]:
                raise SchemaTranslationError("'enum' must be a non-empty array", pointer)
            return self._literal(schema["enum"], schema, name, pointer, depth)

        for combinator in ("anyOf", "oneOf"):
            if combinator in schema:
                members = schema[combinator]
                if not isinstance(members, list) or not members:
                    raise SchemaTranslationError(f"'{combinator}' must be a non-empty array", pointer)
                return _union(
                    self._translate(member, f"{name}Option{i + 1}", f"{pointer}/{combinator}/{i}", depth + 1)
                    for i, member in enumerate(members)
                )

        if "allOf" in schema:
            return self._translate(self._merge_all_of(schema, pointer), name, pointer, depth + 1, reserved)

        schema_type = schema.get("type")
        if isinstance(schema_type, list):
            if not schema_type:
                raise SchemaTranslationError("'type' must not be an empty array", pointer)
            return _union(
                self._translate({**schema, "type": t}, name, pointer, depth + 1, reserved)
                for t in schema_type
            )
        if schema_type is None:
            schema_type = _infer_type(schema)
            if schema_type is None:
                return "Any"

        if schema_type in _SCALARS:
            return _SCALARS[schema_type]
        if schema_type == "array":
            return self._translate_array(schema, name, pointer, depth)
        if schema_type == "object":
            return self._translate_object(schema, name, pointer, depth, reserved)
        raise SchemaTranslationError(f"unknown type {schema_type!r}", pointer)

    # ─── Constructs ──────────────────────────────────────────

    def _literal(self, values: list[Any], schema: dict, name: str, pointer: str, depth: int) -> str:
        if all(v is None or isinstance(v, (str, int, bool)) for v in values):
            return f"Literal[{', '.join(repr(v) for v in values)}]"
        # Floats and structured constants cannot be Literal members
        rest = {k: v for k, v in schema.items() if k not in ("enum", "const")}
        return self._translate(rest, name, pointer, depth + 1)

    def _translate_array(self, schema: dict, name: str, pointer: str, depth: int) -> str:
        prefix = schema.get("prefixItems")
        items = schema.get("items")
        if isinstance(items, list):  # draft-04 tuple form
            prefix, items = items, None
        if isinstance(prefix, list):
            members = [
                self._translate(item, f"{name}Item{i + 1}", f"{pointer}/prefixItems/{i}", depth + 1)
                for i, item in enumerate(prefix)
            ]
            return f"tuple[{', '.join(members)}]" if members else "tuple[()]"
        if items is None:
            return "list[Any]"
        return f"list[{self._translate(items, f'{name}Item', f'{pointer}/items', depth + 1)}]"

    def _translate_object(self, schema: dict, name: str, pointer: str, depth: int, reserved: bool) -> str:
        properties = schema.get("properties")
        if not properties:
            extra = schema.get("additionalProperties")
            if isinstance(extra, dict) and extra:
                value = self._translate(extra, f"{name}Value", f"{pointer}/additionalProperties", depth + 1)
                return f"dict[str, {value}]"
            return "dict[str, Any]"
        if not isinstance(properties, dict):
            raise SchemaTranslationError("'properties' must be an object", pointer)

        class_name = name if reserved else self._reserve(name)
        required = set(schema.get("required") or [])
        fields: list[tuple[str, str, str]] = []
        for prop, sub in properties.items():
            expression = self._translate(
                sub, f"{class_name}{camel_case(prop)}", f"{pointer}/properties/{prop}", depth + 1,
            )
            if prop not in required:
                expression = f"NotRequired[{expression}]"
            description = sub.get("description", "") if isinstance(sub, dict) else ""
            fields.append((prop, expression, " ".join(str(description).split())))

        self._definitions[class_name] = _render_typed_dict(class_name, fields, schema.get("description"))
        return class_name

    def _translate_ref(self, ref: Any, name: str, pointer: str, depth: int) -> str:
        if not isinstance(ref, str) or not ref.startswith("#"):
            raise SchemaTranslationError(f"only local references are supported, got {ref!r}", pointer)
        if ref in self._ref_names:
            alias = self._ref_names[ref]
            return f'"{alias}"' if ref in self._in_progress else alias

        target = self._resolve_pointer(ref, pointer)
        # Prefixed so input and output translations never define the same name
        alias = self._reserve(f"{self._type_name}{camel_case(ref.rsplit('/', 1)[-1])}")
        self._ref_names[ref] = alias
        self._in_progress.add(ref)
        try:
            expression = self._translate(target, alias, ref, depth + 1, reserved=True)
        finally:
            self._in_progress.discard(ref)
        if expression != alias:
            self._definitions[alias] = f"{alias} = {expression}"
        return alias

    def _merge_all_of(self, schema: dict, pointer: str) -> dict:
        members = schema["allOf"]
        if not isinstance(members, list) or not members:
            raise SchemaTranslationError("'allOf' must be a non-empty array", pointer)
        base = {k: v for k, v in schema.items() if k != "allOf"}
        if len(members) == 1 and not base.get("properties"):
            return {**base, **self._dereference(members[0], pointer)}

        merged_properties: dict[str, Any] = dict(base.get("properties") or {})
        merged_required: list[str] = list(base.get("required") or [])
        for i, member in enumerate(members):
            member = self._dereference(member, f"{pointer}/allOf/{i}")
            if not isinstance(member, dict) or not (
                member.get("type") == "object" or "properties" in member
            ):
                raise SchemaTranslationError("'allOf' can only merge object schemas", f"{pointer}/allOf/{i}")
            merged_properties.update(member.get("properties") or {})
            merged_required.extend(member.get("required") or [])

        merged = {k: v for k, v in base.items() if k not in ("properties", "required")}
        merged.update(type="object", properties=merged_properties, required=merged_required)
        return merged

    def _dereference(self, schema: Any, pointer: str) -> Any:
        seen: set[str] = set()
        while isinstance(schema, dict) and "$ref" in schema:
            ref = schema["$ref"]
            if not isinstance(ref, str) or not ref.startswith("#") or ref in seen:
                raise SchemaTranslationError(f"cannot merge through reference {ref!r}", pointer)
            seen.add(ref)
            schema = self._resolve_pointer(ref, pointer)
        return schema

    def _resolve_pointer(self, ref: str, pointer: str) -> Any:
        node = self._root
        for raw in ref[1:].split("/")[1:] if ref != "#" else []:
            part = raw.replace("~1", "/").replace("~0", "~")
            if isinstance(node, dict) and part in node:
                node = node[part]
            elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
                node = node[int(part)]
            else:
                raise SchemaTranslationError(f"dangling reference {ref!r}", pointer)
        return node

    def _reserve(self, name: str) -> str:
        candidate = name or "Anonymous"
        counter = 2
        while candidate in self._taken:
            candidate = f"{name}{counter}"
            counter += 1
        self._taken.add(candidate)
        return candidate


def translate_schema(schema: Any, type_name: str, max_depth: int = DEFAULT_MAX_DEPTH) -> TranslatedType:
    """Translate ``schema`` into a type expression rooted at ``type_name``."""
    return TypeTranslator(schema, type_name, max_depth).translate()


def _infer_type(schema: dict) -> str | None:
    if "properties" in schema or "additionalProperties" in schema:
        return "object"
    if "items" in schema or "prefixItems" in schema:
        return "array"
    return None


def _union(expressions) -> str:
    unique = list(dict.fromkeys(expressions))
    if "Any" in unique:
        return "Any"
    return " | ".join(unique)


def _render_typed_dict(name: str, fields: list[tuple[str, str, str]], description: Any) -> str:
    if all(_is_identifier(prop) for prop, _, _ in fields):
        lines = [f"class {name}(TypedDict):"]
        if description:
            lines.append(f'    """{" ".join(str(description).split())}"""')
        for prop, expression, doc in fields:
            if doc:
                lines.append(f"    # {doc}")
            lines.append(f"    {prop}: {expression}")
        return "\n".join(lines)

    # Keys that are not identifiers need the functional syntax
    body = ",\n".join(f"    {prop!r}: {expression}" for prop, expression, _ in fields)
    return f"{name} = TypedDict({name!r}, {{\n{body},\n}})"
