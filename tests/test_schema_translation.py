"""Tests for JSON Schema to Python type translation."""

import pytest

from codemesh.exceptions import SchemaTranslationError
from codemesh.signatures.schema import camel_case, translate_schema


def _object(properties, required=()):
    return {"type": "object", "properties": properties, "required": list(required)}


class TestObjects:
    def test_root_typed_dict(self):
        schema = _object({"text": {"type": "string", "description": "Text to echo"}}, required=["text"])
        translated = translate_schema(schema, "EchoLocalInput")

        assert translated.expression == "EchoLocalInput"
        assert translated.definitions == [
            "class EchoLocalInput(TypedDict):\n"
            "    # Text to echo\n"
            "    text: str"
        ]

    def test_optional_fields_are_not_required(self):
        schema = _object({"city": {"type": "string"}, "days": {"type": "integer"}}, required=["city"])
        definition = translate_schema(schema, "W").definitions[0]
        assert "    city: str" in definition
        assert "    days: NotRequired[int]" in definition

    def test_object_description_becomes_docstring(self):
        schema = {**_object({"a": {"type": "boolean"}}), "description": "Search  options\nfor tools"}
        definition = translate_schema(schema, "Opts").definitions[0]
        assert '    """Search options for tools"""' in definition

    def test_nested_object_gets_derived_name(self):
        schema = _object({"user": _object({"name": {"type": "string"}}, required=["name"])}, required=["user"])
        translated = translate_schema(schema, "Q")

        assert translated.definitions[0] == "class QUser(TypedDict):\n    name: str"
        assert "    user: QUser" in translated.definitions[1]

    def test_additional_properties_map(self):
        schema = {"type": "object", "additionalProperties": {"type": "integer"}}
        assert translate_schema(schema, "X").expression == "dict[str, int]"

    def test_empty_object(self):
        assert translate_schema({"type": "object"}, "X").expression == "dict[str, Any]"
        assert translate_schema({"type": "object", "properties": {}}, "X").expression == "dict[str, Any]"

    def test_non_identifier_keys_use_functional_syntax(self):
        schema = _object({"first-name": {"type": "string"}, "class": {"type": "integer"}}, required=["class"])
        translated = translate_schema(schema, "Person")
        assert translated.definitions == [
            "Person = TypedDict('Person', {\n"
            "    'first-name': NotRequired[str],\n"
            "    'class': int,\n"
            "})"
        ]

    def test_all_of_merges_objects(self):
        schema = {
            "allOf": [
                _object({"id": {"type": "string"}}, required=["id"]),
                _object({"tags": {"type": "array", "items": {"type": "string"}}}),
            ],
        }
        translated = translate_schema(schema, "Merged")
        assert translated.expression == "Merged"
        definition = translated.definitions[0]
        assert "    id: str" in definition
        assert "    tags: NotRequired[list[str]]" in definition

    def test_all_of_rejects_scalars(self):
        with pytest.raises(SchemaTranslationError, match="only merge object"):
            translate_schema({"allOf": [{"type": "string"}, {"type": "integer"}]}, "X")


class TestScalarsAndCollections:
    @pytest.mark.parametrize("json_type,expected", [
        ("string", "str"),
        ("integer", "int"),
        ("number", "float"),
        ("boolean", "bool"),
        ("null", "None"),
    ])
    def test_scalars(self, json_type, expected):
        assert translate_schema({"type": json_type}, "X").expression == expected

    def test_enum_literal(self):
        assert translate_schema({"type": "string", "enum": ["a", "b"]}, "X").expression == "Literal['a', 'b']"

    def test_const_literal(self):
        assert translate_schema({"const": 3}, "X").expression == "Literal[3]"

    def test_float_enum_falls_back_to_type(self):
        assert translate_schema({"type": "number", "enum": [1.5, 2.5]}, "X").expression == "float"

    def test_nullable_union(self):
        assert translate_schema({"anyOf": [{"type": "string"}, {"type": "null"}]}, "X").expression == "str | None"
        assert translate_schema({"type": ["string", "null"]}, "X").expression == "str | None"

    def test_union_with_any_collapses(self):
        assert translate_schema({"oneOf": [{"type": "string"}, {}]}, "X").expression == "Any"

    def test_array(self):
        assert translate_schema({"type": "array", "items": {"type": "string"}}, "X").expression == "list[str]"
        assert translate_schema({"type": "array"}, "X").expression == "list[Any]"

    def test_tuple(self):
        schema = {"type": "array", "prefixItems": [{"type": "string"}, {"type": "integer"}]}
        assert translate_schema(schema, "X").expression == "tuple[str, int]"

    def test_true_and_empty_schema(self):
        assert translate_schema(True, "X").expression == "Any"
        assert translate_schema({}, "X").expression == "Any"


class TestReferences:
    def test_recursive_definition(self):
        schema = {
            "type": "object",
            "properties": {"root": {"$ref": "#/$defs/Node"}},
            "$defs": {
                "Node": {
                    "type": "object",
                    "properties": {
                        "value": {"type": "integer"},
                        "children": {"type": "array", "items": {"$ref": "#/$defs/Node"}},
                    },
                    "required": ["value"],
                },
            },
        }
        translated = translate_schema(schema, "TreeInput")

        node = next(d for d in translated.definitions if d.startswith("class TreeInputNode"))
        assert "    value: int" in node
        assert '    children: NotRequired[list["TreeInputNode"]]' in node
        root = next(d for d in translated.definitions if d.startswith("class TreeInput("))
        assert "    root: NotRequired[TreeInputNode]" in root

    def test_self_reference_to_root(self):
        schema = _object({"value": {"type": "string"}, "next": {"$ref": "#"}}, required=["value"])
        definition = translate_schema(schema, "LinkedInput").definitions[0]
        assert '    next: NotRequired["LinkedInput"]' in definition

    def test_reference_to_scalar_becomes_alias(self):
        schema = _object({"id": {"$ref": "#/definitions/Id"}}, required=["id"])
        schema["definitions"] = {"Id": {"type": "string"}}
        translated = translate_schema(schema, "R")
        assert "RId = str" in translated.definitions
        assert "    id: RId" in translated.definitions[-1]

    def test_remote_reference_rejected(self):
        with pytest.raises(SchemaTranslationError, match="local references"):
            translate_schema({"$ref": "https://example.com/schema.json"}, "X")

    def test_dangling_reference_rejected(self):
        with pytest.raises(SchemaTranslationError, match="dangling") as exc_info:
            translate_schema(_object({"a": {"$ref": "#/$defs/Missing"}}), "X")
        assert exc_info.value.pointer == "#/properties/a"


class TestUnsupported:
    def test_not_keyword(self):
        with pytest.raises(SchemaTranslationError, match="'not'"):
            translate_schema({"not": {"type": "string"}}, "X")

    def test_conditional(self):
        with pytest.raises(SchemaTranslationError, match="'if'"):
            translate_schema({"if": {"type": "string"}, "then": {"minLength": 1}}, "X")

    def test_false_schema(self):
        with pytest.raises(SchemaTranslationError, match="'false'"):
            translate_schema(_object({"never": False}), "X")

    def test_depth_bound(self):
        schema = {"type": "array", "items": {"type": "array", "items": {"type": "string"}}}
        assert translate_schema(schema, "X", max_depth=2).expression == "list[list[str]]"
        with pytest.raises(SchemaTranslationError, match="depth bound 1"):
            translate_schema(schema, "X", max_depth=1)

    def test_unknown_type(self):
        with pytest.raises(SchemaTranslationError, match="unknown type"):
            translate_schema({"type": "decimal"}, "X")


class TestCamelCase:
    def test_camel_case(self):
        assert camel_case("echo_local") == "EchoLocal"
        assert camel_case("first-name") == "FirstName"
        assert camel_case("2fa") == "T2fa"
