"""Tagged schema node descriptions compiled once from a declared JSON schema.

Every node records its kind and declared constraints explicitly, so the
validator and the feedback synthesizer never need to introspect a schema
engine's runtime errors to learn what was expected.
"""

import json
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from persuader.exceptions import SchemaDefinitionException


class SchemaKind(Enum):
    """Structural kinds a schema node can declare."""

    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    ANY = "any"


@dataclass(frozen=True)
class FieldSpec:
    """A declared object field, in schema declaration order."""

    name: str
    node: "SchemaNode"
    required: bool


@dataclass(frozen=True)
class SchemaNode:
    """Explicit description of one schema node and its constraints."""

    kind: SchemaKind
    nullable: bool = False
    enum: tuple[Any, ...] | None = None
    minimum: float | None = None
    maximum: float | None = None
    exclusive_minimum: float | None = None
    exclusive_maximum: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    min_items: int | None = None
    max_items: int | None = None
    fields: tuple[FieldSpec, ...] = ()
    items: "SchemaNode | None" = None
    additional_properties: bool = True
    description: str | None = None
    title: str | None = None

    def field(self, name: str) -> FieldSpec | None:
        """Return the declared field called ``name``, if any."""
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def child(self, segment: str | int) -> "SchemaNode | None":
        """Return the node a path segment leads to, or None if undeclared."""
        if isinstance(segment, int):
            return self.items if self.kind is SchemaKind.ARRAY else None
        spec = self.field(segment)
        return spec.node if spec is not None else None

    def node_at(self, path: Sequence[str | int]) -> "SchemaNode | None":
        """Resolve a field path to the node declaring it."""
        node: SchemaNode | None = self
        for segment in path:
            if node is None:
                return None
            node = node.child(segment)
        return node

    def order_key(self, path: Sequence[str | int]) -> tuple[int, ...]:
        """Sort key placing a path in schema declaration order.

        Field names map to their declaration index, array indices to
        themselves. Undeclared names sort after every declared sibling.
        """
        key: list[int] = []
        node: SchemaNode | None = self
        for segment in path:
            if isinstance(segment, int):
                key.append(segment)
                node = node.items if node is not None else None
                continue
            index = len(node.fields) if node is not None else 0
            child = None
            if node is not None:
                for position, spec in enumerate(node.fields):
                    if spec.name == segment:
                        index = position
                        child = spec.node
                        break
            key.append(index)
            node = child
        return tuple(key)

    def constraints(self) -> list[str]:
        """Human-readable list of this node's declared constraints."""
        parts: list[str] = []
        if self.minimum is not None:
            parts.append(f">= {format_number(self.minimum)}")
        if self.exclusive_minimum is not None:
            parts.append(f"> {format_number(self.exclusive_minimum)}")
        if self.maximum is not None:
            parts.append(f"<= {format_number(self.maximum)}")
        if self.exclusive_maximum is not None:
            parts.append(f"< {format_number(self.exclusive_maximum)}")
        if self.min_length is not None:
            parts.append(f"at least {_plural(self.min_length, 'character')}")
        if self.max_length is not None:
            parts.append(f"at most {_plural(self.max_length, 'character')}")
        if self.min_items is not None:
            parts.append(f"at least {_plural(self.min_items, 'item')}")
        if self.max_items is not None:
            parts.append(f"at most {_plural(self.max_items, 'item')}")
        return parts

    def expected(self) -> str:
        """Describe the expected kind, including declared constraints."""
        if self.enum is not None:
            text = "one of " + ", ".join(_literal(option) for option in self.enum)
        elif self.kind is SchemaKind.ARRAY and self.items is not None:
            text = f"array of {self.items.kind.value}"
        else:
            text = self.kind.value

        constraints = self.constraints()
        if constraints:
            text = f"{text} ({', '.join(constraints)})"
        if self.nullable and self.kind is not SchemaKind.NULL:
            text = f"{text} or null"
        return text


def format_number(value: float) -> str:
    """Render a numeric bound without a spurious trailing ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def kind_of(value: Any) -> str:
    """Name the JSON kind of an already-parsed value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def describe_received(value: Any) -> str:
    """Describe a received value for feedback: its kind plus a short preview."""
    kind = kind_of(value)
    if kind in ("boolean", "integer", "number"):
        return f"{kind} {_literal(value)}"
    if kind == "string":
        preview = value if len(value) <= 40 else value[:37] + "..."
        return f"string {json.dumps(preview)}"
    if kind == "array":
        return f"array ({_plural(len(value), 'item')})"
    return kind


def describe_schema(node: SchemaNode) -> str:
    """Render the exact expected shape as indented text for prompts."""
    return "\n".join(_describe(node, 0))


def compile_schema(schema_dict: dict[str, Any]) -> SchemaNode:
    """Compile a JSON schema dictionary into a tagged ``SchemaNode`` tree.

    Supports the subset of JSON Schema that describes structure: ``type``
    (including ``null`` unions), ``enum``/``const``, object ``properties``,
    ``required`` and ``additionalProperties``, array ``items`` with
    ``minItems``/``maxItems``, string length bounds, numeric bounds, local
    ``$ref`` into ``$defs``/``definitions``, nullable ``anyOf`` and
    single-member ``allOf``.

    Args:
        schema_dict: JSON schema as dictionary

    Returns:
        Root schema node

    Raises:
        SchemaDefinitionException: If the schema is malformed
    """
    if not isinstance(schema_dict, dict):
        raise SchemaDefinitionException("Schema must be a dictionary", pointer="#")
    return _SchemaCompiler(schema_dict).compile(schema_dict, "#", ())


class _SchemaCompiler:
    """Recursive compiler; holds the root document for ``$ref`` lookups."""

    def __init__(self, root: dict[str, Any]) -> None:
        self._root = root

    def compile(
        self, schema: Any, pointer: str, ref_stack: tuple[str, ...]
    ) -> SchemaNode:
        if schema is True or schema == {}:
            return SchemaNode(kind=SchemaKind.ANY)
        if not isinstance(schema, dict):
            raise SchemaDefinitionException(
                f"Schema node must be an object, got {kind_of(schema)}",
                pointer=pointer,
            )

        if "$ref" in schema:
            ref = schema["$ref"]
            if ref in ref_stack:
                raise SchemaDefinitionException(
                    f"Recursive $ref '{ref}' is not supported", pointer=pointer
                )
            target = self._resolve_ref(ref, pointer)
            node = self.compile(target, ref, (*ref_stack, ref))
            return _with_annotations(node, schema)

        if "allOf" in schema:
            members = schema["allOf"]
            if not isinstance(members, list) or len(members) != 1:
                raise SchemaDefinitionException(
                    "Only single-member allOf is supported", pointer=pointer
                )
            node = self.compile(members[0], f"{pointer}/allOf/0", ref_stack)
            return _with_annotations(node, schema)

        for keyword in ("anyOf", "oneOf"):
            if keyword in schema:
                return self._compile_union(schema, keyword, pointer, ref_stack)

        kind, nullable = self._resolve_type(schema, pointer)

        enum: tuple[Any, ...] | None = None
        if "const" in schema:
            enum = (schema["const"],)
        elif "enum" in schema:
            if not isinstance(schema["enum"], list) or not schema["enum"]:
                raise SchemaDefinitionException(
                    "enum must be a non-empty list", pointer=pointer
                )
            enum = tuple(schema["enum"])
            if None in enum:
                nullable = True
                enum = tuple(option for option in enum if option is not None)

        fields: tuple[FieldSpec, ...] = ()
        additional_properties = True
        if kind is SchemaKind.OBJECT:
            fields = self._compile_fields(schema, pointer, ref_stack)
            additional_properties = schema.get("additionalProperties", True) is not False

        items: SchemaNode | None = None
        if kind is SchemaKind.ARRAY and "items" in schema:
            items = self.compile(schema["items"], f"{pointer}/items", ref_stack)

        minimum = _number(schema, "minimum", pointer)
        maximum = _number(schema, "maximum", pointer)
        exclusive_minimum = _exclusive_bound(schema, "exclusiveMinimum", pointer)
        exclusive_maximum = _exclusive_bound(schema, "exclusiveMaximum", pointer)
        # Draft 4 spells exclusive bounds as booleans next to minimum/maximum
        if schema.get("exclusiveMinimum") is True:
            exclusive_minimum, minimum = minimum, None
        if schema.get("exclusiveMaximum") is True:
            exclusive_maximum, maximum = maximum, None

        return SchemaNode(
            kind=kind,
            nullable=nullable,
            enum=enum,
            minimum=minimum,
            maximum=maximum,
            exclusive_minimum=exclusive_minimum,
            exclusive_maximum=exclusive_maximum,
            min_length=_count(schema, "minLength", pointer),
            max_length=_count(schema, "maxLength", pointer),
            min_items=_count(schema, "minItems", pointer),
            max_items=_count(schema, "maxItems", pointer),
            fields=fields,
            items=items,
            additional_properties=additional_properties,
            description=schema.get("description"),
            title=schema.get("title"),
        )

    def _compile_union(
        self,
        schema: dict[str, Any],
        keyword: str,
        pointer: str,
        ref_stack: tuple[str, ...],
    ) -> SchemaNode:
        options = schema[keyword]
        if not isinstance(options, list) or not options:
            raise SchemaDefinitionException(
                f"{keyword} must be a non-empty list", pointer=pointer
            )
        non_null = [
            (index, option)
            for index, option in enumerate(options)
            if not (isinstance(option, dict) and option.get("type") == "null")
        ]
        if len(non_null) == 1:
            index, option = non_null[0]
            node = self.compile(option, f"{pointer}/{keyword}/{index}", ref_stack)
            node = _replace(node, nullable=len(options) > 1 or node.nullable)
            return _with_annotations(node, schema)

        # General unions are left to the typed model for checking
        return SchemaNode(
            kind=SchemaKind.ANY,
            description=schema.get("description"),
            title=schema.get("title"),
        )

    def _compile_fields(
        self, schema: dict[str, Any], pointer: str, ref_stack: tuple[str, ...]
    ) -> tuple[FieldSpec, ...]:
        properties = schema.get("properties", {})
        required = schema.get("required", [])
        if not isinstance(properties, dict):
            raise SchemaDefinitionException(
                "properties must be an object", pointer=pointer
            )
        if not isinstance(required, list) or not all(
            isinstance(name, str) for name in required
        ):
            raise SchemaDefinitionException(
                "required must be a list of field names", pointer=pointer
            )

        fields = [
            FieldSpec(
                name=name,
                node=self.compile(
                    field_schema, f"{pointer}/properties/{name}", ref_stack
                ),
                required=name in required,
            )
            for name, field_schema in properties.items()
        ]
        # Required names without a declaration accept any value
        for name in required:
            if name not in properties:
                fields.append(
                    FieldSpec(name=name, node=SchemaNode(kind=SchemaKind.ANY), required=True)
                )
        return tuple(fields)

    def _resolve_type(
        self, schema: dict[str, Any], pointer: str
    ) -> tuple[SchemaKind, bool]:
        declared = schema.get("type")
        if declared is None:
            if "properties" in schema or "required" in schema:
                return SchemaKind.OBJECT, False
            if "items" in schema:
                return SchemaKind.ARRAY, False
            return SchemaKind.ANY, False

        names = declared if isinstance(declared, list) else [declared]
        nullable = "null" in names and len(names) > 1
        names = [name for name in names if name != "null"] or ["null"]
        if len(names) > 1:
            return SchemaKind.ANY, nullable

        try:
            return SchemaKind(names[0]), nullable
        except ValueError:
            raise SchemaDefinitionException(
                f"Unsupported schema type '{names[0]}'", pointer=pointer
            ) from None

    def _resolve_ref(self, ref: Any, pointer: str) -> Any:
        if not isinstance(ref, str) or not ref.startswith("#/"):
            raise SchemaDefinitionException(
                f"Only local $ref values are supported, got {ref!r}", pointer=pointer
            )
        target: Any = self._root
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(target, dict) or part not in target:
                raise SchemaDefinitionException(
                    f"Unresolvable $ref '{ref}'", pointer=pointer
                )
            target = target[part]
        return target


def _with_annotations(node: SchemaNode, schema: dict[str, Any]) -> SchemaNode:
    """Carry description/title declared next to a ``$ref`` or combinator."""
    description = schema.get("description", node.description)
    title = schema.get("title", node.title)
    if description == node.description and title == node.title:
        return node
    return _replace(node, description=description, title=title)


def _replace(node: SchemaNode, **changes: Any) -> SchemaNode:
    values = {name: getattr(node, name) for name in node.__dataclass_fields__}
    values.update(changes)
    return SchemaNode(**values)


def _number(schema: dict[str, Any], key: str, pointer: str) -> float | None:
    value = schema.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaDefinitionException(f"{key} must be a number", pointer=pointer)
    return value


def _exclusive_bound(schema: dict[str, Any], key: str, pointer: str) -> float | None:
    if isinstance(schema.get(key), bool):
        return None
    return _number(schema, key, pointer)


def _count(schema: dict[str, Any], key: str, pointer: str) -> int | None:
    value = schema.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise SchemaDefinitionException(
            f"{key} must be a non-negative integer", pointer=pointer
        )
    return value


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def _literal(value: Any) -> str:
    return json.dumps(value, default=str)


def _describe(node: SchemaNode, depth: int) -> list[str]:
    pad = "  " * depth
    if node.kind is SchemaKind.OBJECT and node.fields:
        lines = [f"{node.expected()} with fields:"]
        for spec in node.fields:
            nested = _describe(spec.node, depth + 1)
            label = "required" if spec.required else "optional"
            line = f'{pad}  - "{spec.name}" ({label}): {nested[0]}'
            if spec.node.description:
                line += f" ({spec.node.description})"
            lines.append(line)
            lines.extend(nested[1:])
        if not node.additional_properties:
            lines.append(f"{pad}  (no other fields allowed)")
        return lines

    items = node.items
    if node.kind is SchemaKind.ARRAY and items is not None and items.fields:
        nested = _describe(items, depth)
        return [f"{node.expected()}, each item an {nested[0]}", *nested[1:]]

    return [node.expected()]
