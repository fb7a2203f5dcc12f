"""
Schema Translator: tool descriptors to agent tool definitions, and
structural validation of model-produced arguments.

Translation normalizes a tool's JSON Schema into a closed, self-contained
parameters object: local $refs are inlined, allOf object branches merged,
and nesting is bounded by `max_depth` (recursive schemas are unrolled until
they hit the bound, then rejected). Constructs an agent framework cannot
express raise UnsupportedSchemaShape instead of being guessed at.

Validation compiles the normalized schema into a pydantic model once per
schema hash and checks type, shape and required fields before any network
call. It never looks at what the values mean to the downstream API.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from mcp_adapter.errors import ArgumentValidationError, UnsupportedSchemaShape
from mcp_adapter.registry import ToolDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 8

# Structural keywords no agent tool format can express
UNSUPPORTED_KEYWORDS = frozenset({
    "not", "if", "then", "else",
    "dependentSchemas", "patternProperties", "prefixItems",
    "unevaluatedProperties", "unevaluatedItems",
    "$dynamicRef", "$recursiveRef",
})

# Dropped from the output; resolved or meaningless once refs are inlined
_META_KEYWORDS = frozenset({"$schema", "$id", "$comment", "$defs", "definitions", "$anchor"})

# Strict: "5" is not an integer and 1 is not a string
_PRIMITIVES: dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
    "null": type(None),
}

_COHERE_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


@dataclass(frozen=True)
class AgentToolDefinition:
    """A tool as the model sees it: name, description, JSON-Schema parameters."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_openai(self) -> dict[str, Any]:
        """OpenAI function-calling tool entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        """Anthropic tool-use tool entry."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    def to_cohere(self) -> dict[str, Any]:
        """Cohere tool entry with flat `parameter_definitions`.

        Nullable type lists collapse to their first non-null type; anything
        Cohere has no name for is sent as a string.
        """
        required = set(self.parameters.get("required") or [])
        definitions = {}
        for name, schema in (self.parameters.get("properties") or {}).items():
            definitions[name] = {
                "description": schema.get("description", ""),
                "type": _cohere_type(schema.get("type")),
                "required": name in required,
            }
        return {
            "name": self.name,
            "description": self.description,
            "parameter_definitions": definitions,
        }


def _cohere_type(declared: Any) -> str:
    if isinstance(declared, list):
        declared = next((t for t in declared if t != "null"), "string")
    return declared if isinstance(declared, str) and declared in _COHERE_TYPES else "string"


class SchemaTranslator:
    """Translate descriptors and validate arguments against their schemas."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.max_depth = max_depth
        self._models: dict[tuple[str, int], type[BaseModel]] = {}

    # ── Translation ────────────────────────────────────────

    def normalize(self, schema: dict[str, Any]) -> dict[str, Any]:
        """Return the self-contained parameters object for an input schema."""
        if not isinstance(schema, dict):
            raise UnsupportedSchemaShape("$", "input schema is not an object")
        root = copy.deepcopy(schema)
        normalized = _Normalizer(root, self.max_depth).walk(root, "$", depth=1)

        declared = normalized.get("type", "object")
        if declared != "object":
            raise UnsupportedSchemaShape("$", f"tool parameters must be an object, not {declared!r}")
        normalized["type"] = "object"
        normalized.setdefault("properties", {})
        return normalized

    def to_agent_definition(
        self,
        descriptor: ToolDescriptor,
        hidden: Iterable[str] = (),
    ) -> AgentToolDefinition:
        """Map a descriptor to the agent-facing definition.

        Args:
            descriptor: The discovered tool.
            hidden: Argument names the adapter supplies itself (secure
                    values); they are removed from the model-visible schema.
        """
        parameters = self.normalize(descriptor.input_schema)
        hidden = set(hidden)
        if hidden:
            parameters["properties"] = {
                k: v for k, v in parameters["properties"].items() if k not in hidden
            }
            if "required" in parameters:
                parameters["required"] = [r for r in parameters["required"] if r not in hidden]

        return AgentToolDefinition(
            name=descriptor.name,
            description=descriptor.description or f"MCP tool: {descriptor.server_id}/{descriptor.remote_name}",
            parameters=parameters,
        )

    # ── Validation ─────────────────────────────────────────

    def model_for(self, descriptor: ToolDescriptor) -> type[BaseModel]:
        """The compiled argument model for a descriptor's current schema."""
        key = (descriptor.schema_hash, self.max_depth)
        model = self._models.get(key)
        if model is None:
            normalized = self.normalize(descriptor.input_schema)
            model = _object_model(descriptor.name, normalized)
            self._models[key] = model
        return model

    def validate_arguments(self, descriptor: ToolDescriptor, arguments: Any) -> dict[str, Any]:
        """Check arguments structurally and return the coerced payload.

        Raises:
            ArgumentValidationError: first offending path and reason.
            UnsupportedSchemaShape: the schema itself cannot be compiled.
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ArgumentValidationError("$", f"arguments must be an object, got {type(arguments).__name__}")

        model = self.model_for(descriptor)
        try:
            instance = model.model_validate(arguments)
        except ValidationError as exc:
            errors = exc.errors(include_url=False)
            first = errors[0]
            raise ArgumentValidationError(
                path=_render_loc(first.get("loc", ())),
                reason=first.get("msg", "invalid value"),
                errors=[{"path": _render_loc(e.get("loc", ())), "reason": e.get("msg")} for e in errors],
            ) from exc
        payload = instance.model_dump(mode="json", by_alias=True, exclude_unset=True)
        # Top-level keys outside the schema pass through as given
        payload.update(instance.model_extra or {})
        return payload


class _Normalizer:
    """Single-use walker that inlines refs and enforces the depth bound."""

    def __init__(self, root: dict[str, Any], max_depth: int):
        self.root = root
        self.max_depth = max_depth

    def walk(self, node: Any, path: str, depth: int, refs: tuple[str, ...] = ()) -> dict[str, Any]:
        if node is True:
            return {}
        if not isinstance(node, dict):
            raise UnsupportedSchemaShape(path, f"schema must be an object, got {node!r}")
        if depth > self.max_depth:
            raise UnsupportedSchemaShape(path, f"nesting deeper than {self.max_depth} levels")

        unsupported = UNSUPPORTED_KEYWORDS.intersection(node)
        if unsupported:
            raise UnsupportedSchemaShape(path, f"unsupported keyword(s) {sorted(unsupported)}")

        if "$ref" in node:
            ref = node["$ref"]
            # refs already followed at this depth without descending: a cycle
            if ref in refs:
                raise UnsupportedSchemaShape(path, f"circular $ref {ref!r}")
            target = self._resolve(ref, path)
            siblings = {k: v for k, v in node.items() if k != "$ref"}
            return self.walk({**target, **siblings}, path, depth, refs + (ref,))

        if "allOf" in node:
            return self.walk(self._merge_all_of(node, path), path, depth, refs)

        out: dict[str, Any] = {}
        for key, value in node.items():
            if key in _META_KEYWORDS:
                continue
            if key == "properties":
                if not isinstance(value, dict):
                    raise UnsupportedSchemaShape(path, "properties must be an object")
                out[key] = {
                    name: self.walk(sub, f"{path}.{name}", depth + 1)
                    for name, sub in value.items()
                }
            elif key == "items":
                if isinstance(value, list):
                    raise UnsupportedSchemaShape(path, "tuple-form items")
                out[key] = self.walk(value, f"{path}[]", depth + 1)
            elif key == "additionalProperties" and isinstance(value, dict):
                out[key] = self.walk(value, f"{path}.*", depth + 1)
            elif key in ("anyOf", "oneOf"):
                if not isinstance(value, list) or not value:
                    raise UnsupportedSchemaShape(path, f"{key} must be a non-empty list")
                out[key] = [
                    self.walk(branch, f"{path}<{key}{i}>", depth, refs)
                    for i, branch in enumerate(value)
                ]
            elif key == "required":
                out[key] = _required_names(value, path)
            elif key == "type":
                types = value if isinstance(value, list) else [value]
                bad = [t for t in types if t not in _PRIMITIVES and t not in ("object", "array")]
                if bad:
                    raise UnsupportedSchemaShape(path, f"unknown type(s) {bad}")
                out[key] = value
            else:
                out[key] = value
        return out

    def _resolve(self, ref: Any, path: str) -> dict[str, Any]:
        if not isinstance(ref, str) or not ref.startswith("#"):
            raise UnsupportedSchemaShape(path, f"only local $refs are supported, got {ref!r}")
        node: Any = self.root
        for part in ref[1:].split("/"):
            if not part:
                continue
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, dict) or part not in node:
                raise UnsupportedSchemaShape(path, f"unresolvable $ref {ref!r}")
            node = node[part]
        if node is True:
            return {}
        if not isinstance(node, dict):
            raise UnsupportedSchemaShape(path, f"$ref {ref!r} does not point at a schema")
        return node

    def _merge_all_of(self, node: dict[str, Any], path: str) -> dict[str, Any]:
        branches = node["allOf"]
        if not isinstance(branches, list):
            raise UnsupportedSchemaShape(path, "allOf must be a list")
        merged: dict[str, Any] = {k: v for k, v in node.items() if k != "allOf"}
        properties = dict(merged.get("properties") or {})
        required = _required_names(merged.get("required") or [], path)

        for i, branch in enumerate(branches):
            if isinstance(branch, dict) and "$ref" in branch:
                branch = {**self._resolve(branch["$ref"], path), **{k: v for k, v in branch.items() if k != "$ref"}}
            if not isinstance(branch, dict) or branch.get("type", "object") != "object" or "allOf" in branch:
                raise UnsupportedSchemaShape(f"{path}<allOf{i}>", "allOf is only supported over object schemas")
            properties.update(branch.get("properties") or {})
            branch_required = _required_names(branch.get("required") or [], f"{path}<allOf{i}>")
            required.extend(r for r in branch_required if r not in required)
            for key, value in branch.items():
                if key not in ("properties", "required", "type"):
                    merged.setdefault(key, value)

        merged["type"] = "object"
        merged["properties"] = properties
        if required:
            merged["required"] = required
        return merged


def _required_names(value: Any, path: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
        raise UnsupportedSchemaShape(path, f"required must be a list of property names, got {value!r}")
    return list(value)


# ── pydantic model compilation ──────────────────────────────

def _model_name(name: str) -> str:
    return "Args_" + re.sub(r"\W", "_", name)


def _field_name(index: int, prop: str) -> str:
    # Positional prefix keeps identifiers valid and clear of BaseModel attributes
    return f"f{index}_" + re.sub(r"\W", "_", prop)


def _render_loc(loc: Iterable[Any]) -> str:
    path = "$"
    for part in loc:
        path += f"[{part}]" if isinstance(part, int) else f".{part}"
    return path


def _literal(values: list[Any]) -> Any:
    if any(isinstance(v, (dict, list)) for v in values):
        return Any
    return Literal[tuple(values)]


def _python_type(schema: dict[str, Any], name: str) -> Any:
    if "const" in schema:
        return _literal([schema["const"]])
    if "enum" in schema and isinstance(schema["enum"], list) and schema["enum"]:
        return _literal(schema["enum"])

    for key in ("anyOf", "oneOf"):
        if key in schema:
            members = tuple(_python_type(b, f"{name}_{i}") for i, b in enumerate(schema[key]))
            return _nullable(schema, Union[members] if len(members) > 1 else members[0])

    declared = schema.get("type")
    if isinstance(declared, list):
        members = tuple(_python_type({**schema, "type": t}, f"{name}_{t}") for t in declared)
        return Union[members] if len(members) > 1 else members[0]

    if declared is None:
        if "properties" in schema:
            declared = "object"
        elif "items" in schema:
            declared = "array"
        else:
            return Any

    if declared == "object":
        py_type: Any
        if schema.get("properties"):
            py_type = _object_model(name, schema)
        else:
            extra = schema.get("additionalProperties")
            value_type = _python_type(extra, f"{name}_value") if isinstance(extra, dict) else Any
            py_type = dict[str, value_type]
    elif declared == "array":
        items = schema.get("items")
        item_type = _python_type(items, f"{name}_item") if isinstance(items, dict) else Any
        py_type = list[item_type]
    else:
        py_type = _PRIMITIVES[declared]
    return _nullable(schema, py_type)


def _nullable(schema: dict[str, Any], py_type: Any) -> Any:
    return Optional[py_type] if schema.get("nullable") is True else py_type


def _object_model(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    for index, (prop, sub) in enumerate((schema.get("properties") or {}).items()):
        py_type = _python_type(sub, f"{name}_{prop}")
        description = sub.get("description") if isinstance(sub, dict) else None
        if prop in required:
            fields[_field_name(index, prop)] = (py_type, Field(..., alias=prop, description=description))
        else:
            # Defaults are not validated, so an explicit null is still rejected
            fields[_field_name(index, prop)] = (py_type, Field(default=None, alias=prop, description=description))

    missing = required - set((schema.get("properties") or {}))
    for index, prop in enumerate(sorted(missing), start=len(fields)):
        fields[_field_name(index, prop)] = (Any, Field(..., alias=prop))

    extra = "forbid" if schema.get("additionalProperties") is False else "allow"
    return create_model(
        _model_name(name),
        __config__=ConfigDict(extra=extra),
        **fields,
    )
