"""Schema Definition and Derivation.

Provides:
- An immutable ``Schema`` value carried as exchange metadata
- Canonical JSON Schema derivation from a declared shape
- JSON encode/decode of payloads against that shape
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import TypeAdapter

T = TypeVar("T")

# Keywords that never change which instances validate
ANNOTATION_KEYWORDS = frozenset({
    "title",
    "description",
    "examples",
    "default",
    "deprecated",
    "readOnly",
    "writeOnly",
    "$comment",
})

# Keywords whose value is a map of name -> subschema
_SCHEMA_MAP_KEYWORDS = frozenset({"properties", "patternProperties", "dependentSchemas"})
# Keywords whose value is a single subschema
_SCHEMA_KEYWORDS = frozenset({
    "items",
    "additionalProperties",
    "additionalItems",
    "not",
    "contains",
    "propertyNames",
    "if",
    "then",
    "else",
    "unevaluatedProperties",
    "unevaluatedItems",
})
# Keywords whose value is a list of subschemas
_SCHEMA_LIST_KEYWORDS = frozenset({"anyOf", "oneOf", "allOf", "prefixItems"})


@dataclass(frozen=True)
class Schema:
    """A structural schema in canonical serialized form.

    Two schemas are only comparable through a compatibility oracle; the
    string is what gets stamped on an exchange.
    """

    schema_str: str

    @property
    def fingerprint(self) -> str:
        """Get schema fingerprint (hash)."""
        return hashlib.sha256(self.schema_str.encode()).hexdigest()

    def parse(self) -> Any:
        return json.loads(self.schema_str)

    @classmethod
    def from_stamp(cls, stamp: str) -> "Schema":
        """Wrap a stamp read from the broker as-is."""
        return cls(schema_str=stamp)

    def __str__(self) -> str:
        return self.schema_str


class JSONSchemaParser:
    """Normalizes pydantic-emitted JSON Schema documents."""

    def validate(self, schema_str: str) -> List[str]:
        """Validate schema syntax. Returns list of errors."""
        try:
            schema = json.loads(schema_str)
        except json.JSONDecodeError as e:
            return [f"Invalid JSON: {e}"]
        if not isinstance(schema, (dict, bool)):
            return ["Schema must be an object or a boolean"]
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            return [f"Not a valid JSON Schema: {e.message}"]
        return []

    def normalize(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Inline ``$ref``s and drop annotation keywords."""
        defs = document.get("$defs", {})
        return self._strip(document, defs, ())

    def _strip(self, node: Any, defs: Dict[str, Any], stack: tuple) -> Any:
        if not isinstance(node, dict):
            return node

        ref = node.get("$ref")
        if ref is not None:
            name = _ref_name(ref)
            if name in stack:
                raise ValueError(f"Recursive shape cannot be inlined: {name}")
            if name not in defs:
                raise ValueError(f"Unresolvable schema reference: {ref}")
            resolved = self._strip(defs[name], defs, stack + (name,))
            siblings = {k: v for k, v in node.items() if k != "$ref"}
            if not siblings:
                return resolved
            return {**resolved, **self._strip(siblings, defs, stack)}

        out: Dict[str, Any] = {}
        for key, value in node.items():
            if key in ANNOTATION_KEYWORDS or key == "$defs":
                continue
            if key in _SCHEMA_MAP_KEYWORDS and isinstance(value, dict):
                out[key] = {name: self._strip(sub, defs, stack) for name, sub in value.items()}
            elif key in _SCHEMA_KEYWORDS:
                out[key] = self._strip(value, defs, stack)
            elif key in _SCHEMA_LIST_KEYWORDS and isinstance(value, list):
                out[key] = [self._strip(sub, defs, stack) for sub in value]
            else:
                out[key] = value
        return out

    def canonical(self, document: Any) -> str:
        return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _ref_name(ref: str) -> str:
    prefix = "#/$defs/"
    if not ref.startswith(prefix):
        raise ValueError(f"Only local $defs references are supported: {ref}")
    return ref[len(prefix):]


_parser = JSONSchemaParser()


@lru_cache(maxsize=None)
def _adapter(shape: Any) -> TypeAdapter:
    return TypeAdapter(shape)


def derive(shape: Any) -> Schema:
    """Derive the canonical schema of a declared shape.

    Deterministic for a given shape. Shapes pydantic cannot describe are a
    programming error and raise from pydantic itself.
    """
    document = _adapter(shape).json_schema()
    return Schema(schema_str=_parser.canonical(_parser.normalize(document)))


class ShapeCodec(Generic[T]):
    """Encodes and decodes JSON payloads for one declared shape."""

    def __init__(self, shape: Type[T]):
        self.shape = shape
        self._adapter = _adapter(shape)
        self._schema: Optional[Schema] = None

    @property
    def schema(self) -> Schema:
        if self._schema is None:
            self._schema = derive(self.shape)
        return self._schema

    def decode(self, body: bytes) -> T:
        """Raises ``pydantic.ValidationError`` when the payload does not fit."""
        return self._adapter.validate_json(body)

    def encode(self, value: Any) -> bytes:
        """Validates ``value`` against the shape first so plain dicts are accepted."""
        return self._adapter.dump_json(self._adapter.validate_python(value))
