"""Schema Compatibility Checking.

Provides structural subtyping between JSON Schemas:
- Four-way comparison (equal, supertype, subtype, incompatible)
- A pluggable oracle interface
- A conservative default implementation for pydantic-emitted schemas

"A is a subtype of B" means every instance valid under A is valid under B.
The default checker only answers "subtype" when it can prove it; anything
it does not understand counts as not a subtype.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from jsonschema import Draft202012Validator

from src.core.errors import SchemaDecisionError
from src.core.schema_registry.schema import ANNOTATION_KEYWORDS, JSONSchemaParser, Schema

logger = logging.getLogger(__name__)


class TypesIdentity(Enum):
    """Result of comparing schema A against schema B."""
    EQUAL = "equal"
    SUPERTYPE = "supertype"        # A is a supertype of B
    SUBTYPE = "subtype"            # A is a subtype of B
    INCOMPATIBLE = "incompatible"


class CompatibilityOracle(ABC):
    """Decides how two schemas relate."""

    @abstractmethod
    def compare(self, a: Schema, b: Schema) -> TypesIdentity:
        """Compare ``a`` against ``b``; raises ``SchemaDecisionError`` on malformed input."""
        pass


_LOWER_BOUNDS = ("minimum", "exclusiveMinimum", "minLength", "minItems", "minProperties")
_UPPER_BOUNDS = ("maximum", "exclusiveMaximum", "maxLength", "maxItems", "maxProperties")
_UNION_KEYWORDS = ("anyOf", "oneOf")
_HANDLED = frozenset({
    "type",
    "enum",
    "const",
    "anyOf",
    "oneOf",
    "allOf",
    "properties",
    "required",
    "additionalProperties",
    "items",
    "prefixItems",
    *_LOWER_BOUNDS,
    *_UPPER_BOUNDS,
})
# Object keywords whose interplay with additionalProperties is not modelled
_OPEN_OBJECT_KEYWORDS = ("patternProperties", "unevaluatedProperties", "dependentSchemas")
_ALL_TYPES = ("null", "boolean", "object", "array", "number", "string", "integer")


class JSONSchemaSubtypeOracle(CompatibilityOracle):
    """Structural subtype checker for the JSON Schema subset pydantic emits."""

    def __init__(self, parser: Optional[JSONSchemaParser] = None):
        self.parser = parser or JSONSchemaParser()

    def compare(self, a: Schema, b: Schema) -> TypesIdentity:
        doc_a = self._load(a)
        doc_b = self._load(b)
        if doc_a == doc_b:
            return TypesIdentity.EQUAL

        a_in_b = self.is_subschema(doc_a, doc_b)
        b_in_a = self.is_subschema(doc_b, doc_a)

        if a_in_b and b_in_a:
            return TypesIdentity.EQUAL
        if b_in_a:
            return TypesIdentity.SUPERTYPE
        if a_in_b:
            return TypesIdentity.SUBTYPE
        return TypesIdentity.INCOMPATIBLE

    def _load(self, schema: Schema) -> Any:
        errors = self.parser.validate(schema.schema_str)
        if errors:
            raise SchemaDecisionError(f"Can not decide on schema: {'; '.join(errors)}")
        return schema.parse()

    def is_subschema(self, sub: Any, sup: Any) -> bool:
        """True when every instance valid under ``sub`` is valid under ``sup``."""
        sub = _strip_annotations(sub)
        sup = _strip_annotations(sup)

        if sup is True or sup == {}:
            return True
        if sub is False:
            return True
        if sup is False:
            return False
        if sub is True or sub == {}:
            return False
        if sub == sup:
            return True

        if "allOf" in sup:
            rest = {k: v for k, v in sup.items() if k != "allOf"}
            branches = list(sup["allOf"]) + ([rest] if rest else [])
            return all(self.is_subschema(sub, branch) for branch in branches)
        if "allOf" in sub:
            rest = {k: v for k, v in sub.items() if k != "allOf"}
            parts = ([rest] if rest else []) + list(sub["allOf"])
            merged = _merge_all(parts)
            if merged is None:
                # A conjunction fits when any one of its parts does
                return any(self.is_subschema(part, sup) for part in parts)
            return self.is_subschema(merged, sup)

        # Every alternative of a union subtype must fit
        union = _union_key(sub)
        if union is not None:
            rest = {k: v for k, v in sub.items() if k != union}
            return all(self._conjunction_sub(rest, branch, sup) for branch in sub[union])

        values = self._finite_values(sub)
        if values is not None:
            validator = Draft202012Validator(sup)
            return all(validator.is_valid(v) for v in values)

        sub_types = _types(sub)
        if sub_types is not None and len(sub_types) > 1:
            return all(
                self.is_subschema({**sub, "type": t}, sup) for t in sorted(sub_types)
            )

        union = _union_key(sup)
        if union is not None:
            rest = {k: v for k, v in sup.items() if k != union}
            if rest and not self.is_subschema(sub, rest):
                return False
            return any(self.is_subschema(sub, branch) for branch in sup[union])

        if "enum" in sup or "const" in sup:
            return False

        return self._same_kind(sub, sup, sub_types)

    def _conjunction_sub(self, base: Dict[str, Any], branch: Any, sup: Any) -> bool:
        merged = _merge(base, branch)
        if merged is None:
            return self.is_subschema(base, sup) or self.is_subschema(branch, sup)
        return self.is_subschema(merged, sup)

    def _finite_values(self, schema: Dict[str, Any]) -> Optional[List[Any]]:
        if "const" in schema:
            return [schema["const"]]
        if "enum" in schema:
            return list(schema["enum"])
        types = _types(schema)
        if types is not None and types <= {"null", "boolean"} and len(schema) == 1:
            values: List[Any] = []
            if "null" in types:
                values.append(None)
            if "boolean" in types:
                values.extend([True, False])
            return values
        return None

    def _same_kind(
        self, sub: Dict[str, Any], sup: Dict[str, Any], sub_types: Optional[Set[str]]
    ) -> bool:
        sup_types = _types(sup)
        if sup_types is not None:
            if sub_types is None:
                return False
            for t in sub_types:
                if t not in sup_types and not (t == "integer" and "number" in sup_types):
                    return False

        # Unknown keywords in the supertype must be matched exactly
        for key, value in sup.items():
            if key not in _HANDLED and sub.get(key) != value:
                logger.debug("Keyword %s not provably narrower in subtype", key)
                return False

        if not _bounds_narrower(sub, sup):
            return False

        kinds = sub_types if sub_types is not None else set(_ALL_TYPES)
        if "object" in kinds and not self._object_sub(sub, sup):
            return False
        if "array" in kinds and not self._array_sub(sub, sup):
            return False
        return True

    def _object_sub(self, sub: Dict[str, Any], sup: Dict[str, Any]) -> bool:
        if any(key in sub for key in _OPEN_OBJECT_KEYWORDS):
            logger.debug("Subtype object keywords not modelled: %s", sorted(sub))
            return False
        if not set(sup.get("required", [])) <= set(sub.get("required", [])):
            return False

        sub_props = sub.get("properties", {})
        sup_props = sup.get("properties", {})
        sub_extra = sub.get("additionalProperties", True)
        sup_extra = sup.get("additionalProperties", True)

        for name, sup_prop in sup_props.items():
            if not self.is_subschema(sub_props.get(name, sub_extra), sup_prop):
                return False
        for name, sub_prop in sub_props.items():
            if name not in sup_props and not self.is_subschema(sub_prop, sup_extra):
                return False
        return self.is_subschema(sub_extra, sup_extra)

    def _array_sub(self, sub: Dict[str, Any], sup: Dict[str, Any]) -> bool:
        sub_items = sub.get("items", True)
        sup_items = sup.get("items", True)
        sub_prefix = sub.get("prefixItems", [])
        sup_prefix = sup.get("prefixItems", [])

        for i in range(max(len(sub_prefix), len(sup_prefix))):
            sub_item = sub_prefix[i] if i < len(sub_prefix) else sub_items
            sup_item = sup_prefix[i] if i < len(sup_prefix) else sup_items
            if not self.is_subschema(sub_item, sup_item):
                return False
        return self.is_subschema(sub_items, sup_items)


def _strip_annotations(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: v for k, v in schema.items() if k not in ANNOTATION_KEYWORDS}
    return schema


def _types(schema: Dict[str, Any]) -> Optional[Set[str]]:
    declared = schema.get("type")
    if declared is None:
        return None
    if isinstance(declared, str):
        return {declared}
    return set(declared)


def _union_key(schema: Dict[str, Any]) -> Optional[str]:
    for key in _UNION_KEYWORDS:
        if key in schema:
            return key
    return None


def _merge(base: Any, branch: Any) -> Any:
    """Flatten ``base AND branch`` into one schema; None when their keywords collide."""
    if isinstance(base, bool):
        return branch if base else False
    if isinstance(branch, bool):
        return base if branch else False
    if not base:
        return branch
    if set(base) & set(branch):
        return None
    return {**base, **branch}


def _merge_all(parts: List[Any]) -> Any:
    merged: Any = {}
    for part in parts:
        merged = _merge(merged, part)
        if merged is None:
            return None
    return merged


def _bounds_narrower(sub: Dict[str, Any], sup: Dict[str, Any]) -> bool:
    for key in _LOWER_BOUNDS:
        if key in sup and (key not in sub or sub[key] < sup[key]):
            return False
    for key in _UPPER_BOUNDS:
        if key in sup and (key not in sub or sub[key] > sup[key]):
            return False
    return True


_default_oracle: Optional[CompatibilityOracle] = None


def get_compatibility_oracle() -> CompatibilityOracle:
    """Get the process-wide default oracle."""
    global _default_oracle
    if _default_oracle is None:
        _default_oracle = JSONSchemaSubtypeOracle()
    return _default_oracle
