"""Schema Registry Module.

Provides schema capabilities for typed exchanges:
- Canonical schema derivation from declared shapes
- Payload encode/decode against a shape
- Structural compatibility checking
"""

from src.core.schema_registry.schema import (
    Schema,
    JSONSchemaParser,
    ShapeCodec,
    derive,
)
from src.core.schema_registry.compatibility import (
    TypesIdentity,
    CompatibilityOracle,
    JSONSchemaSubtypeOracle,
    get_compatibility_oracle,
)

__all__ = [
    # Schema
    "Schema",
    "JSONSchemaParser",
    "ShapeCodec",
    "derive",
    # Compatibility
    "TypesIdentity",
    "CompatibilityOracle",
    "JSONSchemaSubtypeOracle",
    "get_compatibility_oracle",
]
