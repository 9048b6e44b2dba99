"""Resource type schemas."""

from .registry import (
    PropertySchema,
    ResourceSchema,
    SchemaRegistry,
    ValueType,
    default_registry,
)

__all__ = [
    "PropertySchema",
    "ResourceSchema",
    "SchemaRegistry",
    "ValueType",
    "default_registry",
]
