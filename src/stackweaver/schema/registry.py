"""Resource schema registry: property types and replacement rules per resource type."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from stackweaver.orchestrator.models import Interpolation, Reference
from stackweaver.utils.errors import UnknownTypeError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


class ValueType(Enum):
    """Value type of a schema property."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    MAP = "map"
    ANY = "any"


@dataclass(frozen=True)
class PropertySchema:
    """Schema of one top-level resource property."""

    name: str
    value_type: ValueType = ValueType.STRING
    required: bool = False
    replace_on_change: bool = False


def _matches(value: Any, value_type: ValueType) -> bool:
    if value_type == ValueType.ANY:
        return True
    # Reference values are strings once resolved (IDs, ARNs, names)
    if isinstance(value, (Reference, Interpolation)):
        return value_type == ValueType.STRING
    if value_type == ValueType.STRING:
        return isinstance(value, str) or (
            isinstance(value, (int, float)) and not isinstance(value, bool)
        )
    if value_type == ValueType.NUMBER:
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float)):
            return True
        if isinstance(value, str):
            try:
                float(value)
                return True
            except ValueError:
                return False
        return False
    if value_type == ValueType.BOOLEAN:
        return isinstance(value, bool) or (
            isinstance(value, str) and value.lower() in ("true", "false")
        )
    if value_type == ValueType.LIST:
        return isinstance(value, (list, tuple))
    if value_type == ValueType.MAP:
        return isinstance(value, dict)
    return False


@dataclass(frozen=True)
class ResourceSchema:
    """Schema of a resource type."""

    type_name: str
    properties: Tuple[PropertySchema, ...] = ()
    attributes: Tuple[str, ...] = ()
    allow_unknown_properties: bool = False
    _by_name: Dict[str, PropertySchema] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        self._by_name.update({prop.name: prop for prop in self.properties})

    def get_property(self, name: str) -> Optional[PropertySchema]:
        return self._by_name.get(name)

    def requires_replacement(self, name: str) -> bool:
        """Whether changing the given top-level property forces replacement."""
        prop = self._by_name.get(name)
        return bool(prop and prop.replace_on_change)

    def has_attribute(self, attribute: str) -> bool:
        return attribute in self.attributes

    def validate(self, properties: Dict[str, Any]) -> List[str]:
        """Check a property mapping against the schema.

        Returns:
            Human-readable problems; empty when the mapping is valid
        """
        problems = []
        for prop in self.properties:
            if prop.required and properties.get(prop.name) is None:
                problems.append(f"missing required property '{prop.name}'")

        for name, value in properties.items():
            prop = self._by_name.get(name)
            if prop is None:
                if not self.allow_unknown_properties:
                    problems.append(f"unknown property '{name}'")
                continue
            if value is not None and not _matches(value, prop.value_type):
                problems.append(
                    f"property '{name}' must be of type {prop.value_type.value}, "
                    f"got {type(value).__name__}"
                )
        return problems


class SchemaRegistry:
    """Lookup table from type names to schemas. Read-only once frozen."""

    def __init__(self, schemas: Iterable[ResourceSchema] = ()):
        self._schemas: Dict[str, ResourceSchema] = {}
        self._frozen = False
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ResourceSchema) -> None:
        if self._frozen:
            raise RuntimeError("Schema registry is frozen")
        self._schemas[schema.type_name] = schema

    def freeze(self) -> "SchemaRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, type_name: str) -> ResourceSchema:
        """Get the schema for a resource type.

        Raises:
            UnknownTypeError: If no schema is registered for the type
        """
        schema = self._schemas.get(type_name)
        if schema is None:
            raise UnknownTypeError(type_name)
        return schema

    def has_type(self, type_name: str) -> bool:
        return type_name in self._schemas

    def type_names(self) -> List[str]:
        return sorted(self._schemas)


_default_registry: Optional[SchemaRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> SchemaRegistry:
    """Process-wide registry of built-in schemas, built on first use."""
    global _default_registry
    if _default_registry is None:
        with _default_lock:
            if _default_registry is None:
                from stackweaver.schema.builtin import BUILTIN_SCHEMAS
                _default_registry = SchemaRegistry(BUILTIN_SCHEMAS).freeze()
                logger.debug(f"Loaded {len(BUILTIN_SCHEMAS)} built-in resource schemas")
    return _default_registry
