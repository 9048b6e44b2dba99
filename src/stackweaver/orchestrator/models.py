"""Resource specs and reference expressions shared by the graph, planner and executor."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union


class DeletionPolicy(Enum):
    """What happens upstream when a resource leaves the stack."""
    DELETE = "Delete"
    RETAIN = "Retain"


@dataclass(frozen=True)
class Reference:
    """Reference to another resource's physical ID or attribute."""

    logical_name: str
    attribute: Optional[str] = None

    def to_snapshot(self) -> Dict[str, Any]:
        """Canonical, JSON-serializable form used in state snapshots."""
        if self.attribute is None:
            return {"Ref": self.logical_name}
        return {"Fn::GetAtt": [self.logical_name, self.attribute]}

    def __str__(self) -> str:
        if self.attribute is None:
            return f"ref({self.logical_name})"
        return f"attr({self.logical_name}, {self.attribute})"


def ref(logical_name: str) -> Reference:
    """Reference a resource's physical ID."""
    return Reference(logical_name)


def attr(logical_name: str, attribute: str) -> Reference:
    """Reference a named attribute of a resource."""
    return Reference(logical_name, attribute)


@dataclass(frozen=True)
class Interpolation:
    """String assembled from literal parts and references at apply time."""

    parts: Tuple[Union[str, Reference], ...]

    def references(self) -> List[Reference]:
        return [part for part in self.parts if isinstance(part, Reference)]

    def to_snapshot(self) -> Dict[str, Any]:
        template = []
        for part in self.parts:
            if isinstance(part, Reference):
                name = part.logical_name
                if part.attribute:
                    name = f"{name}.{part.attribute}"
                template.append("${" + name + "}")
            else:
                template.append(part.replace("${", "${!"))
        return {"Fn::Sub": "".join(template)}


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference found in a (possibly nested) property value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        yield from value.references()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def to_snapshot(value: Any) -> Any:
    """Render a property value in the canonical form persisted in state."""
    if isinstance(value, (Reference, Interpolation)):
        return value.to_snapshot()
    if isinstance(value, dict):
        return {key: to_snapshot(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_snapshot(item) for item in value]
    return value


def resolve_value(value: Any, resolver: Callable[[Reference], Any]) -> Any:
    """Replace references with concrete values.

    Args:
        value: Property value possibly containing references
        resolver: Returns the concrete value for a reference

    Returns:
        Value with no Reference or Interpolation left
    """
    if isinstance(value, Reference):
        return resolver(value)
    if isinstance(value, Interpolation):
        return "".join(
            str(resolver(part)) if isinstance(part, Reference) else part
            for part in value.parts
        )
    if isinstance(value, dict):
        return {key: resolve_value(item, resolver) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, resolver) for item in value]
    return value


@dataclass(frozen=True)
class Tag:
    """Resource tag."""
    key: str
    value: Any


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of one resource after condition and parameter evaluation."""

    logical_name: str
    type_name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    condition: Optional[str] = None
    tags: Tuple[Tag, ...] = ()
    depends_on: Tuple[str, ...] = ()
    declaration_index: int = 0

    def references(self) -> List[Reference]:
        """All references in properties and tag values."""
        found = list(iter_references(self.properties))
        for tag in self.tags:
            found.extend(iter_references(tag.value))
        return found

    def property_snapshot(self) -> Dict[str, Any]:
        return to_snapshot(self.properties)

    def tag_snapshot(self) -> List[Dict[str, Any]]:
        return [{"Key": tag.key, "Value": to_snapshot(tag.value)} for tag in self.tags]
