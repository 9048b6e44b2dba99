"""Dependency graph of a stack's resources."""

from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from stackweaver.orchestrator.models import (
    DeletionPolicy,
    ResourceSpec,
    Tag,
    iter_references,
)
from stackweaver.template.intrinsics import (
    NO_VALUE,
    IntrinsicEvaluator,
    MappingLookup,
    pseudo_parameters,
)
from stackweaver.template.loader import Template
from stackweaver.template.parameters import masked_parameters, resolve_parameters
from stackweaver.utils.errors import CycleError, DanglingReferenceError, ValidationError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutputSpec:
    """Stack output expression, resolved after apply."""

    name: str
    value: Any
    description: Optional[str] = None


class ResourceGraph:
    """Immutable directed acyclic graph of resource specs.

    Edges point from a dependent to its dependencies. Build instances with
    GraphBuilder; the constructor assumes the edges were already validated.
    """

    def __init__(
        self,
        specs: Mapping[str, ResourceSpec],
        dependencies: Mapping[str, FrozenSet[str]],
        reference_dependencies: Mapping[str, FrozenSet[str]],
        order: Tuple[str, ...],
        ranks: Mapping[str, int],
        excluded: Tuple[str, ...] = (),
        outputs: Optional[Mapping[str, OutputSpec]] = None,
        parameters: Optional[Mapping[str, Any]] = None
    ):
        self._specs = MappingProxyType(dict(specs))
        self._dependencies = MappingProxyType(dict(dependencies))
        self._reference_dependencies = MappingProxyType(dict(reference_dependencies))
        dependents: Dict[str, Set[str]] = {name: set() for name in specs}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(name)
        self._dependents = MappingProxyType(
            {name: frozenset(items) for name, items in dependents.items()}
        )
        self._order = tuple(order)
        self._ranks = MappingProxyType(dict(ranks))
        self._excluded = tuple(excluded)
        self._outputs = MappingProxyType(dict(outputs or {}))
        self._parameters = MappingProxyType(dict(parameters or {}))

    @classmethod
    def empty(cls) -> "ResourceGraph":
        return cls({}, {}, {}, (), {})

    @property
    def excluded(self) -> Tuple[str, ...]:
        """Names of resources left out because their condition is false."""
        return self._excluded

    @property
    def outputs(self) -> Mapping[str, OutputSpec]:
        return self._outputs

    @property
    def parameters(self) -> Mapping[str, Any]:
        """Parameter values used, NoEcho values masked."""
        return self._parameters

    def get_spec(self, logical_name: str) -> Optional[ResourceSpec]:
        return self._specs.get(logical_name)

    def has_resource(self, logical_name: str) -> bool:
        return logical_name in self._specs

    def specs(self) -> List[ResourceSpec]:
        """Specs in topological order."""
        return [self._specs[name] for name in self._order]

    def get_dependencies(self, logical_name: str) -> FrozenSet[str]:
        """Direct dependencies (references and DependsOn)."""
        return self._dependencies.get(logical_name, frozenset())

    def get_reference_dependencies(self, logical_name: str) -> FrozenSet[str]:
        """Direct dependencies created by references only."""
        return self._reference_dependencies.get(logical_name, frozenset())

    def get_dependents(self, logical_name: str) -> FrozenSet[str]:
        return self._dependents.get(logical_name, frozenset())

    def get_all_dependents(self, logical_name: str) -> Set[str]:
        """Transitive dependents of a resource."""
        visited = set()
        queue = deque([logical_name])
        while queue:
            current = queue.popleft()
            for dependent in self._dependents.get(current, ()):
                if dependent not in visited:
                    visited.add(dependent)
                    queue.append(dependent)
        return visited

    def topological_order(self) -> List[str]:
        """Dependencies before dependents; ties broken by declaration order."""
        return list(self._order)

    def rank(self, logical_name: str) -> int:
        return self._ranks[logical_name]

    def get_deployment_waves(self) -> List[List[str]]:
        """Resources grouped by rank."""
        waves: List[List[str]] = []
        for name in self._order:
            rank = self._ranks[name]
            while len(waves) <= rank:
                waves.append([])
            waves[rank].append(name)
        return waves

    def get_destruction_order(self) -> List[str]:
        return list(reversed(self._order))

    def size(self) -> int:
        return len(self._specs)

    def is_empty(self) -> bool:
        return not self._specs

    def __iter__(self):
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, logical_name: object) -> bool:
        return logical_name in self._specs


def _lift_tags(name: str, properties: Dict[str, Any]) -> Tuple[Tag, ...]:
    raw = properties.pop("Tags", None)
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError("Tags must be a list", path=f"Resources.{name}.Properties.Tags")
    tags = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or "Key" not in item or "Value" not in item:
            raise ValidationError(
                "each tag needs Key and Value",
                path=f"Resources.{name}.Properties.Tags[{index}]"
            )
        tags.append(Tag(str(item["Key"]), item["Value"]))
    return tuple(tags)


def find_cycle(remaining: Mapping[str, Iterable[str]], declaration: Mapping[str, int]) -> List[str]:
    """Return one cycle among nodes that Kahn's algorithm could not order.

    Args:
        remaining: Unordered nodes mapped to their dependencies
        declaration: Declaration index of each node, for deterministic output

    Returns:
        Cycle members in edge order, each exactly once
    """
    def key(name):
        return declaration.get(name, 0), name

    start = min(remaining, key=key)
    path: List[str] = []
    seen: Dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        candidates = sorted((dep for dep in remaining[current] if dep in remaining), key=key)
        current = candidates[0]
    return path[seen[current]:]


class GraphBuilder:
    """Builds ResourceGraphs from templates or resource specs."""

    def build(
        self,
        template: Template,
        parameters: Optional[Mapping[str, Any]] = None,
        mapping_lookup: Optional[MappingLookup] = None,
        pseudo: Optional[Mapping[str, Any]] = None
    ) -> ResourceGraph:
        """Evaluate a template and build its resource graph.

        Args:
            template: Parsed template
            parameters: Supplied parameter values (defaults fill the rest)
            mapping_lookup: Region/constant lookup; defaults to the template's Mappings
            pseudo: Pseudo parameter values; defaults to those of an unnamed stack

        Returns:
            ResourceGraph without condition-false resources

        Raises:
            ValidationError: Bad parameter value or intrinsic function
            DanglingReferenceError: A reference names an absent or excluded resource
            CycleError: References form a cycle
        """
        values = resolve_parameters(template.parameters, parameters)
        evaluator = IntrinsicEvaluator(
            parameters=values,
            pseudo=pseudo if pseudo is not None else pseudo_parameters("stack"),
            mappings=mapping_lookup or MappingLookup(template.mappings),
            conditions=template.conditions,
        )
        conditions = evaluator.evaluate_conditions()

        specs: List[ResourceSpec] = []
        excluded: List[str] = []
        for index, (name, definition) in enumerate(template.resources.items()):
            if definition.condition and not conditions[definition.condition]:
                excluded.append(name)
                continue

            properties = evaluator.evaluate(definition.properties, f"Resources.{name}.Properties")
            if properties is NO_VALUE:
                properties = {}
            tags = _lift_tags(name, properties)
            specs.append(ResourceSpec(
                logical_name=name,
                type_name=definition.type,
                properties=properties,
                deletion_policy=DeletionPolicy(definition.deletion_policy),
                condition=definition.condition,
                tags=tags,
                depends_on=tuple(definition.depends_on),
                declaration_index=index,
            ))

        outputs: Dict[str, OutputSpec] = {}
        for name, output in template.outputs.items():
            if output.condition and not conditions[output.condition]:
                continue
            value = evaluator.evaluate(output.value, f"Outputs.{name}.Value")
            outputs[name] = OutputSpec(name, value, output.description)

        if excluded:
            logger.info(f"Excluded by condition: {', '.join(excluded)}")

        return self.from_specs(
            specs,
            excluded=excluded,
            outputs=outputs,
            parameters=masked_parameters(template.parameters, values),
        )

    def from_specs(
        self,
        specs: Iterable[ResourceSpec],
        excluded: Iterable[str] = (),
        outputs: Optional[Mapping[str, OutputSpec]] = None,
        parameters: Optional[Mapping[str, Any]] = None
    ) -> ResourceGraph:
        """Build a graph directly from resource specs.

        Raises:
            ValidationError: Duplicate logical names
            DanglingReferenceError: A reference names an absent or excluded resource
            CycleError: References form a cycle
        """
        by_name: Dict[str, ResourceSpec] = {}
        for spec in specs:
            if spec.logical_name in by_name:
                raise ValidationError(f"Duplicate logical name '{spec.logical_name}'")
            by_name[spec.logical_name] = spec
        excluded = tuple(excluded)
        excluded_set = set(excluded)
        declaration = {name: spec.declaration_index for name, spec in by_name.items()}

        dependencies: Dict[str, FrozenSet[str]] = {}
        reference_dependencies: Dict[str, FrozenSet[str]] = {}
        for name, spec in by_name.items():
            referenced = {reference.logical_name for reference in spec.references()}
            for target in sorted(referenced | set(spec.depends_on)):
                if target not in by_name:
                    raise DanglingReferenceError(name, target, excluded=target in excluded_set)
            reference_dependencies[name] = frozenset(referenced)
            dependencies[name] = frozenset(referenced | set(spec.depends_on))

        for output in (outputs or {}).values():
            for reference in iter_references(output.value):
                if reference.logical_name not in by_name:
                    raise DanglingReferenceError(
                        f"Outputs.{output.name}", reference.logical_name,
                        excluded=reference.logical_name in excluded_set
                    )

        order, ranks = self._sort(by_name, dependencies, declaration)
        logger.debug(f"Built graph with {len(order)} resources in "
                     f"{max(ranks.values()) + 1 if ranks else 0} ranks")
        return ResourceGraph(
            specs=by_name,
            dependencies=dependencies,
            reference_dependencies=reference_dependencies,
            order=order,
            ranks=ranks,
            excluded=excluded,
            outputs=outputs,
            parameters=parameters,
        )

    def _sort(
        self,
        specs: Mapping[str, ResourceSpec],
        dependencies: Mapping[str, FrozenSet[str]],
        declaration: Mapping[str, int]
    ) -> Tuple[Tuple[str, ...], Dict[str, int]]:
        """Kahn's algorithm by levels; a node's rank is its longest path to a root."""
        in_degree = {name: len(dependencies[name]) for name in specs}
        dependents: Dict[str, List[str]] = {name: [] for name in specs}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].append(name)

        def by_declaration(names):
            return sorted(names, key=lambda n: (declaration[n], n))

        order: List[str] = []
        ranks: Dict[str, int] = {}
        current = by_declaration(name for name, degree in in_degree.items() if degree == 0)
        level = 0
        while current:
            next_level = []
            for name in current:
                ranks[name] = level
                order.append(name)
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_level.append(dependent)
            current = by_declaration(next_level)
            level += 1

        if len(order) != len(specs):
            remaining = {name: dependencies[name] for name in specs if name not in ranks}
            raise CycleError(find_cycle(remaining, declaration))

        return tuple(order), ranks
