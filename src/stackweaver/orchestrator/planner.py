"""Change set planner: diffs desired resources against last-applied state."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from stackweaver.orchestrator.dependency_graph import OutputSpec, ResourceGraph
from stackweaver.orchestrator.models import DeletionPolicy, ResourceSpec, iter_references, to_snapshot
from stackweaver.schema.registry import SchemaRegistry, default_registry
from stackweaver.state.models import PendingDelete, RecordStatus, StackState, StateRecord
from stackweaver.utils.errors import ErrorContext, PlanError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


class ChangeAction(Enum):
    """Planned action for one resource."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    REPLACE = "REPLACE"
    DELETE = "DELETE"
    NOOP = "NOOP"


@dataclass(frozen=True)
class PropertyDiff:
    """One changed property value."""

    path: str
    old: Any = None
    new: Any = None
    requires_replacement: bool = False
    via: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "old": self.old,
            "new": self.new,
            "requires_replacement": self.requires_replacement,
            "via": self.via,
        }


@dataclass(frozen=True)
class ChangeSetEntry:
    """Planned change to one resource.

    ``dependencies`` names the entries that must succeed before this one starts:
    the resource's graph dependencies for forward entries, and the removed
    resources that depend on it for DELETE entries.
    """

    logical_name: str
    type_name: str
    action: ChangeAction
    rank: int
    diffs: Tuple[PropertyDiff, ...] = ()
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    reason: Optional[str] = None
    spec: Optional[ResourceSpec] = None
    prior: Optional[StateRecord] = None
    dependencies: Tuple[str, ...] = ()
    state_only: bool = False
    declaration_index: int = 0

    @property
    def is_retained(self) -> bool:
        return self.deletion_policy == DeletionPolicy.RETAIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "type": self.type_name,
            "action": self.action.value,
            "rank": self.rank,
            "deletion_policy": self.deletion_policy.value,
            "reason": self.reason,
            "state_only": self.state_only,
            "dependencies": list(self.dependencies),
            "diffs": [diff.to_dict() for diff in self.diffs],
        }


@dataclass(frozen=True)
class ChangeSet:
    """Ordered change set for one stack. Immutable after planning."""

    stack_name: str
    entries: Tuple[ChangeSetEntry, ...]
    skipped_by_condition: Tuple[str, ...] = ()
    outputs: Mapping[str, OutputSpec] = field(default_factory=dict)
    parameters: Mapping[str, Any] = field(default_factory=dict)
    # Replaced resources of kept records whose delete failed in an earlier apply
    pending_deletes: Mapping[str, Tuple[PendingDelete, ...]] = field(default_factory=dict)
    graph: Optional[ResourceGraph] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def get_entry(self, logical_name: str) -> Optional[ChangeSetEntry]:
        for entry in self.entries:
            if entry.logical_name == logical_name:
                return entry
        return None

    def get_changes_by_action(self, action: ChangeAction) -> List[ChangeSetEntry]:
        return [entry for entry in self.entries if entry.action == action]

    def forward_entries(self) -> List[ChangeSetEntry]:
        return [entry for entry in self.entries if entry.action != ChangeAction.DELETE]

    def delete_entries(self) -> List[ChangeSetEntry]:
        return self.get_changes_by_action(ChangeAction.DELETE)

    def has_changes(self) -> bool:
        return bool(self.pending_deletes) or any(
            entry.action != ChangeAction.NOOP for entry in self.entries
        )

    def get_summary(self) -> Dict[str, int]:
        summary = {action.value.lower(): 0 for action in ChangeAction}
        for entry in self.entries:
            summary[entry.action.value.lower()] += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack_name": self.stack_name,
            "entries": [entry.to_dict() for entry in self.entries],
            "skipped_by_condition": list(self.skipped_by_condition),
            "pending_deletes": {
                name: [pending.physical_id for pending in items]
                for name, items in self.pending_deletes.items()
            },
            "summary": self.get_summary(),
        }


def diff_values(path: str, old: Any, new: Any) -> List[Tuple[str, Any, Any]]:
    """Dotted-path differences between two snapshot values."""
    if isinstance(old, dict) and isinstance(new, dict) and not _is_expression(old) \
            and not _is_expression(new):
        changes = []
        for key in list(old) + [k for k in new if k not in old]:
            child = f"{path}.{key}" if path else str(key)
            changes.extend(diff_values(child, old.get(key, _MISSING), new.get(key, _MISSING)))
        return changes
    if old == new:
        return []
    return [(path, None if old is _MISSING else old, None if new is _MISSING else new)]


def _is_expression(value: Dict[str, Any]) -> bool:
    return len(value) == 1 and next(iter(value)) in ("Ref", "Fn::GetAtt", "Fn::Sub")


class Planner:
    """Computes change sets from a resource graph and prior stack state."""

    def __init__(self, registry: Optional[SchemaRegistry] = None):
        """Initialize planner.

        Args:
            registry: Schema registry; the process-wide default when omitted
        """
        self.registry = registry or default_registry()

    def plan(self, graph: ResourceGraph, prior_state: StackState) -> ChangeSet:
        """Create a change set.

        Args:
            graph: Desired resources
            prior_state: Last-applied state of the stack

        Returns:
            ChangeSet with forward entries in topological order followed by deletes

        Raises:
            UnknownTypeError: A resource type has no schema
            PlanError: A resource does not satisfy its schema
        """
        logger.info(f"Planning changes for stack {prior_state.stack_name}...")
        self._validate(graph)

        entries: List[ChangeSetEntry] = []
        replaced: Set[str] = set()
        for name in graph.topological_order():
            spec = graph.get_spec(name)
            record = prior_state.get_record(name)
            entry = self._plan_resource(graph, spec, record, replaced)
            if entry.action == ChangeAction.REPLACE:
                replaced.add(name)
            entries.append(entry)

        last_rank = max((entry.rank for entry in entries), default=-1)
        removed = [
            record for name, record in prior_state.records.items()
            if name not in graph and record.status != RecordStatus.DELETED
        ]
        entries.extend(self._plan_deletes(removed, set(graph.excluded), last_rank + 1))

        change_set = ChangeSet(
            stack_name=prior_state.stack_name,
            entries=tuple(entries),
            skipped_by_condition=tuple(
                name for name in graph.excluded if not prior_state.has_record(name)
            ),
            outputs=MappingProxyType(dict(graph.outputs)),
            parameters=MappingProxyType(dict(graph.parameters)),
            pending_deletes=MappingProxyType({
                name: tuple(record.pending_deletes)
                for name, record in prior_state.records.items()
                if name in graph and record.status != RecordStatus.DELETED
                and record.pending_deletes
            }),
            graph=graph,
        )

        summary = change_set.get_summary()
        logger.info(
            f"Plan for {prior_state.stack_name}: {summary['create']} create, "
            f"{summary['update']} update, {summary['replace']} replace, "
            f"{summary['delete']} delete, {summary['noop']} unchanged"
        )
        for name, items in change_set.pending_deletes.items():
            logger.info(f"{name}: {len(items)} replaced resource(s) still to be deleted")
        return change_set

    def plan_destroy(self, prior_state: StackState) -> ChangeSet:
        """Plan deletion of every resource recorded for the stack."""
        logger.info(f"Planning destruction of stack {prior_state.stack_name}...")
        entries = self._plan_deletes(list(prior_state.records.values()), set(), 0,
                                     reason="stack destroyed")
        return ChangeSet(
            stack_name=prior_state.stack_name,
            entries=tuple(entries),
            graph=ResourceGraph.empty(),
        )

    def _validate(self, graph: ResourceGraph) -> None:
        for spec in graph.specs():
            schema = self.registry.lookup(spec.type_name)
            problems = schema.validate(spec.properties)
            for reference in spec.references():
                if reference.attribute is None:
                    continue
                target = graph.get_spec(reference.logical_name)
                target_schema = self.registry.lookup(target.type_name)
                if not target_schema.has_attribute(reference.attribute):
                    problems.append(
                        f"attribute '{reference.attribute}' is not exposed by "
                        f"{reference.logical_name} ({target.type_name})"
                    )
            if problems:
                raise PlanError(
                    f"Resource {spec.logical_name} ({spec.type_name}): " + "; ".join(problems),
                    context=ErrorContext(resource_id=spec.logical_name,
                                         resource_type=spec.type_name)
                )

    def _plan_resource(
        self,
        graph: ResourceGraph,
        spec: ResourceSpec,
        record: Optional[StateRecord],
        replaced: Set[str]
    ) -> ChangeSetEntry:
        name = spec.logical_name
        common = dict(
            logical_name=name,
            type_name=spec.type_name,
            rank=graph.rank(name),
            deletion_policy=spec.deletion_policy,
            spec=spec,
            prior=record,
            dependencies=tuple(sorted(graph.get_dependencies(name))),
            declaration_index=spec.declaration_index,
        )

        if record is None or record.status == RecordStatus.DELETED:
            return ChangeSetEntry(action=ChangeAction.CREATE, reason="not in prior state", **common)

        schema = self.registry.lookup(spec.type_name)
        snapshot = spec.property_snapshot()

        diffs = [
            PropertyDiff(path, old, new, requires_replacement=schema.requires_replacement(
                path.split(".", 1)[0]))
            for path, old, new in diff_values("", record.properties, snapshot)
        ]
        tag_snapshot = spec.tag_snapshot()
        if record.tags != tag_snapshot:
            diffs.append(PropertyDiff("Tags", record.tags, tag_snapshot))

        changed_top = {diff.path.split(".", 1)[0] for diff in diffs}
        for dependency in sorted(graph.get_reference_dependencies(name) & replaced):
            for prop, value in spec.properties.items():
                if prop in changed_top:
                    continue
                if any(ref.logical_name == dependency for ref in iter_references(value)):
                    diffs.append(PropertyDiff(
                        prop,
                        record.resolved_properties.get(prop),
                        to_snapshot(value),
                        requires_replacement=schema.requires_replacement(prop),
                        via=dependency,
                    ))
                    changed_top.add(prop)
            if any(ref.logical_name == dependency for tag in spec.tags
                   for ref in iter_references(tag.value)) and "Tags" not in changed_top:
                diffs.append(PropertyDiff("Tags", record.resolved_tags, tag_snapshot, via=dependency))
                changed_top.add("Tags")

        if record.type_name != spec.type_name:
            return ChangeSetEntry(
                action=ChangeAction.REPLACE, reason=f"type changed from {record.type_name}",
                diffs=tuple(diffs), **common
            )
        if any(diff.requires_replacement for diff in diffs):
            forcing = sorted({d.path.split(".", 1)[0] for d in diffs if d.requires_replacement})
            return ChangeSetEntry(
                action=ChangeAction.REPLACE,
                reason=f"replacement required by {', '.join(forcing)}",
                diffs=tuple(diffs), **common
            )
        if diffs:
            vias = sorted({diff.via for diff in diffs if diff.via})
            reason = f"dependency replaced: {', '.join(vias)}" if vias and \
                all(diff.via for diff in diffs) else "properties changed"
            return ChangeSetEntry(action=ChangeAction.UPDATE, reason=reason,
                                  diffs=tuple(diffs), **common)
        if record.deletion_policy != spec.deletion_policy.value:
            return ChangeSetEntry(
                action=ChangeAction.UPDATE,
                reason="deletion policy changed",
                diffs=(PropertyDiff("DeletionPolicy", record.deletion_policy,
                                    spec.deletion_policy.value),),
                state_only=True,
                **common
            )
        if record.status in (RecordStatus.FAILED, RecordStatus.UPDATING):
            return ChangeSetEntry(
                action=ChangeAction.UPDATE,
                reason=f"previous apply left status {record.status.value}",
                **common
            )
        return ChangeSetEntry(action=ChangeAction.NOOP, **common)

    def _plan_deletes(
        self,
        records: List[StateRecord],
        excluded: Set[str],
        first_rank: int,
        reason: Optional[str] = None
    ) -> List[ChangeSetEntry]:
        """DELETE entries, dependents before the resources they depend on."""
        names = {record.logical_name for record in records}
        by_name = {record.logical_name: record for record in records}
        # Entries wait for their dependents among the removed records
        dependents: Dict[str, Set[str]] = {name: set() for name in names}
        for record in records:
            for dep in record.dependencies:
                if dep in names and dep != record.logical_name:
                    dependents[dep].add(record.logical_name)

        position = {name: index for index, name in enumerate(by_name)}
        remaining = {name: set(items) for name, items in dependents.items()}
        entries: List[ChangeSetEntry] = []
        level = 0
        current = sorted((n for n, d in remaining.items() if not d), key=position.get)
        done: Set[str] = set()
        while current:
            for name in current:
                record = by_name[name]
                policy = DeletionPolicy(record.deletion_policy)
                if reason:
                    why = reason
                elif name in excluded:
                    why = "condition is false"
                else:
                    why = "removed from template"
                if policy == DeletionPolicy.RETAIN:
                    why += "; retained (state detach only)"
                entries.append(ChangeSetEntry(
                    logical_name=name,
                    type_name=record.type_name,
                    action=ChangeAction.DELETE,
                    rank=first_rank + level,
                    deletion_policy=policy,
                    reason=why,
                    prior=record,
                    dependencies=tuple(sorted(dependents[name])),
                    declaration_index=position[name],
                ))
                done.add(name)
            next_level = [n for n, d in remaining.items() if n not in done and d <= done]
            current = sorted(next_level, key=position.get)
            level += 1

        if len(done) != len(names):
            # Recorded dependencies can only be cyclic if state was edited by hand
            leftover = sorted(names - done, key=position.get)
            raise PlanError(f"Recorded dependencies form a cycle among: {', '.join(leftover)}")
        return entries
