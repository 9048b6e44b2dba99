"""In-memory provider for simulated applies and tests."""

import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from stackweaver.provisioners.base import ProviderRegistry, ProviderSpec, ResourceProvider
from stackweaver.schema.registry import SchemaRegistry, default_registry
from stackweaver.state.models import StackState
from stackweaver.utils.errors import NotFoundError, ProviderError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

_ids = itertools.count(1)


class InMemoryProvider(ResourceProvider):
    """Keeps resources in a dictionary; failures and delays can be injected."""

    def __init__(
        self,
        type_name: str,
        attribute_names: Tuple[str, ...] = (),
        latency: float = 0.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            type_name: Resource type handled
            attribute_names: Attributes reported for every resource
            latency: Seconds each call takes
            sleep: Function used to simulate latency
        """
        self.type_name = type_name
        self.attribute_names = tuple(attribute_names)
        self.latency = latency
        self.sleep = sleep
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], List[Any]] = {}
        self._delays: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def inject_failure(
        self,
        operation: str,
        logical_name: str,
        error: Optional[Exception] = None,
        times: Optional[int] = None
    ) -> None:
        """Make an operation on a resource fail.

        Args:
            operation: create, update, delete or read
            logical_name: Resource to fail for
            error: Exception to raise; a non-retryable ProviderError by default
            times: Number of failures before calls succeed again; None fails forever
        """
        error = error or ProviderError(f"Injected {operation} failure for {logical_name}")
        with self._lock:
            self._failures[(operation, logical_name)] = [error, times]

    def inject_delay(self, operation: str, logical_name: str, seconds: float) -> None:
        with self._lock:
            self._delays[(operation, logical_name)] = seconds

    def seed(self, physical_id: str, logical_name: str, properties: Optional[Dict[str, Any]] = None,
             attributes: Optional[Dict[str, Any]] = None) -> None:
        """Register an existing resource."""
        with self._lock:
            self.resources[physical_id] = {
                "logical_name": logical_name,
                "properties": dict(properties or {}),
                "tags": [],
                "attributes": dict(attributes or {}),
            }

    def _enter(self, operation: str, logical_name: str) -> None:
        with self._lock:
            self.calls.append((operation, logical_name))
            delay = self._delays.get((operation, logical_name), self.latency)
            failure = self._failures.get((operation, logical_name))
            error = None
            if failure is not None:
                error, remaining = failure
                if remaining is not None:
                    if remaining <= 1:
                        del self._failures[(operation, logical_name)]
                    else:
                        failure[1] = remaining - 1
        if delay:
            self.sleep(delay)
        if error is not None:
            raise error

    def _attributes(self, physical_id: str) -> Dict[str, Any]:
        attributes = {}
        for name in self.attribute_names:
            if name.endswith("Arn"):
                attributes[name] = f"arn:aws:sim:::{physical_id}"
            elif name == "NameServers":
                attributes[name] = [f"ns-1.{physical_id}.sim", f"ns-2.{physical_id}.sim"]
            else:
                attributes[name] = f"{physical_id}.{name}"
        return attributes

    def _lookup(self, physical_id: str, operation: str) -> Dict[str, Any]:
        resource = self.resources.get(physical_id)
        if resource is None:
            raise NotFoundError(f"{self.type_name} {physical_id} not found ({operation})")
        return resource

    def _name_for(self, physical_id: str) -> str:
        with self._lock:
            resource = self.resources.get(physical_id)
        return resource["logical_name"] if resource else physical_id

    def create(self, spec: ProviderSpec) -> Tuple[str, Dict[str, Any]]:
        self._enter("create", spec.logical_name)
        physical_id = f"{spec.logical_name.lower()}-{next(_ids):06d}"
        attributes = self._attributes(physical_id)
        with self._lock:
            self.resources[physical_id] = {
                "logical_name": spec.logical_name,
                "properties": dict(spec.properties),
                "tags": list(spec.tags),
                "attributes": attributes,
            }
        logger.debug(f"Simulated create of {spec.logical_name} as {physical_id}")
        return physical_id, dict(attributes)

    def update(self, physical_id: str, spec: ProviderSpec) -> Dict[str, Any]:
        self._enter("update", spec.logical_name)
        with self._lock:
            resource = self._lookup(physical_id, "update")
            resource["properties"] = dict(spec.properties)
            resource["tags"] = list(spec.tags)
            return dict(resource["attributes"])

    def delete(self, physical_id: str) -> None:
        self._enter("delete", self._name_for(physical_id))
        with self._lock:
            self._lookup(physical_id, "delete")
            del self.resources[physical_id]

    def read(self, physical_id: str) -> Dict[str, Any]:
        self._enter("read", self._name_for(physical_id))
        with self._lock:
            return dict(self._lookup(physical_id, "read")["attributes"])

    def exists(self, physical_id: str) -> bool:
        with self._lock:
            return physical_id in self.resources


def simulated_providers(
    schemas: Optional[SchemaRegistry] = None,
    state: Optional[StackState] = None,
    latency: float = 0.0
) -> ProviderRegistry:
    """Registry with an in-memory provider for every schema type.

    Args:
        schemas: Types to cover; the built-in registry by default
        state: Existing records to seed, so updates and deletes find their targets
        latency: Seconds each simulated call takes
    """
    schemas = schemas or default_registry()
    registry = ProviderRegistry()
    for type_name in schemas.type_names():
        schema = schemas.lookup(type_name)
        registry.register(type_name, InMemoryProvider(type_name, schema.attributes, latency=latency))

    if state is not None:
        for record in state.records.values():
            if record.physical_id and registry.has(record.type_name):
                registry.get(record.type_name).seed(
                    record.physical_id, record.logical_name,
                    record.resolved_properties, record.attributes
                )
            for pending in record.pending_deletes:
                if registry.has(pending.type_name):
                    registry.get(pending.type_name).seed(pending.physical_id, record.logical_name)
    return registry
