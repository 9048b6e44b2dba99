"""Shared fixtures: in-memory providers, stores and a small test resource type."""

import logging
from pathlib import Path
from typing import Iterable, Optional

import pytest

from stackweaver.config import EngineSettings
from stackweaver.orchestrator import (
    ChangeSetExecutor,
    GraphBuilder,
    OutputSpec,
    Planner,
    ResourceSpec,
)
from stackweaver.provisioners import simulated_providers
from stackweaver.schema import PropertySchema, ResourceSchema, SchemaRegistry, ValueType
from stackweaver.state import MemoryStateStore
from stackweaver.utils.retry import RetryStrategy

FIXTURES = Path(__file__).parent / "fixtures"

THING = "Test::Thing"

THING_SCHEMA = ResourceSchema(
    type_name=THING,
    properties=(
        PropertySchema("Name", ValueType.STRING, replace_on_change=True),
        PropertySchema("Value", ValueType.ANY),
        PropertySchema("Size", ValueType.NUMBER),
        PropertySchema("Tags", ValueType.LIST),
    ),
    attributes=("Arn", "Endpoint"),
)


def thing(name: str, index: int = 0, **properties) -> ResourceSpec:
    """Spec for a Test::Thing; keyword arguments become properties."""
    return ResourceSpec(
        logical_name=name,
        type_name=THING,
        properties=properties,
        declaration_index=index,
    )


class Harness:
    """Plans and applies resource specs against in-memory providers."""

    def __init__(self, registry, providers, store, retry, operation_timeout=5.0):
        self.registry = registry
        self.providers = providers
        self.store = store
        self.builder = GraphBuilder()
        self.planner = Planner(registry)
        self.executor = ChangeSetExecutor(
            providers, store, max_workers=4,
            operation_timeout=operation_timeout, retry_strategy=retry
        )

    @property
    def provider(self):
        return self.providers.get(THING)

    def plan(self, specs: Iterable[ResourceSpec], stack: str = "demo",
             excluded: Iterable[str] = (), outputs: Optional[dict] = None):
        graph = self.builder.from_specs(
            specs, excluded=excluded,
            outputs={name: OutputSpec(name, value) for name, value in (outputs or {}).items()}
        )
        return self.planner.plan(graph, self.store.load(stack))

    def apply(self, specs: Iterable[ResourceSpec], stack: str = "demo", cancel_event=None,
              **kwargs):
        return self.executor.apply(self.plan(specs, stack, **kwargs), cancel_event)

    def destroy(self, stack: str = "demo"):
        return self.executor.apply(self.planner.plan_destroy(self.store.load(stack)))


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def registry():
    return SchemaRegistry([THING_SCHEMA]).freeze()


@pytest.fixture
def providers(registry):
    return simulated_providers(registry)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def fast_retry():
    return RetryStrategy(max_attempts=3, base_delay=0.01, jitter=False, sleep=lambda s: None)


@pytest.fixture
def harness(registry, providers, store, fast_retry):
    return Harness(registry, providers, store, fast_retry)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        state_dir=str(tmp_path / "state"),
        log_dir=None,
        log_level="warning",
        max_workers=4,
    )


@pytest.fixture
def website_template_path():
    return FIXTURES / "static_website.yaml"
