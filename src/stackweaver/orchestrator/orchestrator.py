"""Main orchestrator that coordinates validation, planning and apply."""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from stackweaver.config.models import EngineSettings
from stackweaver.orchestrator.dependency_graph import GraphBuilder, ResourceGraph
from stackweaver.orchestrator.executor import ApplyResult, ChangeSetExecutor
from stackweaver.orchestrator.planner import ChangeSet, Planner
from stackweaver.provisioners.base import ProviderRegistry
from stackweaver.provisioners.memory import simulated_providers
from stackweaver.schema.registry import SchemaRegistry, default_registry
from stackweaver.state.models import StackState
from stackweaver.state.store import FileStateStore, MemoryStateStore, StateStore, validate_stack_name
from stackweaver.template.intrinsics import pseudo_parameters
from stackweaver.template.loader import Template, load_template
from stackweaver.utils.aws_client import AWSClientManager
from stackweaver.utils.errors import ValidationError
from stackweaver.utils.logging import LogContext, get_logger
from stackweaver.utils.retry import RetryStrategy

logger = get_logger(__name__)


@dataclass
class Stack:
    """A named deployment: desired graph plus last-applied state."""
    name: str
    graph: ResourceGraph
    state: StackState


class StackOrchestrator:
    """Coordinates graph building, planning, apply and destroy for stacks."""

    def __init__(
        self,
        settings: EngineSettings,
        store: Optional[StateStore] = None,
        providers: Optional[ProviderRegistry] = None,
        registry: Optional[SchemaRegistry] = None,
        client_manager: Optional[AWSClientManager] = None
    ):
        """Initialize stack orchestrator.

        Args:
            settings: Engine settings
            store: State store; a FileStateStore under settings.state_dir by default
            providers: Provider registry; boto3 providers are built lazily when omitted
            registry: Schema registry; the built-in registry by default
            client_manager: AWS session manager for the boto3 providers
        """
        self.settings = settings
        self.store = store or FileStateStore(settings.state_dir)
        self.registry = registry or default_registry()
        self.client_manager = client_manager
        self._providers = providers
        self.builder = GraphBuilder()
        self.planner = Planner(self.registry)
        self.logger = get_logger(__name__)

    @property
    def aws(self) -> AWSClientManager:
        if self.client_manager is None:
            self.client_manager = AWSClientManager(
                profile=self.settings.profile,
                region=self.settings.region,
                max_pool_connections=max(10, self.settings.max_workers),
            )
        return self.client_manager

    @property
    def providers(self) -> ProviderRegistry:
        if self._providers is None:
            # Imported here so validate/plan never need boto3 clients
            from stackweaver.provisioners import aws_providers

            self._providers = aws_providers(self.aws)
        return self._providers

    def _environment(self, live: bool) -> Tuple[Optional[str], Optional[str]]:
        """Region and account ID for pseudo parameters.

        Settings win. A live AWS-backed stack asks the session and STS for
        whatever the settings leave unset; otherwise placeholders are used.
        """
        region, account_id = self.settings.region, self.settings.account_id
        if live and self._providers is None and (region is None or account_id is None):
            region = region or self.aws.region_name
            account_id = account_id or self.aws.identity().account_id
        return region, account_id

    def load_template(self, template_path: Union[str, Path]) -> Template:
        return load_template(template_path)

    def build_graph(
        self,
        template: Template,
        stack_name: str = "stack",
        parameters: Optional[Mapping[str, Any]] = None,
        live: bool = True
    ) -> ResourceGraph:
        """Evaluate a template for a stack and build its graph."""
        region, account_id = self._environment(live)
        pseudo = pseudo_parameters(stack_name, region=region, account_id=account_id)
        return self.builder.build(template, parameters=parameters, pseudo=pseudo)

    def validate(
        self,
        template: Template,
        parameters: Optional[Mapping[str, Any]] = None
    ) -> ResourceGraph:
        """Validate a template without touching state.

        Returns:
            The resource graph, checked against the schema registry

        Raises:
            ValidationError, GraphError or PlanError describing the first problem
        """
        graph = self.build_graph(template, parameters=parameters, live=False)
        self.planner.plan(graph, StackState(stack_name="validate"))
        self.logger.info(f"Template is valid: {len(graph)} resources, "
                         f"{len(graph.excluded)} excluded by condition")
        return graph

    def stack(self, stack_name: str, graph: Optional[ResourceGraph] = None) -> Stack:
        validate_stack_name(stack_name)
        return Stack(
            name=stack_name,
            graph=graph if graph is not None else ResourceGraph.empty(),
            state=self.store.load(stack_name),
        )

    def plan(
        self,
        template: Template,
        stack_name: str,
        parameters: Optional[Mapping[str, Any]] = None,
        live: bool = True
    ) -> ChangeSet:
        """Create a change set for a stack.

        Args:
            template: Parsed template
            stack_name: Stack to plan against
            parameters: Parameter values
            live: False for simulated runs, which never look up the AWS account
        """
        validate_stack_name(stack_name)
        graph = self.build_graph(template, stack_name, parameters, live=live)
        return self.planner.plan(graph, self.store.load(stack_name))

    def plan_destroy(self, stack_name: str) -> ChangeSet:
        validate_stack_name(stack_name)
        return self.planner.plan_destroy(self.store.load(stack_name))

    def apply(
        self,
        change_set: ChangeSet,
        cancel_event: Optional[threading.Event] = None,
        simulate: bool = False
    ) -> ApplyResult:
        """Apply a change set.

        Args:
            change_set: Change set from plan() or plan_destroy()
            cancel_event: Set to stop dispatching and roll back
            simulate: Run against in-memory providers and a throwaway copy of state

        Raises:
            ValidationError: A resource type has no provider (checked before any call)
            StoreIOError: State could not be persisted
        """
        store = self.store
        providers = None
        if simulate:
            state = self.store.load(change_set.stack_name)
            store = MemoryStateStore()
            store.save(state)
            providers = simulated_providers(self.registry, state)
            self.logger.info(f"Simulating apply of {change_set.stack_name}; nothing is persisted")
        else:
            providers = self.providers

        needed = {entry.type_name for entry in change_set.entries}
        needed.update(entry.prior.type_name for entry in change_set.entries if entry.prior)
        needed.update(pending.type_name for entry in change_set.entries if entry.prior
                      for pending in entry.prior.pending_deletes)
        missing = providers.missing(needed)
        if missing:
            raise ValidationError(f"No provider registered for: {', '.join(missing)}")

        executor = ChangeSetExecutor(
            providers=providers,
            store=store,
            max_workers=self.settings.max_workers,
            operation_timeout=self.settings.operation_timeout,
            retry_strategy=RetryStrategy(
                max_attempts=self.settings.retry.max_attempts,
                base_delay=self.settings.retry.base_delay,
                max_delay=self.settings.retry.max_delay,
                jitter=self.settings.retry.jitter,
            ),
        )
        with LogContext(stack=change_set.stack_name):
            return executor.apply(change_set, cancel_event)

    def deploy(
        self,
        template: Template,
        stack_name: str,
        parameters: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
        simulate: bool = False
    ) -> ApplyResult:
        """Plan and apply in one step."""
        change_set = self.plan(template, stack_name, parameters, live=not simulate)
        return self.apply(change_set, cancel_event, simulate=simulate)

    def destroy(
        self,
        stack_name: str,
        cancel_event: Optional[threading.Event] = None,
        simulate: bool = False,
        change_set: Optional[ChangeSet] = None
    ) -> ApplyResult:
        """Delete every resource of a stack; forget the stack once nothing is left.

        Args:
            stack_name: Stack to destroy
            cancel_event: Set to stop dispatching and roll back
            simulate: Run against in-memory providers
            change_set: A destroy change set already shown to the user; planned here if omitted
        """
        if change_set is None:
            change_set = self.plan_destroy(stack_name)
        elif change_set.stack_name != stack_name:
            raise ValidationError(
                f"Change set is for stack {change_set.stack_name}, not {stack_name}"
            )
        result = self.apply(change_set, cancel_event, simulate=simulate)
        if not simulate and result.success and not self.store.load(stack_name).records:
            self.store.delete(stack_name)
            self.logger.info(f"Stack {stack_name} destroyed")
        return result

    def outputs(self, stack_name: str) -> Dict[str, Any]:
        validate_stack_name(stack_name)
        return dict(self.store.load(stack_name).outputs)
