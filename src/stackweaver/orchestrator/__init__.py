"""Orchestrator module for graph building, planning and change set execution."""

from stackweaver.orchestrator.models import (
    DeletionPolicy,
    Interpolation,
    Reference,
    ResourceSpec,
    Tag,
    attr,
    ref,
)
from stackweaver.orchestrator.dependency_graph import GraphBuilder, OutputSpec, ResourceGraph
from stackweaver.orchestrator.planner import (
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    Planner,
    PropertyDiff,
)
from stackweaver.orchestrator.operations import OperationLog, OperationRecord, ProviderCaller
from stackweaver.orchestrator.rollback import CompletedChange, RollbackManager, RollbackStep
from stackweaver.orchestrator.executor import (
    ApplyResult,
    ChangeSetExecutor,
    EntryStatus,
    ResourceExecutionResult,
    ResourceOutcome,
)
from stackweaver.orchestrator.orchestrator import Stack, StackOrchestrator

__all__ = [
    # Data model
    'DeletionPolicy',
    'Interpolation',
    'Reference',
    'ResourceSpec',
    'Tag',
    'attr',
    'ref',

    # Dependency graph
    'GraphBuilder',
    'OutputSpec',
    'ResourceGraph',

    # Planning
    'ChangeAction',
    'ChangeSet',
    'ChangeSetEntry',
    'Planner',
    'PropertyDiff',

    # Execution
    'OperationLog',
    'OperationRecord',
    'ProviderCaller',
    'ApplyResult',
    'ChangeSetExecutor',
    'EntryStatus',
    'ResourceExecutionResult',
    'ResourceOutcome',

    # Rollback
    'CompletedChange',
    'RollbackManager',
    'RollbackStep',

    # Main orchestrator
    'Stack',
    'StackOrchestrator',
]
