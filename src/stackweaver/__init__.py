"""stackweaver: declarative infrastructure reconciliation engine."""

from stackweaver.orchestrator import (
    ApplyResult,
    ChangeSet,
    GraphBuilder,
    Planner,
    ResourceGraph,
    StackOrchestrator,
)

__version__ = "0.1.0"

__all__ = [
    "ApplyResult",
    "ChangeSet",
    "GraphBuilder",
    "Planner",
    "ResourceGraph",
    "StackOrchestrator",
    "__version__",
]
