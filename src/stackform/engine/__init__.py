"""Plan and apply engine."""

from stackform.engine.adapters import AttributeDiff, EngineContext, ProviderAdapter
from stackform.engine.engine import StackEngine
from stackform.engine.executor import Executor, ProgressCallback
from stackform.engine.graph import DependencyGraph, OutputNode, ResourceGraph, ResourceNode
from stackform.engine.planner import Planner
from stackform.engine.registry import ProviderRegistry
from stackform.engine.retry import RetryPolicy
from stackform.engine.types import (
    Action,
    ActionResult,
    ActionStatus,
    ApplyResult,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceDrift,
)

__all__ = [
    "Action",
    "ActionResult",
    "ActionStatus",
    "ApplyResult",
    "AttributeDiff",
    "DependencyGraph",
    "EngineContext",
    "Executor",
    "OutputNode",
    "Plan",
    "PlanMetadata",
    "Planner",
    "ProgressCallback",
    "ProviderAdapter",
    "ProviderRegistry",
    "ResourceChange",
    "ResourceDrift",
    "ResourceGraph",
    "ResourceNode",
    "RetryPolicy",
    "StackEngine",
]
