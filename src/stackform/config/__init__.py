"""Configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from stackform.config.builder import GraphBuilder, build_graph
from stackform.config.loader import ConfigError, default_config, load_config
from stackform.config.parser import load_directory
from stackform.config.registry import default_registry
from stackform.config.schema import Config
from stackform.core.store import LocalStateStore
from stackform.engine.engine import StackEngine

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable, Mapping
    from pathlib import Path

    from stackform.core.state import OutputValue
    from stackform.engine.executor import ProgressCallback
    from stackform.engine.graph import ResourceGraph
    from stackform.engine.types import ApplyResult, Plan, ResourceDrift

__all__ = [
    "Config",
    "ConfigError",
    "GraphBuilder",
    "apply",
    "build",
    "default_config",
    "drift",
    "engine_from_config",
    "load",
    "load_config",
    "output",
    "plan",
    "plan_and_apply",
    "refresh",
    "validate",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def build(config: Config, variables: Mapping[str, Any] | None = None) -> ResourceGraph:
    """Parse the declarations and build the resource graph.

    *variables* (e.g. from ``--var``) take precedence over the config file
    and ``STACKFORM_VAR_*`` bindings.
    """
    declaration = load_directory(config.declarations_path)
    return build_graph(declaration, {**config.variables, **(variables or {})})


def _providers(config: Config, graph: ResourceGraph | None) -> dict[str, dict[str, Any]]:
    providers: dict[str, dict[str, Any]] = {}
    for name, settings in (graph.providers if graph else {}).items():
        providers[name] = dict(settings)
    for name, settings in config.providers.items():
        providers[name] = {**providers.get(name, {}), **settings}
    return providers


def engine_from_config(
    config: Config,
    *,
    graph: ResourceGraph | None = None,
    resource_types: Iterable[str] = (),
) -> StackEngine:
    """Build a ``StackEngine`` with adapters for the graph's and the state's types."""
    store = LocalStateStore(config.state_file)
    types = set(resource_types)
    types.update(node.resource_type for node in (graph.nodes.values() if graph else ()))
    types.update(inst.resource_type for inst in store.read().resources.values())
    return StackEngine(
        store=store,
        registry=default_registry(config, types),
        providers=_providers(config, graph),
        parallelism=config.parallelism,
        lock_timeout=config.lock_timeout,
        retry=config.retry.policy(),
    )


def validate(config: Config, variables: Mapping[str, Any] | None = None) -> ResourceGraph:
    """Build the graph and check that every resource type has an adapter."""
    graph = build(config, variables)
    engine = engine_from_config(config, graph=graph)
    for node in graph.nodes.values():
        engine.registry.get(node.resource_type)
    return graph


def plan(
    config: Config,
    *,
    variables: Mapping[str, Any] | None = None,
    destroy: bool = False,
    refresh: bool = False,
) -> Plan:
    """Plan changes for the given configuration."""
    graph = build(config, variables)
    return engine_from_config(config, graph=graph).plan(graph, destroy=destroy, refresh=refresh)


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    graph: ResourceGraph | None = None,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = engine_from_config(
        config, graph=graph, resource_types=(c.resource_type for c in plan_obj.changes)
    )
    return engine.apply(plan_obj, progress=progress, cancel=cancel, timeout=timeout)


def plan_and_apply(
    config: Config,
    *,
    variables: Mapping[str, Any] | None = None,
    destroy: bool = False,
    refresh: bool = False,
) -> ApplyResult:
    """Plan and apply in one step."""
    graph = build(config, variables)
    engine = engine_from_config(config, graph=graph)
    return engine.apply(engine.plan(graph, destroy=destroy, refresh=refresh))


def refresh(config: Config) -> list[ResourceDrift]:
    """Refresh state from the live resources and persist it. Returns the drift."""
    _, _, changes = engine_from_config(config).refresh(persist=True)
    return changes


def drift(config: Config) -> list[ResourceDrift]:
    """Detect drift between the state record and the live resources."""
    return engine_from_config(config).drift()


def output(config: Config) -> dict[str, OutputValue]:
    """Read root outputs recorded by the last apply."""
    return LocalStateStore(config.state_file).read().outputs
