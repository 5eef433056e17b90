"""Planner: diff a resource graph against recorded state."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any

from stackform import __version__
from stackform.core.expressions import evaluate, traverse
from stackform.core.state import compute_state_digest
from stackform.core.values import Known, Unknown, unknown
from stackform.engine.graph import DependencyGraph
from stackform.engine.types import (
    Action,
    OutputChange,
    OutputSpec,
    Plan,
    PlanMetadata,
    ResourceChange,
)
from stackform.errors import (
    ConfigError,
    ExpressionError,
    UnresolvedReferenceError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from stackform.core.expressions import Expr, Ref
    from stackform.core.state import State
    from stackform.core.values import Value
    from stackform.engine.adapters import EngineContext
    from stackform.engine.graph import ResourceGraph, ResourceNode
    from stackform.engine.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Producers whose computed attributes are only known once applied. A pending
# change is re-diffed at apply time and may still turn into a replace.
_FRESH = (Action.CREATE, Action.REPLACE, Action.PENDING)


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_config_digest(graph: ResourceGraph) -> str:
    items: list[dict[str, Any]] = []
    for addr, node in sorted(graph.nodes.items()):
        items.append(
            {
                "address": addr,
                "resource_type": node.resource_type,
                "attributes": {k: v.model_dump(mode="json") for k, v in node.attributes.items()},
                "dependencies": node.dependencies(),
            }
        )
    outputs = {name: o.expr.model_dump(mode="json") for name, o in sorted(graph.outputs.items())}
    payload = _canonical_json({"resources": items, "outputs": outputs})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def attribute_value(change: ResourceChange, ref: Ref, *, computed: frozenset[str]) -> Value:
    """Plan-time value of ``ref`` given its producer's planned change."""
    sensitive = bool(ref.path) and str(ref.path[0]) in change.sensitive
    planned = change.planned or {}
    prior = change.prior or {}

    if not ref.path:
        if change.action in _FRESH or change.pending:
            return unknown(change.address, sensitive=bool(change.sensitive))
        whole = prior if change.action == Action.NOOP else {**prior, **planned}
        return Known(whole, sensitive=bool(change.sensitive))

    attr = str(ref.path[0])
    if change.action in _FRESH:
        if attr in planned and attr not in computed:
            value: Any = planned[attr]
        else:
            return unknown(change.address, sensitive=sensitive)
    elif attr in change.pending:
        return unknown(change.address, sensitive=sensitive)
    elif change.action == Action.NOOP and attr in prior:
        # Applying a no-op leaves the recorded attributes in place.
        value = prior[attr]
    elif attr in planned:
        value = planned[attr]
    elif attr in prior:
        value = prior[attr]
    elif change.action == Action.NOOP:
        raise ExpressionError(f"{change.address} has no attribute '{attr}' (in {ref.display()})")
    else:
        return unknown(change.address, sensitive=sensitive)

    return Known(traverse(value, list(ref.path[1:]), what=ref.display()), sensitive=sensitive)


class Planner:
    """Compute an ordered ``Plan`` from a built graph and the current state."""

    def __init__(self, registry: ProviderRegistry, ctx: EngineContext) -> None:
        self._registry = registry
        self._ctx = ctx

    def plan(
        self,
        graph: ResourceGraph,
        state: State,
        *,
        destroy: bool = False,
        refresh: bool = False,
    ) -> Plan:
        logger.info(
            "Planning %d resources against %d in state (destroy=%s)",
            len(graph.nodes),
            len(state.resources),
            destroy,
        )
        state_addrs = set(state.resources)

        if destroy:
            changes = self._plan_deletes(state, state_addrs)
            outputs: dict[str, OutputSpec] = {}
            output_changes = [OutputChange(name=n, action="remove") for n in sorted(state.outputs)]
        else:
            for node in graph.nodes.values():
                self._registry.get(node.resource_type)  # fail early if unknown

            by_addr: dict[str, ResourceChange] = {}
            errors: list[str] = []
            for addr in graph.topological_order():
                by_addr[addr] = self._classify_change(graph.nodes[addr], state, by_addr, errors)
            if errors:
                raise ValidationError(errors)

            changes = list(by_addr.values())
            changes.extend(self._plan_deletes(state, state_addrs - set(graph.nodes)))
            outputs = {
                name: OutputSpec(expr=o.expr, sensitive=o.sensitive, description=o.description)
                for name, o in graph.outputs.items()
            }
            output_changes = self._plan_outputs(outputs, state, by_addr)

        metadata = PlanMetadata(
            destroy=destroy,
            refresh=refresh,
            state_lineage=state.lineage,
            state_serial=state.serial,
            state_digest=compute_state_digest(state),
            config_digest=compute_config_digest(graph),
            engine_version=__version__,
        )
        plan = Plan(
            metadata=metadata, changes=changes, outputs=outputs, output_changes=output_changes
        )
        logger.info("Plan: %s", {k: v for k, v in plan.summary().items() if v})
        return plan

    def _resolver(self, changes: Mapping[str, ResourceChange], context: str):
        def resolve(ref: Ref) -> Value:
            change = changes.get(ref.address)
            if change is None:
                raise UnresolvedReferenceError(ref.display(), context=context)
            computed = self._registry.get(change.resource_type).computed
            return attribute_value(change, ref, computed=computed)

        return resolve

    def _plan_outputs(
        self,
        outputs: Mapping[str, OutputSpec],
        state: State,
        changes: Mapping[str, ResourceChange],
    ) -> list[OutputChange]:
        """Root outputs whose recorded value differs from what apply will write."""
        planned: list[OutputChange] = []
        available: set[str] = set()
        for name, spec in sorted(outputs.items()):
            try:
                value = evaluate(spec.expr, self._resolver(changes, f"output.{name}"))
            except ConfigError as e:
                logger.warning("Output %s not available: %s", name, e)
                continue
            available.add(name)
            sensitive = spec.sensitive or value.sensitive
            prior = state.outputs.get(name)
            action = "add" if prior is None else "change"
            if isinstance(value, Unknown):
                planned.append(OutputChange(name=name, action=action, known=False, sensitive=sensitive))
            elif prior is None or prior.value != value.value or prior.sensitive != sensitive:
                planned.append(
                    OutputChange(name=name, action=action, value=value.value, sensitive=sensitive)
                )
        for name in sorted(set(state.outputs) - available):
            planned.append(OutputChange(name=name, action="remove"))
        return planned

    def _classify_change(
        self,
        node: ResourceNode,
        state: State,
        changes: Mapping[str, ResourceChange],
        errors: list[str],
    ) -> ResourceChange:
        """Classify one resource as CREATE, UPDATE, REPLACE, PENDING or NOOP."""
        adapter = self._registry.get(node.resource_type)
        resolve = self._resolver(changes, node.address)

        planned: dict[str, Any] = {}
        pending: dict[str, Expr] = {}
        sensitive: set[str] = set(adapter.sensitive)
        for attr, expr in sorted(node.attributes.items()):
            value = evaluate(expr, resolve)
            if value.sensitive:
                sensitive.add(attr)
            if isinstance(value, Unknown):
                pending[attr] = expr
            else:
                planned[attr] = value.value

        errors.extend(adapter.validate(self._ctx, node.address, planned))

        common: dict[str, Any] = {
            "address": node.address,
            "resource_type": node.resource_type,
            "planned": planned,
            "pending": pending,
            "dependencies": node.dependencies(),
            "sensitive": sorted(sensitive),
        }

        prior_inst = state.resources.get(node.address)
        if prior_inst is None:
            logger.debug("Classified %s as create", node.address)
            return ResourceChange(action=Action.CREATE, **common)

        prior = dict(prior_inst.attributes)
        diff = adapter.diff(planned, prior)
        if diff.requires_replace:
            action = Action.REPLACE
        elif not diff.empty:
            action = Action.UPDATE
        elif pending:
            action = Action.PENDING
        else:
            action = Action.NOOP
        logger.debug("Classified %s as %s", node.address, action.value)

        return ResourceChange(
            action=action,
            prior=prior,
            diff=diff.changes or None,
            force_new=sorted(diff.force_new),
            **common,
        )

    def _plan_deletes(self, state: State, addrs: set[str]) -> list[ResourceChange]:
        """Plan delete changes for the given addresses in reverse dependency order."""
        changes: list[ResourceChange] = []
        for addr in self._delete_order(state, addrs):
            inst = state.resources[addr]
            self._registry.get(inst.resource_type)  # fail early if unknown
            changes.append(
                ResourceChange(
                    address=addr,
                    resource_type=inst.resource_type,
                    action=Action.DELETE,
                    prior=dict(inst.attributes),
                    dependencies=list(inst.dependencies),
                    sensitive=list(inst.sensitive_attributes),
                )
            )
        return changes

    @staticmethod
    def _delete_order(state: State, delete_set: set[str]) -> list[str]:
        dep_map = {
            addr: [d for d in state.resources[addr].dependencies if d in delete_set]
            for addr in delete_set
        }
        return DependencyGraph(delete_set, dep_map).reverse_topological_order()
