"""Plan/apply engine."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any

from stackform.core.state import compute_state_digest
from stackform.engine.adapters import EngineContext, values_differ
from stackform.engine.executor import Executor, ProgressCallback
from stackform.engine.planner import Planner
from stackform.engine.retry import RetryPolicy, call_with_retry
from stackform.engine.types import ResourceDrift
from stackform.errors import ApplyCanceled, ConfigError, PartialApplyError, StaleSerialError

if TYPE_CHECKING:
    import threading
    from collections.abc import Mapping

    from stackform.core.state import OutputValue, State
    from stackform.core.store import StateStore
    from stackform.engine.graph import ResourceGraph
    from stackform.engine.registry import ProviderRegistry
    from stackform.engine.types import ApplyResult, Plan

logger = logging.getLogger(__name__)


class StackEngine:
    """Terraform-like plan/apply engine over pluggable provider adapters."""

    def __init__(
        self,
        *,
        store: StateStore,
        registry: ProviderRegistry,
        providers: Mapping[str, Mapping[str, Any]] | None = None,
        parallelism: int = 10,
        lock_timeout: float = 0.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._providers = dict(providers or {})
        self._parallelism = parallelism
        self._lock_timeout = lock_timeout
        self._retry = retry or RetryPolicy()

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def _ctx(self, graph: ResourceGraph | None = None) -> EngineContext:
        providers = {name: dict(s) for name, s in (graph.providers if graph else {}).items()}
        for name, settings in self._providers.items():
            providers[name] = {**providers.get(name, {}), **settings}
        return EngineContext(providers=providers)

    # ── Refresh / drift ─────────────────────────────────────────────

    def _refresh_state_in_place(self, state: State) -> list[ResourceDrift]:
        logger.debug("Refreshing %d resources", len(state.resources))
        ctx = self._ctx()
        drift: list[ResourceDrift] = []

        for address, inst in sorted(state.resources.items()):
            adapter = self._registry.get(inst.resource_type)
            prior = dict(inst.attributes)
            attrs, _ = call_with_retry(
                lambda a=address, p=prior: adapter.read(ctx, a, p),
                self._retry,
                label=f"read {address}",
            )
            if attrs is None:
                del state.resources[address]
                drift.append(
                    ResourceDrift(address=address, resource_type=inst.resource_type, status="deleted")
                )
                continue

            changes = {
                k: {"from": prior.get(k), "to": attrs.get(k)}
                for k in sorted(set(prior) | set(attrs))
                if values_differ(attrs.get(k), prior.get(k), strategy="exact")
            }
            if changes:
                inst.set_attributes(attrs)
                drift.append(
                    ResourceDrift(
                        address=address,
                        resource_type=inst.resource_type,
                        status="changed",
                        changes=changes,
                        sensitive=list(inst.sensitive_attributes),
                    )
                )

        logger.debug("State refreshed, %d drifted", len(drift))
        return drift

    def refresh(self, *, persist: bool = False) -> tuple[State, State, list[ResourceDrift]]:
        """Read every recorded resource. Returns (pre_refresh, post_refresh, drift)."""
        with self._store.acquire_lock(self._lock_timeout):
            state = self._store.read()
            snapshot = state.model_copy(deep=True)
            drift = self._refresh_state_in_place(state)
            if drift and persist:
                state.serial = self._store.write(state, state.serial)
            return snapshot, state, drift

    def drift(self) -> list[ResourceDrift]:
        """Detect drift without touching the stored record."""
        return self.refresh(persist=False)[2]

    # ── Plan / apply ────────────────────────────────────────────────

    def plan(self, graph: ResourceGraph, *, destroy: bool = False, refresh: bool = False) -> Plan:
        # Only lock when refresh may write state.
        lock_cm = (
            self._store.acquire_lock(self._lock_timeout) if refresh else contextlib.nullcontext()
        )
        with lock_cm:
            state = self._store.read()
            if refresh and self._refresh_state_in_place(state):
                state.serial = self._store.write(state, state.serial)
            return Planner(self._registry, self._ctx(graph)).plan(
                graph, state, destroy=destroy, refresh=refresh
            )

    def _check_plan(self, plan: Plan, state: State) -> None:
        meta = plan.metadata
        if state.lineage != meta.state_lineage:
            if state.serial == 0 and not state.resources and meta.state_serial == 0:
                # Fresh store in another process: adopt the plan's lineage.
                state.lineage = meta.state_lineage
            else:
                raise StaleSerialError("State lineage changed; re-run plan")
        if state.serial != meta.state_serial:
            raise StaleSerialError(
                "State serial changed; re-run plan",
                expected=meta.state_serial,
                actual=state.serial,
            )
        if compute_state_digest(state) != meta.state_digest:
            raise StaleSerialError("State digest changed; re-run plan")

    def apply(
        self,
        plan: Plan,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> ApplyResult:
        """Execute *plan* under the state lock.

        Raises:
            LockConflictError: If another run holds the lock.
            StaleSerialError: If state moved on since *plan* was computed.
            PartialApplyError: If any action failed or was blocked.
        """
        with self._store.acquire_lock(self._lock_timeout):
            state = self._store.read()
            self._check_plan(plan, state)

            executor = Executor(
                store=self._store,
                registry=self._registry,
                ctx=self._ctx(),
                parallelism=self._parallelism,
                retry=self._retry,
            )
            try:
                result = executor.execute(plan, state, progress=progress, cancel=cancel, timeout=timeout)
            except KeyboardInterrupt as e:  # pragma: no cover
                raise ApplyCanceled("Apply canceled") from e

        if not result.ok:
            raise PartialApplyError(result)
        return result

    # ── Outputs ─────────────────────────────────────────────────────

    def outputs(self) -> dict[str, OutputValue]:
        return dict(self._store.read().outputs)

    def output(self, name: str) -> OutputValue:
        outputs = self.outputs()
        if name not in outputs:
            raise ConfigError(f"Output '{name}' not found in state")
        return outputs[name]
