"""Concurrent plan executor.

Apply runs a graph of operations, one per planned change. An operation
becomes ready once every operation it waits for reached a successful
terminal state; ready operations are handed to a bounded thread pool.

Edges:

- create/update/replace/pending/no-op wait for the changes of the
  resources they depend on
- a delete waits for the deletes of resources that depended on it (per the
  recorded state dependencies) and for surviving resources that used to
  depend on it, so those stop referencing it first

The scheduler (the calling thread) is the only code touching the ``State``
record and the store: workers only call adapters and hand results back.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from stackform.core.expressions import evaluate, traverse
from stackform.core.state import OutputValue, ResourceInstance
from stackform.core.values import Known, Unknown
from stackform.engine.graph import DependencyGraph
from stackform.engine.retry import RetryPolicy, call_with_retry
from stackform.engine.types import Action, ActionResult, ActionStatus, ApplyResult
from stackform.errors import ConfigError, ExpressionError, FatalProviderError, ProviderError

if TYPE_CHECKING:
    from stackform.core.expressions import Ref
    from stackform.core.state import State
    from stackform.core.store import StateStore
    from stackform.core.values import Value
    from stackform.engine.adapters import EngineContext
    from stackform.engine.registry import ProviderRegistry
    from stackform.engine.types import Plan, ResourceChange

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["ResourceChange", Literal["start", "done"]], None]

# Cancellation is checked at least this often while workers are busy.
_CANCEL_POLL = 0.2


@dataclass
class _Operation:
    index: int
    change: ResourceChange
    deps: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    started: float = 0.0


@dataclass
class _Outcome:
    """What a worker did; produced attributes are applied by the scheduler."""

    action: Action
    attrs: dict[str, Any] | None = None
    attempts: int = 0
    deleted: bool = False
    error: ProviderError | None = None


def build_operations(plan: Plan, state: State) -> dict[str, _Operation]:
    ops = {c.address: _Operation(index=i, change=c) for i, c in enumerate(plan.changes)}
    deletes = {a for a, op in ops.items() if op.change.action == Action.DELETE}
    survivors = set(ops) - deletes

    for addr in survivors:
        ops[addr].deps.update(d for d in ops[addr].change.dependencies if d in survivors)

    for addr in deletes:
        inst = state.resources.get(addr)
        recorded = inst.dependencies if inst is not None else ops[addr].change.dependencies
        for dep in recorded:
            if dep in deletes:
                ops[dep].deps.add(addr)
    for addr in survivors:
        inst = state.resources.get(addr)
        for dep in inst.dependencies if inst is not None else ():
            if dep in deletes:
                ops[dep].deps.add(addr)

    for addr, op in ops.items():
        for dep in op.deps:
            ops[dep].dependents.add(addr)
    return ops


class Executor:
    """Run a plan's operations against the provider adapters."""

    def __init__(
        self,
        *,
        store: StateStore,
        registry: ProviderRegistry,
        ctx: EngineContext,
        parallelism: int = 10,
        retry: RetryPolicy | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self.store = store
        self.registry = registry
        self.ctx = ctx
        self.parallelism = parallelism
        self.retry = retry or RetryPolicy()

    def execute(
        self,
        plan: Plan,
        state: State,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> ApplyResult:
        """Apply *plan* on top of *state* (read under the caller's lock).

        *state* is updated in place and persisted after every operation that
        changed it. Never raises for provider failures: those are reported
        per action in the returned ``ApplyResult``.
        """
        run = _Run(self, plan, state, progress, cancel, timeout)
        return run.execute()

    # ── Worker side ─────────────────────────────────────────────────

    def _call(
        self, fn: Callable[[], Any], label: str, *, returns_attrs: bool = True
    ) -> tuple[Any, int]:
        result, attempts = call_with_retry(fn, self.retry, label=label)
        if returns_attrs and not isinstance(result, dict):
            raise FatalProviderError(f"{label}: adapter returned no attributes", attempts=attempts)
        return result, attempts

    def run_operation(
        self, change: ResourceChange, desired: dict[str, Any], prior: dict[str, Any]
    ) -> _Outcome:
        adapter = self.registry.get(change.resource_type)
        addr = change.address
        action = change.action
        attempts = 0
        deleted = False
        try:
            if action == Action.DELETE:
                _, attempts = self._call(
                    lambda: adapter.delete(self.ctx, addr, prior), f"delete {addr}", returns_attrs=False
                )
                return _Outcome(Action.DELETE, attempts=attempts, deleted=True)

            if action in (Action.UPDATE, Action.PENDING):
                try:
                    diff = adapter.diff(desired, prior)
                except ProviderError:
                    raise
                except Exception as e:
                    raise FatalProviderError(f"diff {addr}: {type(e).__name__}: {e}") from e
                if diff.requires_replace:
                    logger.info("%s: %s forces replacement", addr, ", ".join(sorted(diff.force_new)))
                    action = Action.REPLACE
                elif diff.empty:
                    return _Outcome(Action.NOOP)
                else:
                    attrs, attempts = self._call(
                        lambda: adapter.update(self.ctx, addr, desired, prior, diff),
                        f"update {addr}",
                    )
                    return _Outcome(Action.UPDATE, attrs=attrs, attempts=attempts)

            if action == Action.REPLACE:
                _, attempts = self._call(
                    lambda: adapter.delete(self.ctx, addr, prior), f"delete {addr}", returns_attrs=False
                )
                deleted = True

            attrs, n = self._call(lambda: adapter.create(self.ctx, addr, desired), f"create {addr}")
            return _Outcome(action, attrs=attrs, attempts=attempts + n, deleted=deleted)
        except ProviderError as e:
            return _Outcome(action, attempts=attempts + e.attempts, deleted=deleted, error=e)


class _Run:
    """Scheduler state for one ``Executor.execute`` call."""

    def __init__(
        self,
        executor: Executor,
        plan: Plan,
        state: State,
        progress: ProgressCallback | None,
        cancel: threading.Event | None,
        timeout: float | None,
    ) -> None:
        self.executor = executor
        self.plan = plan
        self.state = state
        self.progress = progress
        self.cancel = cancel
        self.deadline = time.monotonic() + timeout if timeout is not None else None

        self.ops = build_operations(plan, state)
        self.graph = DependencyGraph(self.ops, {addr: op.deps for addr, op in self.ops.items()})
        self.waiting = {addr: set(op.deps) for addr, op in self.ops.items()}
        self.results: dict[str, ActionResult] = {}
        self.ready: list[tuple[int, str]] = []
        for addr, deps in self.waiting.items():
            if not deps:
                heapq.heappush(self.ready, (self.ops[addr].index, addr))

    # ── Main loop ───────────────────────────────────────────────────

    def execute(self) -> ApplyResult:
        parallelism = self.executor.parallelism
        logger.info("Applying %d operations (parallelism=%d)", len(self.ops), parallelism)
        running: dict[Future[_Outcome], str] = {}

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="stackform") as pool:
            while True:
                stop = self._stop_reason()
                while self.ready and stop is None and len(running) < parallelism:
                    _, addr = heapq.heappop(self.ready)
                    future = self._start(addr, pool)
                    if future is not None:
                        running[future] = addr
                    stop = self._stop_reason()

                if not running:
                    if stop is None and self.ready:
                        continue
                    break

                done, _ = wait(running, timeout=self._wait_timeout(), return_when=FIRST_COMPLETED)
                for future in done:
                    addr = running.pop(future)
                    self._complete(addr, future.result())

        reason = self._stop_reason() or "not started"
        for addr in sorted(set(self.ops) - set(self.results), key=lambda a: self.ops[a].index):
            self._finish(addr, ActionStatus.BLOCKED, self.ops[addr].change.action, reason=reason)

        outputs = self._write_outputs()
        ordered = sorted(self.results.values(), key=lambda r: self.ops[r.address].index)
        result = ApplyResult(results=ordered, outputs=outputs)
        logger.info("Apply finished: %s", {k: v for k, v in result.status_summary().items() if v})
        return result

    def _stop_reason(self) -> str | None:
        if self.cancel is not None and self.cancel.is_set():
            return "canceled"
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "deadline exceeded"
        return None

    def _wait_timeout(self) -> float | None:
        if self._stop_reason() is not None:
            return None
        timeouts: list[float] = []
        if self.cancel is not None:
            timeouts.append(_CANCEL_POLL)
        if self.deadline is not None:
            timeouts.append(max(self.deadline - time.monotonic(), 0.0))
        return min(timeouts) if timeouts else None

    # ── Starting operations ─────────────────────────────────────────

    def _start(self, addr: str, pool: ThreadPoolExecutor) -> Future[_Outcome] | None:
        op = self.ops[addr]
        change = op.change
        op.started = time.monotonic()
        if self.progress:
            self.progress(change, "start")

        if change.action == Action.NOOP:
            self._record_dependencies(addr, change)
            self._finish(addr, ActionStatus.NOOP, Action.NOOP)
            return None

        inst = self.state.resources.get(addr)
        prior = dict(inst.attributes) if inst is not None else dict(change.prior or {})

        desired: dict[str, Any] = {}
        if change.action != Action.DELETE:
            try:
                desired = self._desired(change)
            except ConfigError as e:
                self._finish(addr, ActionStatus.FAILED, change.action, reason=str(e))
                return None

        logger.debug("Starting %s: %s", addr, change.action.value)
        return pool.submit(self.executor.run_operation, change, desired, prior)

    def _desired(self, change: ResourceChange) -> dict[str, Any]:
        """Planned attributes plus pending expressions resolved against fresh state."""
        desired = dict(change.planned or {})
        for attr, expr in sorted(change.pending.items()):
            value = evaluate(expr, self._resolve)
            if isinstance(value, Unknown):
                raise ExpressionError(
                    f"{change.address}.{attr} still depends on {value.producer} after its apply"
                )
            desired[attr] = value.value
        return desired

    def _resolve(self, ref: Ref) -> Value:
        inst = self.state.resources.get(ref.address)
        if inst is None:
            raise ExpressionError(f"{ref.address} is not in state (referenced as {ref.display()})")
        value: Any = inst.attributes
        sensitive = bool(ref.path) and str(ref.path[0]) in inst.sensitive_attributes
        return Known(traverse(value, list(ref.path), what=ref.display()), sensitive=sensitive)

    # ── Completing operations ───────────────────────────────────────

    def _complete(self, addr: str, outcome: _Outcome) -> None:
        change = self.ops[addr].change

        if outcome.error is not None:
            if outcome.deleted:
                self.state.resources.pop(addr, None)
                self._persist()
            logger.error("%s %s failed: %s", change.action.value, addr, outcome.error)
            self._finish(
                addr,
                ActionStatus.FAILED,
                outcome.action,
                reason=str(outcome.error),
                attempts=outcome.attempts,
            )
            return

        if outcome.action == Action.DELETE:
            self.state.resources.pop(addr, None)
            self._persist()
        elif outcome.action == Action.NOOP:
            self._record_dependencies(addr, change)
            self._finish(addr, ActionStatus.NOOP, Action.NOOP)
            return
        else:
            self._record(change, outcome)
            self._persist()

        logger.info("%s: %s complete", addr, outcome.action.value)
        self._finish(addr, ActionStatus.APPLIED, outcome.action, attempts=outcome.attempts)

    def _record(self, change: ResourceChange, outcome: _Outcome) -> None:
        inst = self.state.resources.get(change.address)
        if inst is None or outcome.action in (Action.CREATE, Action.REPLACE):
            inst = ResourceInstance(address=change.address, resource_type=change.resource_type)
            self.state.resources[change.address] = inst
        inst.set_attributes(outcome.attrs)
        inst.dependencies = list(change.dependencies)
        inst.sensitive_attributes = list(change.sensitive)

    def _record_dependencies(self, addr: str, change: ResourceChange) -> None:
        inst = self.state.resources.get(addr)
        if inst is None:
            return
        if inst.dependencies != change.dependencies or inst.sensitive_attributes != change.sensitive:
            inst.dependencies = list(change.dependencies)
            inst.sensitive_attributes = list(change.sensitive)
            self._persist()

    def _persist(self) -> None:
        self.state.serial = self.executor.store.write(self.state, self.state.serial)

    def _finish(
        self,
        addr: str,
        status: ActionStatus,
        action: Action,
        *,
        reason: str | None = None,
        attempts: int = 0,
    ) -> None:
        op = self.ops[addr]
        duration = time.monotonic() - op.started if op.started else 0.0
        self.results[addr] = ActionResult(
            address=addr,
            action=action,
            status=status,
            reason=reason,
            attempts=attempts,
            duration=round(duration, 3),
        )
        if self.progress and op.started:
            self.progress(op.change, "done")

        if status in (ActionStatus.APPLIED, ActionStatus.NOOP):
            for dependent in sorted(op.dependents):
                pending = self.waiting[dependent]
                pending.discard(addr)
                if not pending and dependent not in self.results:
                    heapq.heappush(self.ready, (self.ops[dependent].index, dependent))
            return

        for dependent in sorted(self.graph.transitive_dependents(addr)):
            if dependent not in self.results:
                self.results[dependent] = ActionResult(
                    address=dependent,
                    action=self.ops[dependent].change.action,
                    status=ActionStatus.BLOCKED,
                    reason=f"dependency {addr} {status.value}",
                )

    # ── Outputs ─────────────────────────────────────────────────────

    def _write_outputs(self) -> dict[str, Any]:
        if self.plan.metadata.destroy:
            if self.state.outputs and not self.state.resources:
                self.state.outputs = {}
                self._persist()
            return {}

        outputs: dict[str, OutputValue] = {}
        for name, spec in sorted(self.plan.outputs.items()):
            try:
                value = evaluate(spec.expr, self._resolve)
            except ConfigError as e:
                logger.warning("Output %s not available: %s", name, e)
                continue
            outputs[name] = OutputValue(value=value.value, sensitive=spec.sensitive or value.sensitive)

        if outputs != self.state.outputs:
            self.state.outputs = outputs
            self._persist()
        return {name: o.value for name, o in outputs.items()}
