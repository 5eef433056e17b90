"""Deterministic in-memory provider adapter.

``MockProvider`` needs no network: it stores attributes in a dict, derives
computed attributes (``id`` by default) from a hash of the address and a
per-address generation counter, and records every call. It is thread-safe
and tracks how many calls were in flight at once, so it can back concurrent
executor runs in tests. Failures can be injected per address and operation.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from stackform.engine.adapters import ProviderAdapter
from stackform.errors import FatalProviderError, TransientProviderError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from stackform.engine.adapters import AttributeDiff, CompareStrategy, EngineContext

logger = logging.getLogger(__name__)

Operation = Literal["create", "read", "update", "delete"]


@dataclass
class _Failure:
    transient: bool
    remaining: int | None
    message: str


class MockProvider(ProviderAdapter):
    """In-memory adapter usable for any resource type tag."""

    def __init__(
        self,
        *,
        computed: Iterable[str] = ("id",),
        force_new: Iterable[str] = (),
        sensitive: Iterable[str] = (),
        compare: Mapping[str, CompareStrategy] | None = None,
        latency: float = 0.0,
    ) -> None:
        self.computed = frozenset(computed)
        self.force_new = frozenset(force_new)
        self.sensitive = frozenset(sensitive)
        self.compare = dict(compare or {})
        self.latency = latency

        self.store: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.events: list[tuple[str, str, str]] = []
        self.max_in_flight = 0

        self._lock = threading.Lock()
        self._in_flight = 0
        self._generations: dict[str, int] = {}
        self._gone: set[str] = set()
        self._failures: dict[tuple[str, str], _Failure] = {}

    # ── Failure injection / drift simulation ───────────────────────

    def fail(
        self,
        address: str,
        op: Operation = "create",
        *,
        transient: bool = False,
        times: int | None = None,
        message: str | None = None,
    ) -> None:
        """Make *op* on *address* fail (``times=None`` means every time)."""
        kind = "throttled" if transient else "rejected"
        self._failures[(op, address)] = _Failure(
            transient=transient,
            remaining=times,
            message=message or f"{op} {address}: {kind} by mock provider",
        )

    def simulate_drift(self, address: str, **attrs: Any) -> None:
        with self._lock:
            self.store.setdefault(address, {}).update(attrs)

    def simulate_deletion(self, address: str) -> None:
        with self._lock:
            self.store.pop(address, None)
            self._gone.add(address)

    # ── Bookkeeping ─────────────────────────────────────────────────

    def _enter(self, op: str, address: str) -> None:
        with self._lock:
            self.calls.append((op, address))
            self.events.append(("start", op, address))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            failure = self._failures.get((op, address))
            if failure is not None and failure.remaining is not None:
                if failure.remaining <= 0:
                    failure = None
                else:
                    failure.remaining -= 1
        if self.latency:
            time.sleep(self.latency)
        if failure is not None:
            self._exit(op, address)
            if failure.transient:
                raise TransientProviderError(failure.message)
            raise FatalProviderError(failure.message)

    def _exit(self, op: str, address: str) -> None:
        with self._lock:
            self._in_flight -= 1
            self.events.append(("end", op, address))

    def _computed_values(self, address: str) -> dict[str, str]:
        generation = self._generations.get(address, 0) + 1
        self._generations[address] = generation
        digest = hashlib.sha256(f"{address}#{generation}".encode()).hexdigest()[:10]
        name = address.rsplit(".", 1)[-1]
        return {
            attr: f"{name}-{digest}" if attr == "id" else f"{attr}-{digest}"
            for attr in sorted(self.computed)
        }

    # ── Adapter interface ───────────────────────────────────────────

    def read(
        self, ctx: EngineContext, address: str, prior: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        _ = ctx
        self._enter("read", address)
        try:
            with self._lock:
                if address in self._gone:
                    return None
                if address in self.store:
                    return dict(self.store[address])
            # Never seen by this instance (e.g. a fresh process): trust the record.
            return dict(prior)
        finally:
            self._exit("read", address)

    def create(self, ctx: EngineContext, address: str, attrs: Mapping[str, Any]) -> dict[str, Any]:
        _ = ctx
        self._enter("create", address)
        try:
            with self._lock:
                out = {**attrs, **self._computed_values(address)}
                self.store[address] = dict(out)
                self._gone.discard(address)
            logger.debug("mock create %s", address)
            return out
        finally:
            self._exit("create", address)

    def update(
        self,
        ctx: EngineContext,
        address: str,
        desired: Mapping[str, Any],
        prior: Mapping[str, Any],
        diff: AttributeDiff,
    ) -> dict[str, Any]:
        _ = ctx, diff
        self._enter("update", address)
        try:
            with self._lock:
                out = {**prior, **desired}
                self.store[address] = dict(out)
            logger.debug("mock update %s", address)
            return out
        finally:
            self._exit("update", address)

    def delete(self, ctx: EngineContext, address: str, prior: Mapping[str, Any]) -> None:
        _ = ctx, prior
        self._enter("delete", address)
        try:
            with self._lock:
                self.store.pop(address, None)
                self._gone.add(address)
            logger.debug("mock delete %s", address)
        finally:
            self._exit("delete", address)
