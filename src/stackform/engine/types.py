"""Engine types (plan, changes, metadata, apply results)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from stackform.core.expressions import Expr  # noqa: TC001 (Pydantic needs this at runtime)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    # Existing resource whose only differences depend on values not known
    # until apply; re-diffed by the executor into update/replace/no-op.
    PENDING = "pending"
    NOOP = "no-op"


class ActionStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "no-op"
    FAILED = "failed"
    BLOCKED = "blocked"


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool = False
    refresh: bool = False
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    address: str
    resource_type: str
    action: Action
    planned: dict[str, Any] | None = None
    pending: dict[str, Expr] = Field(default_factory=dict)
    prior: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    force_new: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    sensitive: list[str] = Field(default_factory=list)


class OutputSpec(BaseModel):
    expr: Expr
    sensitive: bool = False
    description: str = ""


class OutputChange(BaseModel):
    """A root output that apply will add, change or remove."""

    name: str
    action: Literal["add", "change", "remove"]
    value: Any = None
    known: bool = True
    sensitive: bool = False


class Plan(BaseModel):
    metadata: PlanMetadata
    changes: list[ResourceChange]
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)
    output_changes: list[OutputChange] = Field(default_factory=list)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def has_changes(self) -> bool:
        return bool(self.output_changes) or any(c.action != Action.NOOP for c in self.changes)

    def get(self, address: str) -> ResourceChange | None:
        return next((c for c in self.changes if c.address == address), None)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ActionResult(BaseModel):
    """Terminal outcome of one planned action."""

    address: str
    action: Action
    status: ActionStatus
    reason: str | None = None
    attempts: int = 0
    duration: float = 0.0


class ApplyResult(BaseModel):
    results: list[ActionResult] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def by_address(self) -> dict[str, ActionResult]:
        return {r.address: r for r in self.results}

    def _with_status(self, status: ActionStatus) -> list[ActionResult]:
        return [r for r in self.results if r.status == status]

    @property
    def applied(self) -> list[ActionResult]:
        return self._with_status(ActionStatus.APPLIED)

    @property
    def failed(self) -> list[ActionResult]:
        return self._with_status(ActionStatus.FAILED)

    @property
    def blocked(self) -> list[ActionResult]:
        return self._with_status(ActionStatus.BLOCKED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.blocked

    def summary(self) -> dict[str, int]:
        """Count applied actions by kind."""
        counts = {a.value: 0 for a in Action}
        for r in self.applied:
            counts[r.action.value] += 1
        return counts

    def status_summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ActionStatus}
        for r in self.results:
            counts[r.status.value] += 1
        return counts


class ResourceDrift(BaseModel):
    """Difference between recorded state and the live resource."""

    address: str
    resource_type: str
    status: Literal["changed", "deleted"]
    changes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    sensitive: list[str] = Field(default_factory=list)
