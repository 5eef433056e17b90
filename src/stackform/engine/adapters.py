"""Engine-facing provider adapter interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Mapping

CompareStrategy: TypeAlias = Literal["partial", "exact", "set"]


def values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    Comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.
    """
    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            try:
                return set(desired) != set(prior)
            except TypeError:
                return sorted(map(repr, desired)) != sorted(map(repr, prior))
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(values_differ(v, prior.get(k), strategy="partial") for k, v in desired.items())
    return desired != prior


@dataclass(frozen=True)
class AttributeDiff:
    """Attribute-level difference between desired and prior values."""

    changes: dict[str, dict[str, Any]] = field(default_factory=dict)
    force_new: frozenset[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not self.changes

    @property
    def requires_replace(self) -> bool:
        return bool(self.force_new)


@dataclass(frozen=True)
class EngineContext:
    """Context passed to adapters.

    ``providers`` holds opaque per-provider settings (region, credentials
    profile, ...) merged from ``provider`` blocks and the config file.
    """

    providers: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def provider_config(self, resource_type: str) -> Mapping[str, Any]:
        return self.providers.get(resource_type.split("_", 1)[0], {})


class ProviderAdapter:
    """Base class for provider adapters, one per resource type tag.

    Adapters translate engine actions into remote API calls. Subclass and
    override the CRUD methods; ``diff`` and ``validate`` have usable defaults.
    Failures are raised as ``TransientProviderError`` (retried) or
    ``FatalProviderError``; any other exception counts as fatal.

    Schema hints:

    - ``computed``:  attributes only the remote side produces (e.g. ``id``)
    - ``force_new``: attributes that cannot change in place (replace instead)
    - ``sensitive``: attributes always redacted in renderings
    - ``compare``:   per-attribute comparison strategy for ``diff``
    """

    computed: frozenset[str] = frozenset({"id"})
    force_new: frozenset[str] = frozenset()
    sensitive: frozenset[str] = frozenset()
    compare: Mapping[str, CompareStrategy] = {}

    def validate(self, ctx: EngineContext, address: str, attrs: Mapping[str, Any]) -> list[str]:
        """Single-resource validation of known attributes.

        Return list of error messages (empty = valid).
        """
        _ = ctx
        return [
            f"{address}: '{name}' is computed by the provider and cannot be set"
            for name in sorted(set(attrs) & self.computed)
        ]

    def diff(self, desired: Mapping[str, Any], prior: Mapping[str, Any]) -> AttributeDiff:
        """Compare desired (known) attributes against the prior applied ones."""
        changes = {
            k: {"from": prior.get(k), "to": v}
            for k, v in desired.items()
            if values_differ(v, prior.get(k), strategy=self.compare.get(k))
        }
        return AttributeDiff(
            changes=changes,
            force_new=frozenset(k for k in changes if k in self.force_new),
        )

    def read(
        self, ctx: EngineContext, address: str, prior: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Read the live resource. Return None if it no longer exists."""
        raise NotImplementedError

    def create(self, ctx: EngineContext, address: str, attrs: Mapping[str, Any]) -> dict[str, Any]:
        """Create the resource. Return all attributes, computed ones included."""
        raise NotImplementedError

    def update(
        self,
        ctx: EngineContext,
        address: str,
        desired: Mapping[str, Any],
        prior: Mapping[str, Any],
        diff: AttributeDiff,
    ) -> dict[str, Any]:
        """Update the resource in place. Return all attributes."""
        raise NotImplementedError

    def delete(self, ctx: EngineContext, address: str, prior: Mapping[str, Any]) -> None:
        """Delete the resource."""
        raise NotImplementedError
