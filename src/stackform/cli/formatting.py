"""Plan and apply output rendering (Terraform-style).

Sensitive attributes render as ``<redacted>``; attributes only known after
apply render as ``(known after apply)``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from stackform.engine.types import Action, ActionStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from stackform.core.state import OutputValue
    from stackform.engine.types import (
        ApplyResult,
        OutputChange,
        Plan,
        ResourceChange,
        ResourceDrift,
    )

REDACTED = "<redacted>"
KNOWN_AFTER_APPLY = "(known after apply)"


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "replace": _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete"),
    "delete": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "pending": _ActionStyle("cyan", "~?", "Re-diffing", "Re-diff complete"),
    "no-op": _ActionStyle("bright_black", " ", "Checking", "Up-to-date"),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "replace": "must be replaced",
    "delete": "will be destroyed",
    "pending": "may change once its dependencies are applied",
    "no-op": "is up-to-date",
}

_STATUS_COLORS: dict[str, str] = {
    "applied": "green",
    "no-op": "bright_black",
    "failed": "red",
    "blocked": "yellow",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan changes any resource or root output."""
    return plan.has_changes()


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def format_value(value: Any, *, sensitive: bool = False) -> str:
    """Format a value for display in a plan diff block."""
    if sensitive:
        return REDACTED
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``key -> formatted value`` pairs from a change."""
    sensitive = set(change.sensitive)
    attrs: dict[str, str] = {}

    if change.action == Action.CREATE:
        for k, v in (change.planned or {}).items():
            attrs[k] = format_value(v, sensitive=k in sensitive)
    elif change.diff:
        for k, d in change.diff.items():
            s = k in sensitive
            line = f"{format_value(d['from'], sensitive=s)} -> {format_value(d['to'], sensitive=s)}"
            if k in change.force_new:
                line += "  # forces replacement"
            attrs[k] = line

    for k in change.pending:
        attrs[k] = REDACTED if k in sensitive else KNOWN_AFTER_APPLY
    return dict(sorted(attrs.items()))


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_val = change.action.value
    sc = {"fg": _ACTION_STYLES[action_val].color}
    symbol = _ACTION_STYLES[action_val].symbol

    name = change.address.rsplit(".", 1)[-1]
    lines = [
        style(f"  # {change.address} {_ACTION_DESC[action_val]}", bold=True, **sc),
        style(f'  {symbol} resource "{change.resource_type}" "{name}" {{', **sc),
        *[
            style(f"      {symbol} {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(changes: list[ResourceChange], *, color: bool = True) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [format_change(c, color=color) for c in changes if c.action != Action.NOOP]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


_OUTPUT_ACTIONS = {"add": "create", "change": "update", "remove": "delete"}


def format_output_changes(changes: list[OutputChange], *, color: bool = True) -> str:
    """Render the ``Changes to Outputs:`` section of a plan."""
    style = styler(color)
    values: dict[str, str] = {}
    for oc in changes:
        if oc.action == "remove":
            values[oc.name] = "null"
        elif oc.sensitive:
            values[oc.name] = REDACTED
        elif not oc.known:
            values[oc.name] = KNOWN_AFTER_APPLY
        else:
            values[oc.name] = format_value(oc.value)

    actions = {oc.name: _OUTPUT_ACTIONS[oc.action] for oc in changes}
    lines = [style("Changes to Outputs:", bold=True)]
    for name, value in _align_values(values):
        s = _ACTION_STYLES[actions[name.rstrip()]]
        lines.append(style(f"  {s.symbol} {name} = {value}", fg=s.color))
    return "\n".join(lines)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks."""
    if not plan.output_changes:
        return format_changes(plan.changes, color=color)
    blocks = [format_change(c, color=color) for c in plan.changes if c.action != Action.NOOP]
    blocks.append(format_output_changes(plan.output_changes, color=color))
    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _counts(summary: Mapping[str, int]) -> tuple[int, int, int]:
    replace = summary.get("replace", 0)
    return (
        summary.get("create", 0) + replace,
        summary.get("update", 0) + summary.get("pending", 0),
        summary.get("delete", 0) + replace,
    )


def _format_summary(summary: Mapping[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line."""
    style = styler(color)
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(_counts(summary), verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def format_plan_summary(
    summary: Mapping[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(summary: Mapping[str, int], *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, 0 changed, 0 destroyed.``"""
    style = styler(color)
    header = style("Apply complete!", fg="green", bold=True)
    return f"{header} Resources: {_format_summary(summary, _APPLY_VERBS, color=color)}."


def format_apply_results(result: ApplyResult, *, color: bool = True) -> str:
    """One line per action: ``address: status (action)`` plus the reason, if any."""
    style = styler(color)
    lines = []
    for r in result.results:
        if r.status == ActionStatus.NOOP:
            continue
        text = f"  {r.address}: {r.status.value} ({r.action.value})"
        if r.reason:
            text += f": {r.reason}"
        lines.append(style(text, fg=_STATUS_COLORS[r.status.value]))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Drift / outputs
# ---------------------------------------------------------------------------


def format_drift(drift: list[ResourceDrift], *, color: bool = True) -> str:
    style = styler(color)
    blocks = []
    for d in drift:
        if d.status == "deleted":
            blocks.append(style(f"  # {d.address} has been deleted outside stackform", fg="red"))
            continue
        sensitive = set(d.sensitive)
        items = {
            k: f"{format_value(c['from'], sensitive=k in sensitive)} -> "
            f"{format_value(c['to'], sensitive=k in sensitive)}"
            for k, c in d.changes.items()
        }
        lines = [style(f"  # {d.address} has changed outside stackform", bold=True, fg="yellow")]
        lines.extend(style(f"      ~ {k} = {v}", fg="yellow") for k, v in _align_values(items))
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_outputs(outputs: Mapping[str, OutputValue]) -> str:
    """Render ``name = value`` lines, redacting sensitive outputs."""
    items = {
        name: format_value(o.value, sensitive=o.sensitive) for name, o in sorted(outputs.items())
    }
    return "\n".join(f"{k} = {v}" for k, v in _align_values(items))
