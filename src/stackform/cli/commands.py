"""CLI command implementations."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Literal

import typer

from stackform.cli import app
from stackform.cli.errors import handle_error

if TYPE_CHECKING:
    from stackform.config.schema import Config
    from stackform.engine.graph import ResourceGraph
    from stackform.engine.types import ApplyResult, Plan

ConfigPath = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to the configuration file (default: stackform.yaml, if present).",
    ),
]

NoColor = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output."),
]

AutoApprove = Annotated[
    bool,
    typer.Option("--auto-approve", "-auto-approve", help="Skip interactive approval."),
]

Refresh = Annotated[
    bool,
    typer.Option("--refresh", help="Refresh state from the live resources before planning."),
]

Vars = Annotated[
    list[str] | None,
    typer.Option("--var", "-var", help="Set a root variable (NAME=VALUE). Repeatable."),
]

LockTimeout = Annotated[
    str | None,
    typer.Option(
        "--lock-timeout", "-lock-timeout", help="How long to wait for the state lock (e.g. 30s)."
    ),
]

Parallelism = Annotated[
    int | None,
    typer.Option("--parallelism", min=1, help="Maximum number of concurrent provider calls."),
]

Timeout = Annotated[
    str | None,
    typer.Option("--timeout", help="Deadline for the whole apply (e.g. 10m)."),
]


def _use_color(no_color: bool) -> bool:
    """Determine whether to use color output."""
    return not (no_color or os.environ.get("NO_COLOR"))


def _parse_vars(values: list[str] | None) -> dict[str, Any]:
    from stackform.errors import ConfigError

    parsed: dict[str, Any] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ConfigError(f"Invalid --var '{item}': expected NAME=VALUE")
        parsed[name.strip()] = value
    return parsed


def _load(
    config: Path | None,
    *,
    lock_timeout: str | None = None,
    parallelism: int | None = None,
) -> Config:
    """Load *config*, or ``stackform.yaml``, or defaults when neither exists."""
    from stackform.config import default_config, load
    from stackform.config.loader import DEFAULT_CONFIG_NAME
    from stackform.config.schema import parse_duration
    from stackform.errors import ConfigError

    if config is not None:
        cfg = load(config)
    elif Path(DEFAULT_CONFIG_NAME).is_file():
        cfg = load(DEFAULT_CONFIG_NAME)
    else:
        cfg = default_config(Path.cwd())

    if lock_timeout is not None:
        try:
            cfg.lock_timeout = parse_duration(lock_timeout)
        except ValueError as exc:
            raise ConfigError(f"--lock-timeout: {exc}") from exc
    if parallelism is not None:
        cfg.parallelism = parallelism
    return cfg


def _parse_timeout(timeout: str | None) -> float | None:
    from stackform.config.schema import parse_duration
    from stackform.errors import ConfigError

    if timeout is None:
        return None
    try:
        return parse_duration(timeout)
    except ValueError as exc:
        raise ConfigError(f"--timeout: {exc}") from exc


def _apply_with_progress(
    plan_obj: Plan,
    cfg: Config,
    *,
    graph: ResourceGraph | None,
    color: bool,
    timeout: float | None,
) -> ApplyResult:
    """Apply a plan with a Rich progress bar and per-resource status lines."""
    from rich.console import Console
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    from stackform.cli.formatting import _ACTION_STYLES
    from stackform.config import apply
    from stackform.engine.types import Action, ResourceChange

    console = Console(no_color=not color)
    actionable = [c for c in plan_obj.changes if c.action != Action.NOOP]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Applying", total=len(actionable))

        def on_progress(change: ResourceChange, event: Literal["start", "done"]) -> None:
            if change.action == Action.NOOP:
                return
            s = _ACTION_STYLES[change.action.value]
            if event == "start":
                progress.update(task, description=f"{change.address}: {s.progress_verb}...")
            elif event == "done":
                progress.console.print(f"  {change.address}: {s.done_verb}")
                progress.advance(task)

        return apply(plan_obj, cfg, graph=graph, progress=on_progress, timeout=timeout)


def _confirm_and_apply(
    plan_obj: Plan,
    cfg: Config,
    *,
    graph: ResourceGraph | None,
    color: bool,
    auto_approve: bool,
    confirm_msg: str,
    empty_msg: str,
    timeout: float | None = None,
) -> None:
    """Shared flow: show plan -> confirm -> apply with progress -> print summary.

    Exits with code 0 if no actionable changes.
    """
    from stackform.cli.formatting import (
        format_apply_summary,
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )

    if not has_actionable_changes(plan_obj):
        typer.echo(empty_msg)
        raise typer.Exit(0)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm(confirm_msg, abort=True)
        except typer.Abort as e:
            typer.echo("Apply canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        result = _apply_with_progress(plan_obj, cfg, graph=graph, color=color, timeout=timeout)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo()
    typer.echo(format_apply_summary(result.summary(), color=color))


@app.command()
def plan(
    config: ConfigPath = None,
    var: Vars = None,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Save plan to file."),
    ] = None,
    destroy: Annotated[
        bool,
        typer.Option("--destroy", help="Plan the removal of every managed resource."),
    ] = False,
    refresh: Refresh = False,
    lock_timeout: LockTimeout = None,
    no_color: NoColor = False,
) -> None:
    """Show changes required by the current configuration.

    Exits 0 when there is nothing to do and 2 when the plan has changes.
    """
    from stackform.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from stackform.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, lock_timeout=lock_timeout)
        plan_obj = plan_fn(cfg, variables=_parse_vars(var), destroy=destroy, refresh=refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))

    if out is not None:
        plan_obj.save(out)
        typer.echo(f"\nPlan saved to {out}")

    if has_actionable_changes(plan_obj):
        raise typer.Exit(2)


@app.command(name="apply")
def apply_cmd(
    plan_file: Annotated[
        Path | None,
        typer.Argument(help="Saved plan file to apply."),
    ] = None,
    config: ConfigPath = None,
    var: Vars = None,
    auto_approve: AutoApprove = False,
    refresh: Refresh = False,
    parallelism: Parallelism = None,
    lock_timeout: LockTimeout = None,
    timeout: Timeout = None,
    no_color: NoColor = False,
) -> None:
    """Apply the changes required by the current configuration."""
    from stackform.config import build
    from stackform.engine.types import Plan

    color = _use_color(no_color)
    try:
        cfg = _load(config, lock_timeout=lock_timeout, parallelism=parallelism)
        deadline = _parse_timeout(timeout)
        graph = build(cfg, _parse_vars(var))
        if plan_file is not None:
            plan_obj = Plan.load(plan_file)
        else:
            from stackform.config import engine_from_config

            plan_obj = engine_from_config(cfg, graph=graph).plan(graph, refresh=refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        graph=graph,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you want to apply these changes?",
        empty_msg="No changes. Resources are up-to-date.",
        timeout=deadline,
    )


@app.command()
def destroy(
    config: ConfigPath = None,
    var: Vars = None,
    auto_approve: AutoApprove = False,
    parallelism: Parallelism = None,
    lock_timeout: LockTimeout = None,
    timeout: Timeout = None,
    no_color: NoColor = False,
) -> None:
    """Destroy all managed resources."""
    from stackform.config import build, engine_from_config

    color = _use_color(no_color)
    try:
        cfg = _load(config, lock_timeout=lock_timeout, parallelism=parallelism)
        deadline = _parse_timeout(timeout)
        graph = build(cfg, _parse_vars(var))
        plan_obj = engine_from_config(cfg, graph=graph).plan(graph, destroy=True)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        graph=graph,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you really want to destroy all resources?",
        empty_msg="No resources to destroy.",
        timeout=deadline,
    )


@app.command()
def output(
    name: Annotated[
        str | None,
        typer.Argument(help="Print a single output."),
    ] = None,
    config: ConfigPath = None,
    no_color: NoColor = False,
) -> None:
    """Show root outputs recorded by the last apply."""
    from stackform.cli.formatting import format_outputs, format_value
    from stackform.config import output as output_fn
    from stackform.errors import ConfigError

    color = _use_color(no_color)
    try:
        outputs = output_fn(_load(config))
        if name is not None and name not in outputs:
            raise ConfigError(f"Output '{name}' not found in state")
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if name is not None:
        typer.echo(format_value(outputs[name].value, sensitive=outputs[name].sensitive))
    elif outputs:
        typer.echo(format_outputs(outputs))
    else:
        typer.echo("No outputs found.")


@app.command(name="refresh")
def refresh_cmd(
    config: ConfigPath = None,
    auto_approve: AutoApprove = False,
    lock_timeout: LockTimeout = None,
    no_color: NoColor = False,
) -> None:
    """Refresh state from the live resources."""
    from stackform.cli.formatting import format_drift
    from stackform.config import drift as drift_fn
    from stackform.config import refresh as refresh_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, lock_timeout=lock_timeout)
        changes = drift_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No changes. State is up-to-date with the live resources.")
        raise typer.Exit(0)

    typer.echo(format_drift(changes, color=color))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm("Do you want to update the state file?", abort=True)
        except typer.Abort as e:
            typer.echo("Refresh canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        refreshed = refresh_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    count = len(refreshed)
    typer.echo(f"State refreshed. {count} resource{'s' if count != 1 else ''} updated.")


@app.command()
def drift(
    config: ConfigPath = None,
    lock_timeout: LockTimeout = None,
    no_color: NoColor = False,
) -> None:
    """Show drift between state and the live resources."""
    from stackform.cli.formatting import format_drift
    from stackform.config import drift as drift_fn

    color = _use_color(no_color)
    try:
        changes = drift_fn(_load(config, lock_timeout=lock_timeout))
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No drift detected. State is up-to-date with the live resources.")
        raise typer.Exit(0)

    typer.echo("Drift detected:\n")
    typer.echo(format_drift(changes, color=color))


@app.command()
def validate(
    config: ConfigPath = None,
    var: Vars = None,
    no_color: NoColor = False,
) -> None:
    """Validate the declarations and configuration file."""
    from stackform.cli.formatting import styler
    from stackform.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        plan_fn(_load(config), variables=_parse_vars(var))
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(styler(color)("Configuration is valid.", fg="green"))
