"""Map exceptions to clean stderr messages and exit codes."""

from __future__ import annotations

import typer


def _err(msg: str, *, fg: str | None) -> None:
    """Print a styled message to stderr."""
    typer.echo(typer.style(msg, fg=fg), err=True)


def handle_error(exc: Exception, *, color: bool = True) -> int:
    """Print a clean error message to stderr and return an exit code.

    All errors map to exit code 1.  No tracebacks are printed.
    """
    from stackform.cli.formatting import format_apply_results
    from stackform.errors import (
        ApplyCanceled,
        ConfigError,
        LockConflictError,
        PartialApplyError,
        ProviderError,
        StaleSerialError,
        ValidationError,
    )

    fg = typer.colors.RED if color else None

    if isinstance(exc, ValidationError):
        _err("Validation failed:", fg=fg)
        for e in exc.errors:
            _err(f"  - {e}", fg=fg)
    elif isinstance(exc, ConfigError):
        _err(f"Configuration error: {exc}", fg=fg)
    elif isinstance(exc, LockConflictError):
        _err(str(exc), fg=fg)
    elif isinstance(exc, StaleSerialError):
        _err(f"Plan is stale: {exc}", fg=fg)
    elif isinstance(exc, PartialApplyError):
        _err(f"Apply failed: {exc}", fg=fg)
        results = format_apply_results(exc.result, color=color)
        if results:
            typer.echo(results, err=True)
    elif isinstance(exc, ApplyCanceled):
        _err(str(exc), fg=fg)
    elif isinstance(exc, ProviderError):
        _err(f"Provider error: {exc}", fg=fg)
    else:
        _err(f"Error: {exc}", fg=fg)

    return 1
