"""Command-line entry point: ``stackform [global options] COMMAND``.

Global options apply before any command runs: ``--chdir`` switches the
working directory (so ``stackform.yaml`` and relative paths resolve from
there) and ``-v``/``STACKFORM_LOG`` pick the log level for the
``stackform`` logger. Records go to stderr unless ``--log-file`` or
``STACKFORM_LOG_PATH`` names a file.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import typer

from stackform import __version__

app = typer.Typer(
    name="stackform",
    no_args_is_help=True,
    add_completion=False,
)

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_FILE_LOG_FORMAT = "%(asctime)s %(threadName)s " + _LOG_FORMAT
_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _show_version(value: bool) -> None:
    if value:
        typer.echo(f"stackform {__version__}")
        raise typer.Exit


def resolve_log_level(verbose: int, env_value: str | None) -> int | None:
    """Level for the ``stackform`` logger, or None to leave logging alone.

    ``STACKFORM_LOG`` wins over ``-v`` flags; an unrecognised name falls
    back to INFO with a warning so a typo never silences the run.
    """
    name = (env_value or "").strip().upper()
    if name:
        if name not in _LEVELS:
            typer.secho(
                f"WARNING: invalid STACKFORM_LOG level '{name}', "
                f"expected one of {', '.join(sorted(_LEVELS))}; defaulting to INFO",
                err=True,
                fg=typer.colors.YELLOW,
            )
        return _LEVELS.get(name, logging.INFO)
    if verbose <= 0:
        return None
    return logging.DEBUG if verbose >= 2 else logging.INFO


def _configure_logging(level: int | None, log_file: Path | None = None) -> None:
    # Third-party loggers stay at WARNING; only ours follows the chosen level.
    if level is None:
        return
    if log_file is not None:
        logging.basicConfig(
            level=logging.WARNING,
            format=_FILE_LOG_FORMAT,
            filename=log_file,
            encoding="utf-8",
            force=True,
        )
    else:
        logging.basicConfig(
            level=logging.WARNING,
            format=_LOG_FORMAT,
            stream=sys.stderr,
            force=True,
        )
    logging.getLogger("stackform").setLevel(level)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_show_version,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug).",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        envvar="STACKFORM_LOG_PATH",
        dir_okay=False,
        help="Append log records to this file instead of stderr.",
    ),
    chdir: Path | None = typer.Option(
        None,
        "--chdir",
        "-C",
        exists=True,
        file_okay=False,
        help="Switch to this directory before running the command.",
    ),
) -> None:
    """Declarative infrastructure provisioning: plan, apply, destroy."""
    _ = version
    if chdir is not None:
        os.chdir(chdir)
    level = resolve_log_level(verbose, os.environ.get("STACKFORM_LOG"))
    if level is None and log_file is not None:
        level = logging.INFO
    _configure_logging(level, log_file)


# Commands import this module's ``app``.
from stackform.cli import commands as _commands  # noqa: E402, F401
