"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML

from stackform.config.schema import Config, EngineSettings
from stackform.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "stackform.yaml"
VARIABLE_ENV_PREFIX = "STACKFORM_VAR_"

__all__ = ["DEFAULT_CONFIG_NAME", "ConfigError", "default_config", "load_config"]


def _dotenv(config_dir: Path) -> dict[str, str | None]:
    env_file = config_dir / ".env"
    return dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}


def _resolve_engine_settings(raw: dict[str, Any], config_dir: Path) -> dict[str, Any]:
    """Fill engine fields the YAML leaves unset from the environment and ``.env``.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    env_file = config_dir / ".env"
    settings = EngineSettings(_env_file=env_file if env_file.is_file() else None)  # type: ignore[call-arg]
    resolved = dict(raw)
    for field in sorted(settings.model_fields_set):
        value = getattr(settings, field)
        if resolved.get(field) is None and value is not None:
            resolved[field] = value
    return resolved


def _env_variables(config_dir: Path) -> dict[str, str]:
    """Variable bindings from ``STACKFORM_VAR_<name>`` (env beats ``.env``)."""
    merged: dict[str, str] = {}
    for source in (_dotenv(config_dir), os.environ):
        for key, value in source.items():
            if key.startswith(VARIABLE_ENV_PREFIX) and value is not None:
                merged[key[len(VARIABLE_ENV_PREFIX) :]] = value
    return merged


def _finish(raw: dict[str, Any], config_dir: Path) -> Config:
    try:
        config = Config.model_validate(_resolve_engine_settings(raw, config_dir))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = config_dir
    for name, value in _env_variables(config_dir).items():
        config.variables.setdefault(name, value)
    return config


def load_config(path: Path | str) -> Config:
    """Load a YAML configuration file and return a ``Config`` object.

    Raises:
        ConfigError: On YAML parse errors or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    config = _finish(raw, path.parent)
    logger.info("Loaded config from %s", path)
    return config


def default_config(directory: Path | str = ".") -> Config:
    """Configuration used when no config file exists: defaults + environment."""
    return _finish({}, Path(directory))
