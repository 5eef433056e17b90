"""Configuration models for ``stackform.yaml``."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackform.engine.retry import RetryPolicy

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Parse ``250ms``, ``30s``, ``5m``, ``1h`` (or a bare number of seconds)."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"Invalid duration: {value!r} (expected e.g. 30s, 5m, 250ms)")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]


def _none_to_dict(v: Any) -> Any:
    return v if v is not None else {}


def _factory_string(v: Any) -> Any:
    return {"factory": v} if isinstance(v, str) else v


Duration = Annotated[float, BeforeValidator(parse_duration)]


class AdapterSpec(BaseModel):
    """Adapter factory for one resource type (or ``fnmatch`` pattern).

    ``factory`` is ``"module.path:callable"``; ``options`` are passed to it
    as keyword arguments.
    """

    model_config = ConfigDict(extra="forbid")

    factory: str
    options: dict[str, Any] = Field(default_factory=dict)


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class EngineSettings(BaseSettings):
    """Engine settings read from ``STACKFORM_*`` environment variables.

    Only consulted for fields the YAML file leaves unset.
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKFORM_", env_file_encoding="utf-8-sig", extra="ignore"
    )

    declarations: Path | None = None
    state_path: Path | None = None
    parallelism: int | None = None
    lock_timeout: str | None = None


class Config(BaseModel):
    """Provisioning configuration, validated straight from YAML."""

    model_config = ConfigDict(extra="forbid")

    declarations: Path = Path()
    state_path: Path = Path(".stackform-state.json")
    parallelism: int = Field(default=10, ge=1)
    lock_timeout: Duration = 0.0
    variables: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    providers: Annotated[dict[str, dict[str, Any]], BeforeValidator(_none_to_dict)] = {}
    adapters: Annotated[
        dict[str, Annotated[AdapterSpec, BeforeValidator(_factory_string)]],
        BeforeValidator(_none_to_dict),
    ] = {}
    retry: RetryConfig = Field(default_factory=RetryConfig)
    config_dir: Path = Path()

    def _relative(self, path: Path) -> Path:
        return path if path.is_absolute() else self.config_dir / path

    @property
    def declarations_path(self) -> Path:
        return self._relative(self.declarations)

    @property
    def state_file(self) -> Path:
        return self._relative(self.state_path)
