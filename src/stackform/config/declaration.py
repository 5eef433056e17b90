"""Parsed declaration blocks.

A ``Declaration`` is the content of one declaration directory (all of its
``*.sf`` files merged): the root configuration or one module source.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stackform.errors import ConfigError

if TYPE_CHECKING:
    from pathlib import Path

    from stackform.core.expressions import Expr, Traversal


@dataclass
class ResourceBlock:
    resource_type: str
    name: str
    attributes: dict[str, Expr] = field(default_factory=dict)
    depends_on: list[Traversal] = field(default_factory=list)
    location: str = ""

    @property
    def key(self) -> str:
        return f"{self.resource_type}.{self.name}"


@dataclass
class ModuleBlock:
    name: str
    source: str
    inputs: dict[str, Expr] = field(default_factory=dict)
    depends_on: list[Traversal] = field(default_factory=list)
    location: str = ""


@dataclass
class VariableBlock:
    name: str
    default: Expr | None = None
    type: str = "any"
    sensitive: bool = False
    description: str = ""
    location: str = ""

    @property
    def required(self) -> bool:
        return self.default is None


@dataclass
class OutputBlock:
    name: str
    value: Expr
    sensitive: bool = False
    description: str = ""
    location: str = ""


@dataclass
class ProviderBlock:
    name: str
    attributes: dict[str, Expr] = field(default_factory=dict)
    location: str = ""


@dataclass
class Declaration:
    directory: Path | None = None
    resources: dict[str, ResourceBlock] = field(default_factory=dict)
    modules: dict[str, ModuleBlock] = field(default_factory=dict)
    variables: dict[str, VariableBlock] = field(default_factory=dict)
    outputs: dict[str, OutputBlock] = field(default_factory=dict)
    providers: dict[str, ProviderBlock] = field(default_factory=dict)
    locals: dict[str, Expr] = field(default_factory=dict)

    def merge(self, other: Declaration) -> None:
        """Merge blocks from another file of the same directory."""
        for kind in ("resources", "modules", "variables", "outputs", "providers", "locals"):
            mine = getattr(self, kind)
            for key, block in getattr(other, kind).items():
                if key in mine:
                    where = getattr(block, "location", "")
                    raise ConfigError(
                        f"Duplicate {kind.rstrip('s')} '{key}'" + (f" at {where}" if where else "")
                    )
                mine[key] = block
