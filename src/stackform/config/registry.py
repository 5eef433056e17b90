"""Provider registry factory.

Adapters come from the ``adapters`` section of the config (exact type tag or
``fnmatch`` pattern -> ``"module.path:factory"``) and from the
``stackform.adapters`` entry-point group (entry point name = type tag).
"""

from __future__ import annotations

import fnmatch
import importlib
import importlib.metadata
import importlib.util
import logging
from typing import TYPE_CHECKING, Any

from stackform.engine.adapters import ProviderAdapter
from stackform.engine.registry import ProviderRegistry
from stackform.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from pathlib import Path
    from types import ModuleType

    from stackform.config.schema import AdapterSpec, Config

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "stackform.adapters"


def _load_local_module(module_path: str, config_dir: Path) -> ModuleType:
    """Load a Python module from a file relative to *config_dir*."""
    parts = module_path.split(".")
    candidates = [
        config_dir.joinpath(*parts).with_suffix(".py"),
        config_dir.joinpath(*parts) / "__init__.py",
    ]
    file_path = next((p for p in candidates if p.exists()), None)
    if file_path is None:
        raise ConfigError(f"Module '{module_path}' not found relative to {config_dir}")

    spec = importlib.util.spec_from_file_location(module_path, file_path)
    if spec is None or spec.loader is None:
        raise ConfigError(f"Failed to create module spec for '{file_path}'")
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def resolve_factory(factory: str, config_dir: Path) -> Callable[..., Any]:
    """Resolve ``"module.path:callable"`` to a callable.

    Installed modules are tried first, then files relative to *config_dir*.
    """
    module_path, _, attr = factory.rpartition(":")
    if not module_path or not attr:
        raise ConfigError(f"Invalid adapter factory '{factory}': expected 'module.path:callable'")

    try:
        mod = importlib.import_module(module_path)
    except ModuleNotFoundError:
        mod = _load_local_module(module_path, config_dir)

    obj = getattr(mod, attr, None)
    if not callable(obj):
        raise ConfigError(
            f"'{factory}' is not a callable attribute"
            if obj is not None
            else f"Module '{module_path}' has no attribute '{attr}'"
        )
    return obj


def _build(factory: Callable[..., Any], options: dict[str, Any], label: str) -> ProviderAdapter:
    try:
        adapter = factory(**options)
    except Exception as exc:
        raise ConfigError(f"Adapter factory {label} raised {type(exc).__name__}: {exc}") from exc
    if not isinstance(adapter, ProviderAdapter):
        raise ConfigError(f"Adapter factory {label} must return a ProviderAdapter")
    return adapter


def _match(resource_type: str, adapters: dict[str, AdapterSpec]) -> str | None:
    if resource_type in adapters:
        return resource_type
    patterns = [p for p in adapters if any(ch in p for ch in "*?[")]
    # Most specific (longest) pattern wins.
    for pattern in sorted(patterns, key=lambda p: (-len(p), p)):
        if fnmatch.fnmatchcase(resource_type, pattern):
            return pattern
    return None


def default_registry(config: Config, resource_types: Iterable[str]) -> ProviderRegistry:
    """Create a registry with an adapter for every type tag in *resource_types*.

    Types without an adapter stay unregistered; planning then fails with
    ``UnknownResourceTypeError``.
    """
    registry = ProviderRegistry()
    instances: dict[str, ProviderAdapter] = {}
    entry_points = {ep.name: ep for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP)}

    for resource_type in sorted(set(resource_types)):
        key = _match(resource_type, config.adapters)
        if key is not None:
            if key not in instances:
                spec = config.adapters[key]
                factory = resolve_factory(spec.factory, config.config_dir)
                instances[key] = _build(factory, spec.options, f"'{spec.factory}'")
            registry.register(resource_type, instances[key])
        elif resource_type in entry_points:
            factory = entry_points[resource_type].load()
            registry.register(resource_type, _build(factory, {}, f"entry point '{resource_type}'"))
        else:
            continue
        logger.debug("Registered adapter for %s", resource_type)

    return registry
