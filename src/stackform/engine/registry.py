"""Provider adapter registry keyed by resource type tag."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stackform.errors import UnknownResourceTypeError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from stackform.engine.adapters import ProviderAdapter


class ProviderRegistry:
    """Registry mapping resource_type -> adapter."""

    def __init__(self) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, resource_type: str, adapter: ProviderAdapter) -> None:
        if not isinstance(resource_type, str) or not resource_type:
            raise ValueError("Resource type tag must be a non-empty string")

        if resource_type in self._adapters:
            raise ValueError(f"Resource type already registered: {resource_type}")

        self._adapters[resource_type] = adapter

    def get(self, resource_type: str) -> ProviderAdapter:
        try:
            return self._adapters[resource_type]
        except KeyError as e:
            raise UnknownResourceTypeError(resource_type) from e

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._adapters))
