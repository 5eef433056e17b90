"""Attribute values that are either known at plan time or deferred until apply.

A ``Value`` is a tagged union:

- ``Known``: a concrete (JSON-compatible) literal
- ``Unknown``: a value that will only exist once its producer(s) have been
  created or replaced; carries the producer addresses

Both carry a ``sensitive`` flag. Combining values (templates, lists, maps,
function calls) is done with :func:`combine`, which propagates both the
Unknown tag and sensitivity structurally.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable


@dataclass(frozen=True, slots=True)
class Known:
    """A statically known value."""

    value: Any
    sensitive: bool = False


@dataclass(frozen=True, slots=True)
class Unknown:
    """A value that is not known until its producers have been applied."""

    producers: frozenset[str]
    sensitive: bool = False

    @property
    def producer(self) -> str:
        """The first producer address (lexical), for display."""
        return min(self.producers)


Value: TypeAlias = Known | Unknown


def unknown(producer: str, *, sensitive: bool = False) -> Unknown:
    return Unknown(producers=frozenset({producer}), sensitive=sensitive)


def combine(values: Iterable[Value], fn: Callable[[list[Any]], Any]) -> Value:
    """Combine *values* with *fn* over their raw literals.

    If any input is Unknown the result is Unknown with the union of all
    producers, and *fn* is not called. The result is sensitive if any input is.
    """
    items = list(values)
    sensitive = any(v.sensitive for v in items)
    producers: set[str] = set()
    for v in items:
        if isinstance(v, Unknown):
            producers.update(v.producers)
    if producers:
        return Unknown(producers=frozenset(producers), sensitive=sensitive)
    return Known(fn([v.value for v in items if isinstance(v, Known)]), sensitive=sensitive)
