"""Expression tree for declaration attributes.

The parser produces these nodes; the graph builder rewrites every
``Traversal`` (a dotted path as written, e.g. ``module.vpc.vpc_id``) into
either an absolute ``Ref`` to a resource attribute or an inlined
expression (variables, locals, module outputs). After building, expressions
only contain ``Const``, ``Ref``, ``Template``, ``ListExpr``, ``MapExpr``,
``Sensitive``, ``Index`` and ``Call`` nodes, so they can be stored inside a
saved plan and re-evaluated at apply time.
"""

from __future__ import annotations

import ipaddress
import json
from collections.abc import Callable, Iterator
from dataclasses import replace
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from stackform.core.values import Known, Value, combine
from stackform.errors import ExpressionError


Step = str | int


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True)


class Const(_Node):
    kind: Literal["const"] = "const"
    value: Any = None
    sensitive: bool = False


class Template(_Node):
    """String interpolation: ``"${var.name}-sg"``."""

    kind: Literal["template"] = "template"
    parts: list[Expr]


class ListExpr(_Node):
    kind: Literal["list"] = "list"
    items: list[Expr] = Field(default_factory=list)


class MapExpr(_Node):
    kind: Literal["map"] = "map"
    items: dict[str, Expr] = Field(default_factory=dict)


class Traversal(_Node):
    """A reference as written in the declaration, not yet resolved."""

    kind: Literal["traversal"] = "traversal"
    root: str
    steps: list[Step] = Field(default_factory=list)
    location: str = ""

    def display(self) -> str:
        out = self.root
        for step in self.steps:
            out += f"[{step}]" if isinstance(step, int) else f".{step}"
        return out


class Ref(_Node):
    """Absolute reference to a resource (and optionally an attribute path)."""

    kind: Literal["ref"] = "ref"
    address: str
    path: list[Step] = Field(default_factory=list)

    def display(self) -> str:
        out = self.address
        for step in self.path:
            out += f"[{step}]" if isinstance(step, int) else f".{step}"
        return out


class Sensitive(_Node):
    """Marks everything *value* evaluates to as sensitive (module outputs/inputs)."""

    kind: Literal["sensitive"] = "sensitive"
    value: Expr


class Index(_Node):
    kind: Literal["index"] = "index"
    target: Expr
    key: Expr


class Call(_Node):
    kind: Literal["call"] = "call"
    name: str
    args: list[Expr] = Field(default_factory=list)


Expr = Annotated[
    Const | Template | ListExpr | MapExpr | Traversal | Ref | Sensitive | Index | Call,
    Field(discriminator="kind"),
]

for _model in (Template, ListExpr, MapExpr, Sensitive, Index, Call):
    _model.model_rebuild()


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def walk(expr: Expr) -> Iterator[Expr]:
    """Yield *expr* and every nested node, depth-first."""
    yield expr
    match expr:
        case Template(parts=parts):
            for p in parts:
                yield from walk(p)
        case ListExpr(items=items):
            for i in items:
                yield from walk(i)
        case MapExpr(items=items):
            for i in items.values():
                yield from walk(i)
        case Sensitive(value=inner):
            yield from walk(inner)
        case Index(target=target, key=key):
            yield from walk(target)
            yield from walk(key)
        case Call(args=args):
            for a in args:
                yield from walk(a)


def references(expr: Expr) -> list[Ref]:
    """Collect resolved references contained in *expr*."""
    return [node for node in walk(expr) if isinstance(node, Ref)]


def is_sensitive(expr: Expr) -> bool:
    return any(
        isinstance(n, Sensitive) or (isinstance(n, Const) and n.sensitive) for n in walk(expr)
    )


def mark_sensitive(expr: Expr) -> Expr:
    """Return *expr* with its evaluated value flagged sensitive."""
    if isinstance(expr, Const):
        return Const(value=expr.value, sensitive=True)
    if isinstance(expr, Sensitive):
        return expr
    return Sensitive(value=expr)


def traverse(value: Any, steps: list[Step], *, what: str = "value") -> Any:
    """Follow attribute/index *steps* into a known literal."""
    current = value
    for step in steps:
        if isinstance(current, list) and isinstance(step, int):
            if not -len(current) <= step < len(current):
                raise ExpressionError(f"Index {step} out of range for {what}")
            current = current[step]
        elif isinstance(current, dict) and str(step) in current:
            current = current[str(step)]
        else:
            raise ExpressionError(f"{what} has no attribute or element '{step}'")
    return current


def to_string(value: Any) -> str:
    """Render a literal the way string interpolation does."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Built-in functions
# ---------------------------------------------------------------------------


def _cidrsubnet(prefix: str, newbits: int, netnum: int) -> str:
    net = ipaddress.ip_network(prefix, strict=False)
    new_prefix = net.prefixlen + int(newbits)
    if new_prefix > net.max_prefixlen:
        raise ValueError(f"cannot extend prefix {prefix} by {newbits} bits")
    if not 0 <= int(netnum) < 2 ** int(newbits):
        raise ValueError(f"netnum {netnum} does not fit in {newbits} bits")
    size = 2 ** (net.max_prefixlen - new_prefix)
    return str(ipaddress.ip_network(f"{net.network_address + int(netnum) * size}/{new_prefix}"))


def _element(items: list[Any], index: int) -> Any:
    if not items:
        raise ValueError("cannot use element() on an empty list")
    return items[int(index) % len(items)]


def _merge(*maps: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for m in maps:
        out.update(m)
    return out


def _concat(*lists: list[Any]) -> list[Any]:
    return [item for lst in lists for item in lst]


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "cidrsubnet": _cidrsubnet,
    "concat": _concat,
    "element": _element,
    "format": lambda fmt, *args: fmt % args,
    "join": lambda sep, items: sep.join(to_string(i) for i in items),
    "length": len,
    "lower": lambda s: s.lower(),
    "merge": _merge,
    "tostring": to_string,
    "upper": lambda s: s.upper(),
}


def _call(name: str, args: list[Any]) -> Any:
    fn = FUNCTIONS.get(name)
    if fn is None:
        raise ExpressionError(f"Unknown function '{name}'")
    try:
        return fn(*args)
    except (TypeError, ValueError, AttributeError) as exc:
        raise ExpressionError(f"Invalid call to {name}(): {exc}") from exc


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

Resolver = Callable[[Ref], Value]


def evaluate(expr: Expr, resolve: Resolver) -> Value:
    """Evaluate *expr*, delegating resource references to *resolve*.

    Any Unknown input makes the result Unknown (see ``combine``).
    """
    match expr:
        case Const(value=value, sensitive=sensitive):
            return Known(value, sensitive=sensitive)
        case Ref():
            return resolve(expr)
        case Sensitive(value=inner):
            return replace(evaluate(inner, resolve), sensitive=True)
        case Template(parts=parts):
            return combine(
                [evaluate(p, resolve) for p in parts],
                lambda vals: "".join(to_string(v) for v in vals),
            )
        case ListExpr(items=items):
            return combine([evaluate(i, resolve) for i in items], list)
        case MapExpr(items=items):
            keys = list(items)
            return combine(
                [evaluate(items[k], resolve) for k in keys],
                lambda vals: dict(zip(keys, vals, strict=True)),
            )
        case Index(target=target, key=key):
            return combine(
                [evaluate(target, resolve), evaluate(key, resolve)],
                lambda tk: traverse(tk[0], [tk[1]]),
            )
        case Call(name=name, args=args):
            return combine([evaluate(a, resolve) for a in args], lambda vals: _call(name, vals))
        case Traversal():
            raise ExpressionError(f"Unresolved reference '{expr.display()}'")
    raise ExpressionError(f"Unsupported expression node: {type(expr).__name__}")
