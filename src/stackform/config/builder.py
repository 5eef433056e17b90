"""Graph builder: declarations -> resolved ``ResourceGraph``.

Module instances are expanded as macros. Each instance gets a scope holding
its bound variables and an address prefix (``module.vpc.``); references are
rewritten per scope:

* ``var.x`` and ``local.x`` are inlined,
* ``module.m.out`` inlines the child module's output expression,
* ``type.name.attr`` becomes an absolute ``Ref`` to the prefixed address.

The result only holds ``Ref`` edges between concrete resources, which the
planner and executor understand. No side effects besides reading module
sources from disk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stackform.config.parser import load_directory, parse_expression
from stackform.core.expressions import (
    Call,
    Const,
    Index,
    ListExpr,
    MapExpr,
    Ref,
    Sensitive,
    Template,
    Traversal,
    evaluate,
    is_sensitive,
    mark_sensitive,
    to_string,
    traverse,
)
from stackform.engine.graph import OutputNode, ResourceGraph, ResourceNode
from stackform.errors import (
    ConfigError,
    DuplicateAddressError,
    UnresolvedReferenceError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

    from stackform.config.declaration import Declaration, ModuleBlock, VariableBlock
    from stackform.core.expressions import Expr
    from stackform.core.values import Value

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Variable coercion
# ---------------------------------------------------------------------------


def _static_value(expr: Expr, what: str) -> Any:
    """Evaluate an expression that may not reference resources."""

    def no_refs(ref: Ref) -> Value:
        raise ConfigError(f"{what} cannot reference resource '{ref.display()}'")

    return evaluate(expr, no_refs).value


def _parse_literal(raw: str, type_: str, name: str) -> Any:
    try:
        return _static_value(parse_expression(raw, source=f"var.{name}"), f"var.{name}")
    except ConfigError as e:
        raise ConfigError(f"Variable '{name}' expects {type_}: {e}") from e


def coerce_value(value: Any, type_: str, name: str) -> Any:
    """Convert *value* to the declared variable *type_*."""
    type_ = type_.replace(" ", "")
    if type_ == "any":
        return value
    if type_ == "string":
        if isinstance(value, (str, int, float, bool)):
            return to_string(value)
    elif type_ == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            for conv in (int, float):
                try:
                    return conv(value)
                except ValueError:
                    continue
    elif type_ == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value in ("true", "false"):
            return value == "true"
    elif type_.startswith(("list(", "set(")) and type_.endswith(")"):
        inner = type_[type_.index("(") + 1 : -1]
        if isinstance(value, str):
            value = _parse_literal(value, type_, name)
        if isinstance(value, (list, tuple)):
            return [coerce_value(v, inner, name) for v in value]
    elif type_.startswith("map(") and type_.endswith(")"):
        inner = type_[4:-1]
        if isinstance(value, str):
            value = _parse_literal(value, type_, name)
        if isinstance(value, dict):
            return {str(k): coerce_value(v, inner, name) for k, v in value.items()}
    elif type_ in ("list", "map", "object"):
        if isinstance(value, str):
            value = _parse_literal(value, type_, name)
        if isinstance(value, dict if type_ != "list" else list):
            return value
    else:
        raise ConfigError(f"Variable '{name}' has unsupported type '{type_}'")
    raise ConfigError(f"Variable '{name}' expects {type_}, got {value!r}")


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


@dataclass
class _Scope:
    decl: Declaration
    prefix: str = ""
    module_path: tuple[str, ...] = ()
    variables: dict[str, Expr] = field(default_factory=dict)
    sources: tuple[Path, ...] = ()
    # Inherited whole-module depends_on: resource addresses or "module.x." prefixes.
    depends_on: list[str] = field(default_factory=list)

    locals_cache: dict[str, Expr] = field(default_factory=dict)
    outputs_cache: dict[str, Expr] = field(default_factory=dict)
    children: dict[str, _Scope] = field(default_factory=dict)
    in_progress: list[str] = field(default_factory=list)

    def label(self) -> str:
        return self.prefix.rstrip(".") or "root module"

    def enter(self, key: str) -> None:
        if key in self.in_progress:
            cycle = [*self.in_progress[self.in_progress.index(key) :], key]
            raise ConfigError(f"Cycle in {self.label()}: {' -> '.join(cycle)}")
        self.in_progress.append(key)

    def leave(self, key: str) -> None:
        self.in_progress.remove(key)


class GraphBuilder:
    """Expand modules and resolve references into a ``ResourceGraph``."""

    def __init__(
        self,
        root: Declaration,
        *,
        variables: Mapping[str, Any] | None = None,
        loader: Callable[[Path], Declaration] = load_directory,
    ) -> None:
        self.root = root
        self.bindings = dict(variables or {})
        self._loader = loader
        self._sources: dict[Path, Declaration] = {}

    def build(self) -> ResourceGraph:
        root_dir = self.root.directory.resolve() if self.root.directory else None
        scope = _Scope(
            decl=self.root,
            variables=self._bind_root_variables(),
            sources=(root_dir,) if root_dir else (),
        )

        graph = ResourceGraph()
        self._expand(scope, graph)
        self._expand_module_dependencies(graph)

        for name, block in sorted(self.root.outputs.items()):
            expr = self._output(scope, name, context=f"output.{name}")
            graph.outputs[name] = OutputNode(
                name=name,
                expr=expr,
                sensitive=block.sensitive or is_sensitive(expr),
                description=block.description,
            )

        graph.dependency_graph().validate()
        logger.debug(
            "Built graph: %d resources, %d outputs", len(graph.nodes), len(graph.outputs)
        )
        return graph

    # ── Variables ───────────────────────────────────────────────────

    def _bind_root_variables(self) -> dict[str, Expr]:
        declared = self.root.variables
        undeclared = sorted(set(self.bindings) - set(declared))
        if undeclared:
            raise ConfigError(
                f"Value given for undeclared variable(s): {', '.join(undeclared)}"
            )

        bound: dict[str, Expr] = {}
        for name, var in sorted(declared.items()):
            if name in self.bindings:
                value = coerce_value(self.bindings[name], var.type, name)
            elif var.default is not None:
                value = self._default_value(var)
            else:
                raise ConfigError(f"No value for required variable '{name}'")
            bound[name] = Const(value=value, sensitive=var.sensitive)
        return bound

    def _default_value(self, var: VariableBlock) -> Any:
        assert var.default is not None
        raw = _static_value(var.default, f"Default of variable '{var.name}'")
        return coerce_value(raw, var.type, var.name)

    def _bind_module_variables(
        self, block: ModuleBlock, child: Declaration, inputs: dict[str, Expr]
    ) -> dict[str, Expr]:
        undeclared = sorted(set(inputs) - set(child.variables))
        if undeclared:
            raise ConfigError(
                f"Module '{block.name}' ({block.source}) has no variable(s): "
                f"{', '.join(undeclared)}"
            )
        bound: dict[str, Expr] = {}
        for name, var in sorted(child.variables.items()):
            if name in inputs:
                expr = inputs[name]
                if isinstance(expr, Const):
                    expr = Const(
                        value=coerce_value(expr.value, var.type, name),
                        sensitive=expr.sensitive or var.sensitive,
                    )
                elif var.sensitive:
                    expr = mark_sensitive(expr)
                bound[name] = expr
            elif var.default is not None:
                bound[name] = Const(value=self._default_value(var), sensitive=var.sensitive)
            else:
                raise ConfigError(
                    f"Module '{block.name}' is missing required input '{name}'"
                )
        return bound

    # ── Modules ─────────────────────────────────────────────────────

    def _load(self, path: Path) -> Declaration:
        if path not in self._sources:
            if not path.is_dir():
                raise ConfigError(f"Module source not found: {path}")
            self._sources[path] = self._loader(path)
        return self._sources[path]

    def _module_scope(self, scope: _Scope, name: str, context: str) -> _Scope:
        if name in scope.children:
            return scope.children[name]

        block = scope.decl.modules.get(name)
        if block is None:
            raise UnresolvedReferenceError(f"module.{name}", context=context)
        if scope.decl.directory is None:
            raise ConfigError(f"Cannot resolve module source '{block.source}' without a directory")

        path = (scope.decl.directory / block.source).resolve()
        if path in scope.sources:
            raise ConfigError(f"Module '{block.name}' recursively includes {path}")

        scope.enter(f"module.{name}")
        try:
            inputs = {
                key: self._resolve(expr, scope, f"module.{name}.{key}")
                for key, expr in sorted(block.inputs.items())
            }
            depends_on = [
                *scope.depends_on,
                *(self._depends_on_target(t, scope, f"module.{name}") for t in block.depends_on),
            ]
        finally:
            scope.leave(f"module.{name}")

        child_decl = self._load(path)
        child = _Scope(
            decl=child_decl,
            prefix=f"{scope.prefix}module.{name}.",
            module_path=(*scope.module_path, name),
            variables=self._bind_module_variables(block, child_decl, inputs),
            sources=(*scope.sources, path),
            depends_on=depends_on,
        )
        scope.children[name] = child
        logger.debug("Expanded module %s from %s", child.prefix.rstrip("."), path)
        return child

    def _expand(self, scope: _Scope, graph: ResourceGraph) -> None:
        for key, block in sorted(scope.decl.resources.items()):
            address = scope.prefix + key
            if address in graph.nodes:
                raise DuplicateAddressError(address)
            attrs = {
                attr: self._resolve(expr, scope, f"{address}.{attr}")
                for attr, expr in block.attributes.items()
            }
            depends_on = [
                *scope.depends_on,
                *(self._depends_on_target(t, scope, address) for t in block.depends_on),
            ]
            graph.nodes[address] = ResourceNode(
                address=address,
                resource_type=block.resource_type,
                name=block.name,
                module_path=scope.module_path,
                attributes=attrs,
                depends_on=depends_on,
            )

        for name, provider in sorted(scope.decl.providers.items()):
            if name in graph.providers:
                continue
            settings = {
                key: _static_value(self._resolve(expr, scope, f"provider.{name}.{key}"), f"provider.{name}")
                for key, expr in provider.attributes.items()
            }
            graph.providers[name] = settings

        for name in sorted(scope.decl.modules):
            self._expand(self._module_scope(scope, name, f"module.{name}"), graph)

    def _depends_on_target(self, target: Traversal, scope: _Scope, context: str) -> str:
        if target.root == "module" and len(target.steps) == 1:
            name = str(target.steps[0])
            if name not in scope.decl.modules:
                raise UnresolvedReferenceError(target.display(), context=f"{context}.depends_on")
            return f"{scope.prefix}module.{name}."
        if target.root in ("var", "local", "module") or not target.steps:
            raise ConfigError(
                f"depends_on in {context} must name a resource or module, got '{target.display()}'"
            )
        key = f"{target.root}.{target.steps[0]}"
        if key not in scope.decl.resources:
            raise UnresolvedReferenceError(target.display(), context=f"{context}.depends_on")
        return scope.prefix + key

    @staticmethod
    def _expand_module_dependencies(graph: ResourceGraph) -> None:
        addresses = sorted(graph.nodes)
        for node in graph.nodes.values():
            expanded: set[str] = set()
            for dep in node.depends_on:
                if dep.endswith("."):
                    expanded.update(a for a in addresses if a.startswith(dep))
                else:
                    expanded.add(dep)
            node.depends_on = sorted(expanded)

    # ── Reference resolution ────────────────────────────────────────

    def _resolve(self, expr: Expr, scope: _Scope, context: str) -> Expr:
        match expr:
            case Traversal():
                return self._resolve_traversal(expr, scope, context)
            case Template(parts=parts):
                return Template(parts=[self._resolve(p, scope, context) for p in parts])
            case ListExpr(items=items):
                return ListExpr(items=[self._resolve(i, scope, context) for i in items])
            case MapExpr(items=items):
                return MapExpr(items={k: self._resolve(v, scope, context) for k, v in items.items()})
            case Index(target=target, key=key):
                return _index(self._resolve(target, scope, context), self._resolve(key, scope, context))
            case Call(name=name, args=args):
                return Call(name=name, args=[self._resolve(a, scope, context) for a in args])
        return expr

    def _resolve_traversal(self, t: Traversal, scope: _Scope, context: str) -> Expr:
        where = f"{context} ({t.location})" if t.location else context
        steps = t.steps
        if not steps or not isinstance(steps[0], str):
            raise UnresolvedReferenceError(t.display(), context=where)
        name = steps[0]

        if t.root == "var":
            if name not in scope.variables:
                raise UnresolvedReferenceError(t.display(), context=where)
            return _apply_steps(scope.variables[name], steps[1:], t.display())

        if t.root == "local":
            if name not in scope.decl.locals:
                raise UnresolvedReferenceError(t.display(), context=where)
            return _apply_steps(self._local(scope, name), steps[1:], t.display())

        if t.root == "module":
            if len(steps) < 2 or not isinstance(steps[1], str):
                raise UnresolvedReferenceError(t.display(), context=where)
            child = self._module_scope(scope, name, where)
            if steps[1] not in child.decl.outputs:
                raise UnresolvedReferenceError(t.display(), context=where)
            expr = self._output(child, steps[1], context=where)
            return _apply_steps(expr, steps[2:], t.display())

        key = f"{t.root}.{name}"
        if key not in scope.decl.resources:
            raise UnresolvedReferenceError(t.display(), context=where)
        return Ref(address=scope.prefix + key, path=list(steps[1:]))

    def _local(self, scope: _Scope, name: str) -> Expr:
        if name not in scope.locals_cache:
            scope.enter(f"local.{name}")
            try:
                scope.locals_cache[name] = self._resolve(
                    scope.decl.locals[name], scope, f"{scope.prefix}local.{name}"
                )
            finally:
                scope.leave(f"local.{name}")
        return scope.locals_cache[name]

    def _output(self, scope: _Scope, name: str, context: str) -> Expr:
        if name not in scope.outputs_cache:
            block = scope.decl.outputs[name]
            scope.enter(f"output.{name}")
            try:
                expr = self._resolve(block.value, scope, f"{scope.prefix}output.{name}")
            finally:
                scope.leave(f"output.{name}")
            if block.sensitive:
                expr = mark_sensitive(expr)
            scope.outputs_cache[name] = expr
        return scope.outputs_cache[name]


def _index(target: Expr, key: Expr) -> Expr:
    if isinstance(key, Const) and isinstance(key.value, (str, int)) and not isinstance(key.value, bool):
        return _apply_steps(target, [key.value], "index")
    return Index(target=target, key=key)


def _apply_steps(base: Expr, steps: list[str | int], what: str) -> Expr:
    """Follow *steps* into an already resolved expression, statically where possible."""
    for i, step in enumerate(steps):
        if isinstance(base, Sensitive):
            return mark_sensitive(_apply_steps(base.value, steps[i:], what))
        if isinstance(base, Ref):
            return base.model_copy(update={"path": [*base.path, *steps[i:]]})
        if isinstance(base, Const):
            value = traverse(base.value, list(steps[i:]), what=what)
            return Const(value=value, sensitive=base.sensitive)
        if isinstance(base, MapExpr) and isinstance(step, str) and step in base.items:
            base = base.items[step]
        elif isinstance(base, ListExpr) and isinstance(step, int) and -len(base.items) <= step < len(base.items):
            base = base.items[step]
        else:
            base = Index(target=base, key=Const(value=step))
    return base


def build_graph(
    declaration: Declaration,
    variables: Mapping[str, Any] | None = None,
    *,
    loader: Callable[[Path], Declaration] = load_directory,
) -> ResourceGraph:
    return GraphBuilder(declaration, variables=variables, loader=loader).build()
