"""Parser for ``*.sf`` declaration files.

The format is block structured::

    variable "cidr" {
      type    = string
      default = "10.0.0.0/16"
    }

    resource "aws_vpc" "main" {
      cidr_block = var.cidr
      tags       = { Name = "${var.name}-vpc" }
    }

Attributes are ``name = expression``. Nested blocks inside a resource become
a list of maps under the block name. Expressions are parsed into
``stackform.core.expressions`` nodes; dotted paths stay ``Traversal`` nodes
until the graph builder resolves them.
"""

from __future__ import annotations

import bisect
import logging
import textwrap
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stackform.config.declaration import (
    Declaration,
    ModuleBlock,
    OutputBlock,
    ProviderBlock,
    ResourceBlock,
    VariableBlock,
)
from stackform.core.expressions import (
    Call,
    Const,
    Index,
    ListExpr,
    MapExpr,
    Template,
    Traversal,
    walk,
)
from stackform.errors import DeclarationSyntaxError

if TYPE_CHECKING:
    from pathlib import Path

    from stackform.core.expressions import Expr

logger = logging.getLogger(__name__)

_PUNCT = frozenset("{}[]()=,.:-")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}
_KEYWORDS = {"true": True, "false": False, "null": None}

# Labels expected per top-level block kind.
_BLOCK_LABELS = {
    "resource": 2,
    "module": 1,
    "variable": 1,
    "output": 1,
    "provider": 1,
    "locals": 0,
}


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # ident | number | string | punct | eof
    value: Any
    line: int
    col: int


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------


class _Lexer:
    def __init__(self, text: str, source: str, *, line: int = 1, col: int = 1) -> None:
        self.text = text
        self.source = source
        self.base_line = line
        self.base_col = col
        self._newlines = [i for i, c in enumerate(text) if c == "\n"]

    def position(self, offset: int) -> tuple[int, int]:
        rel_line = bisect.bisect_left(self._newlines, offset)
        line_start = self._newlines[rel_line - 1] + 1 if rel_line else 0
        col = offset - line_start + 1
        if rel_line == 0:
            col += self.base_col - 1
        return self.base_line + rel_line, col

    def error(self, message: str, offset: int) -> DeclarationSyntaxError:
        line, col = self.position(offset)
        return DeclarationSyntaxError(message, source=self.source, line=line, col=col)

    def tokens(self) -> list[Token]:
        text = self.text
        n = len(text)
        out: list[Token] = []
        i = 0
        while i < n:
            c = text[i]
            if c in " \t\r\n":
                i += 1
            elif c == "#" or text.startswith("//", i):
                nl = text.find("\n", i)
                i = n if nl < 0 else nl
            elif text.startswith("/*", i):
                end = text.find("*/", i + 2)
                if end < 0:
                    raise self.error("Unterminated block comment", i)
                i = end + 2
            elif c.isalpha() or c == "_":
                j = i + 1
                while j < n and (text[j].isalnum() or text[j] in "_-"):
                    j += 1
                out.append(self._token("ident", text[i:j], i))
                i = j
            elif c.isdigit():
                i = self._number(i, out)
            elif c == '"':
                i = self._string(i, out)
            elif text.startswith("<<", i):
                i = self._heredoc(i, out)
            elif c in _PUNCT:
                out.append(self._token("punct", c, i))
                i += 1
            else:
                raise self.error(f"Unexpected character {c!r}", i)
        out.append(self._token("eof", None, n))
        return out

    def _token(self, kind: str, value: Any, offset: int) -> Token:
        line, col = self.position(offset)
        return Token(kind, value, line, col)

    def _number(self, i: int, out: list[Token]) -> int:
        text, n = self.text, len(self.text)
        j = i
        while j < n and text[j].isdigit():
            j += 1
        is_float = False
        if j + 1 < n and text[j] == "." and text[j + 1].isdigit():
            is_float = True
            j += 1
            while j < n and text[j].isdigit():
                j += 1
        if j < n and text[j] in "eE":
            k = j + 1
            if k < n and text[k] in "+-":
                k += 1
            if k < n and text[k].isdigit():
                is_float = True
                j = k
                while j < n and text[j].isdigit():
                    j += 1
        raw = text[i:j]
        out.append(self._token("number", float(raw) if is_float else int(raw), i))
        return j

    def _skip_interpolation(self, start: int, limit: int) -> int:
        """Return the offset of the ``}`` closing an interpolation opened before *start*."""
        text = self.text
        depth = 1
        j = start
        in_str = False
        while j < limit:
            ch = text[j]
            if in_str:
                if ch == "\\":
                    j += 2
                    continue
                if ch == '"':
                    in_str = False
            elif ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return j
            j += 1
        raise self.error("Unterminated interpolation", start - 2)

    def _template_parts(self, start: int, end: int, *, escapes: bool) -> list[tuple]:
        """Split ``text[start:end]`` into literal and interpolation parts."""
        text = self.text
        parts: list[tuple] = []
        buf: list[str] = []
        i = start
        while i < end:
            c = text[i]
            if escapes and c == "\\":
                if i + 1 >= end:
                    raise self.error("Dangling escape", i)
                esc = text[i + 1]
                if esc == "u":
                    digits = text[i + 2 : i + 6]
                    if len(digits) != 4 or any(d not in "0123456789abcdefABCDEF" for d in digits):
                        raise self.error("Invalid \\u escape", i)
                    buf.append(chr(int(digits, 16)))
                    i += 6
                    continue
                if esc not in _ESCAPES:
                    raise self.error(f"Invalid escape sequence \\{esc}", i)
                buf.append(_ESCAPES[esc])
                i += 2
            elif text.startswith("$${", i):
                buf.append("${")
                i += 3
            elif text.startswith("${", i):
                if buf:
                    parts.append(("text", "".join(buf)))
                    buf = []
                close = self._skip_interpolation(i + 2, end)
                line, col = self.position(i + 2)
                parts.append(("interp", text[i + 2 : close], line, col))
                i = close + 1
            else:
                buf.append(c)
                i += 1
        if buf:
            parts.append(("text", "".join(buf)))
        return parts

    def _string(self, i: int, out: list[Token]) -> int:
        text, n = self.text, len(self.text)
        j = i + 1
        while True:
            if j >= n or text[j] == "\n":
                raise self.error("Unterminated string", i)
            ch = text[j]
            if ch == "\\":
                j += 2
            elif text.startswith("$${", j):
                j += 3
            elif text.startswith("${", j):
                j = self._skip_interpolation(j + 2, n) + 1
            elif ch == '"':
                break
            else:
                j += 1
        out.append(self._token("string", self._template_parts(i + 1, j, escapes=True), i))
        return j + 1

    def _heredoc(self, i: int, out: list[Token]) -> int:
        text, n = self.text, len(self.text)
        j = i + 2
        indent = j < n and text[j] == "-"
        if indent:
            j += 1
        nl = text.find("\n", j)
        marker = text[j : nl if nl >= 0 else n].strip()
        if not marker or not marker.replace("_", "").isalnum():
            raise self.error("Invalid heredoc marker", i)
        body_start = nl + 1
        pos = body_start
        while pos < n:
            eol = text.find("\n", pos)
            eol = n if eol < 0 else eol
            if text[pos:eol].strip() == marker:
                body = text[body_start:pos]
                if indent:
                    body = textwrap.dedent(body)
                line, _ = self.position(body_start)
                sub = _Lexer(body, self.source, line=line)
                parts = sub._template_parts(0, len(body), escapes=False)
                out.append(self._token("string", parts, i))
                return eol
            pos = eol + 1
        raise self.error(f"Unterminated heredoc (expected {marker})", i)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


@dataclass
class _Block:
    kind: str
    labels: list[str]
    body: _Body
    line: int
    col: int


@dataclass
class _Body:
    attributes: dict[str, tuple[Expr, int, int]] = field(default_factory=dict)
    blocks: list[_Block] = field(default_factory=list)


class _Parser:
    def __init__(self, tokens: list[Token], source: str) -> None:
        self.tokens = tokens
        self.source = source
        self.pos = 0

    # ── Token helpers ───────────────────────────────────────────────

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != "eof":
            self.pos += 1
        return tok

    def at(self, value: str) -> bool:
        tok = self.peek()
        return tok.kind == "punct" and tok.value == value

    def expect(self, value: str) -> Token:
        tok = self.advance()
        if tok.kind != "punct" or tok.value != value:
            raise self.error(f"Expected '{value}', found {_describe(tok)}", tok)
        return tok

    def error(self, message: str, tok: Token) -> DeclarationSyntaxError:
        return DeclarationSyntaxError(message, source=self.source, line=tok.line, col=tok.col)

    def location(self, tok: Token) -> str:
        return f"{self.source}:{tok.line}:{tok.col}"

    # ── Structure ───────────────────────────────────────────────────

    def parse_body(self, *, nested: bool) -> _Body:
        body = _Body()
        while True:
            tok = self.peek()
            if nested and self.at("}"):
                self.advance()
                return body
            if tok.kind == "eof":
                if nested:
                    raise self.error("Unexpected end of file, expected '}'", tok)
                return body
            if tok.kind != "ident":
                raise self.error(f"Expected attribute or block, found {_describe(tok)}", tok)
            self.advance()
            if self.at("="):
                self.advance()
                if tok.value in body.attributes:
                    raise self.error(f"Duplicate attribute '{tok.value}'", tok)
                body.attributes[tok.value] = (self.parse_expr(), tok.line, tok.col)
                continue
            labels: list[str] = []
            while not self.at("{"):
                label = self.advance()
                if label.kind == "ident":
                    labels.append(label.value)
                elif label.kind == "string" and all(p[0] == "text" for p in label.value):
                    labels.append("".join(p[1] for p in label.value))
                else:
                    raise self.error(
                        f"Expected block label or '{{', found {_describe(label)}", label
                    )
            self.expect("{")
            body.blocks.append(
                _Block(tok.value, labels, self.parse_body(nested=True), tok.line, tok.col)
            )

    # ── Expressions ─────────────────────────────────────────────────

    def parse_expr(self) -> Expr:
        expr = self.parse_primary()
        while True:
            if self.at("["):
                self.advance()
                key = self.parse_expr()
                self.expect("]")
                expr = self._index(expr, key)
            elif self.at("."):
                self.advance()
                tok = self.advance()
                if tok.kind == "ident":
                    key = Const(value=tok.value)
                elif tok.kind == "number" and isinstance(tok.value, int):
                    key = Const(value=tok.value)
                else:
                    raise self.error(f"Expected attribute name, found {_describe(tok)}", tok)
                expr = self._index(expr, key)
            else:
                return expr

    @staticmethod
    def _index(target: Expr, key: Expr) -> Expr:
        """Extend a traversal with a constant step, else build an Index node."""
        if (
            isinstance(target, Traversal)
            and isinstance(key, Const)
            and isinstance(key.value, (str, int))
            and not isinstance(key.value, bool)
        ):
            return target.model_copy(update={"steps": [*target.steps, key.value]})
        return Index(target=target, key=key)

    def parse_primary(self) -> Expr:
        tok = self.advance()
        if tok.kind == "number":
            return Const(value=tok.value)
        if tok.kind == "string":
            return self._template(tok)
        if tok.kind == "punct":
            if tok.value == "-":
                num = self.advance()
                if num.kind != "number":
                    raise self.error(f"Expected number after '-', found {_describe(num)}", num)
                return Const(value=-num.value)
            if tok.value == "[":
                return self._list()
            if tok.value == "{":
                return self._map()
            if tok.value == "(":
                inner = self.parse_expr()
                self.expect(")")
                return inner
            raise self.error(f"Unexpected {_describe(tok)}", tok)
        if tok.kind == "ident":
            if tok.value in _KEYWORDS:
                return Const(value=_KEYWORDS[tok.value])
            if self.at("("):
                self.advance()
                args = self._items(")")
                return Call(name=tok.value, args=args)
            return Traversal(root=tok.value, location=self.location(tok))
        raise self.error(f"Unexpected {_describe(tok)}", tok)

    def _items(self, closing: str) -> list[Expr]:
        items: list[Expr] = []
        while not self.at(closing):
            items.append(self.parse_expr())
            if not self.at(","):
                break
            self.advance()
        self.expect(closing)
        return items

    def _list(self) -> ListExpr:
        return ListExpr(items=self._items("]"))

    def _map(self) -> MapExpr:
        items: dict[str, Expr] = {}
        while not self.at("}"):
            tok = self.advance()
            if tok.kind == "ident":
                key = tok.value
            elif tok.kind == "string" and all(p[0] == "text" for p in tok.value):
                key = "".join(p[1] for p in tok.value)
            else:
                raise self.error(f"Expected map key, found {_describe(tok)}", tok)
            if not (self.at("=") or self.at(":")):
                raise self.error(f"Expected '=' or ':' after map key '{key}'", self.peek())
            self.advance()
            if key in items:
                raise self.error(f"Duplicate map key '{key}'", tok)
            items[key] = self.parse_expr()
            if self.at(","):
                self.advance()
        self.expect("}")
        return MapExpr(items=items)

    def _template(self, tok: Token) -> Expr:
        parts: list[Expr] = []
        for part in tok.value:
            if part[0] == "text":
                parts.append(Const(value=part[1]))
            else:
                _, src, line, col = part
                parts.append(parse_expression(src, source=self.source, line=line, col=col))
        if not parts:
            return Const(value="")
        if len(parts) == 1:
            # "${expr}" keeps the type of expr.
            return parts[0]
        return Template(parts=parts)


def _describe(tok: Token) -> str:
    if tok.kind == "eof":
        return "end of file"
    if tok.kind == "string":
        return "string"
    return f"'{tok.value}'"


# ---------------------------------------------------------------------------
# Block conversion
# ---------------------------------------------------------------------------


def _const(expr: Expr, what: str, types: tuple[type, ...], loc: str) -> Any:
    if not isinstance(expr, Const) or not isinstance(expr.value, types):
        names = " or ".join(t.__name__ for t in types)
        raise DeclarationSyntaxError(f"{what} must be a literal {names}", **_loc_kwargs(loc))
    return expr.value


def _loc_kwargs(loc: str) -> dict[str, Any]:
    source, _, rest = loc.rpartition(":")
    source, _, line = source.rpartition(":")
    try:
        return {"source": source, "line": int(line), "col": int(rest)}
    except ValueError:
        return {"source": loc}


def _depends_on(expr: Expr, loc: str) -> list[Traversal]:
    if not isinstance(expr, ListExpr) or not all(isinstance(i, Traversal) for i in expr.items):
        raise DeclarationSyntaxError(
            "depends_on must be a list of references", **_loc_kwargs(loc)
        )
    return list(expr.items)


def type_name(expr: Expr, loc: str = "") -> str:
    """Render a variable ``type`` expression (``list(string)``) as a string."""
    if isinstance(expr, Traversal) and not expr.steps:
        return expr.root
    if isinstance(expr, Const) and isinstance(expr.value, str):
        return expr.value
    if isinstance(expr, Call) and len(expr.args) == 1:
        return f"{expr.name}({type_name(expr.args[0], loc)})"
    raise DeclarationSyntaxError("Invalid variable type", **_loc_kwargs(loc))


def _nested_attributes(body: _Body) -> dict[str, Expr]:
    """Attributes of a resource body; nested blocks become lists of maps."""
    attrs: dict[str, Expr] = {name: expr for name, (expr, _, _) in body.attributes.items()}
    grouped: dict[str, list[Expr]] = {}
    for block in body.blocks:
        if block.labels:
            raise DeclarationSyntaxError(
                f"Nested block '{block.kind}' does not take labels",
                line=block.line,
                col=block.col,
            )
        grouped.setdefault(block.kind, []).append(MapExpr(items=_nested_attributes(block.body)))
    for name, items in grouped.items():
        if name in attrs:
            raise DeclarationSyntaxError(f"'{name}' is both an attribute and a nested block")
        attrs[name] = ListExpr(items=items)
    return attrs


class _Converter:
    def __init__(self, source: str) -> None:
        self.source = source

    def loc(self, line: int, col: int) -> str:
        return f"{self.source}:{line}:{col}"

    def convert(self, body: _Body, directory: Path | None) -> Declaration:
        decl = Declaration(directory=directory)
        if body.attributes:
            name, (_, line, col) = next(iter(body.attributes.items()))
            raise DeclarationSyntaxError(
                f"Unexpected top-level attribute '{name}'", source=self.source, line=line, col=col
            )
        for block in body.blocks:
            expected = _BLOCK_LABELS.get(block.kind)
            if expected is None:
                raise DeclarationSyntaxError(
                    f"Unknown block type '{block.kind}'",
                    source=self.source,
                    line=block.line,
                    col=block.col,
                )
            if len(block.labels) != expected:
                raise DeclarationSyntaxError(
                    f"Block '{block.kind}' expects {expected} label(s), got {len(block.labels)}",
                    source=self.source,
                    line=block.line,
                    col=block.col,
                )
            getattr(self, f"_{block.kind}")(decl, block)
        return decl

    def _add(self, table: dict[str, Any], key: str, value: Any, what: str, block: _Block) -> None:
        if key in table:
            raise DeclarationSyntaxError(
                f"Duplicate {what} '{key}'", source=self.source, line=block.line, col=block.col
            )
        table[key] = value

    def _resource(self, decl: Declaration, block: _Block) -> None:
        resource_type, name = block.labels
        loc = self.loc(block.line, block.col)
        attrs = _nested_attributes(block.body)
        for meta in ("count", "for_each"):
            if meta in attrs:
                raise DeclarationSyntaxError(
                    f"'{meta}' is not supported", source=self.source, line=block.line, col=block.col
                )
        depends_on = _depends_on(attrs.pop("depends_on"), loc) if "depends_on" in attrs else []
        res = ResourceBlock(resource_type, name, attrs, depends_on, loc)
        self._add(decl.resources, res.key, res, "resource", block)

    def _module(self, decl: Declaration, block: _Block) -> None:
        (name,) = block.labels
        loc = self.loc(block.line, block.col)
        if block.body.blocks:
            raise DeclarationSyntaxError(
                "Module blocks take attributes only", source=self.source, line=block.line
            )
        inputs = {k: e for k, (e, _, _) in block.body.attributes.items()}
        if "source" not in inputs:
            raise DeclarationSyntaxError(
                f"Module '{name}' is missing 'source'", source=self.source, line=block.line
            )
        source = _const(inputs.pop("source"), "Module source", (str,), loc)
        depends_on = _depends_on(inputs.pop("depends_on"), loc) if "depends_on" in inputs else []
        self._add(decl.modules, name, ModuleBlock(name, source, inputs, depends_on, loc), "module", block)

    def _variable(self, decl: Declaration, block: _Block) -> None:
        (name,) = block.labels
        loc = self.loc(block.line, block.col)
        attrs = {k: e for k, (e, _, _) in block.body.attributes.items()}
        unknown = set(attrs) - {"default", "type", "sensitive", "description"}
        if unknown or block.body.blocks:
            raise DeclarationSyntaxError(
                f"Unsupported arguments in variable '{name}': {', '.join(sorted(unknown))}",
                source=self.source,
                line=block.line,
            )
        default = attrs.get("default")
        if default is not None and any(isinstance(n, Traversal) for n in walk(default)):
            raise DeclarationSyntaxError(
                f"Default of variable '{name}' cannot contain references",
                source=self.source,
                line=block.line,
            )
        var = VariableBlock(
            name=name,
            default=default,
            type=type_name(attrs["type"], loc) if "type" in attrs else "any",
            sensitive=_const(attrs["sensitive"], "sensitive", (bool,), loc)
            if "sensitive" in attrs
            else False,
            description=_const(attrs["description"], "description", (str,), loc)
            if "description" in attrs
            else "",
            location=loc,
        )
        self._add(decl.variables, name, var, "variable", block)

    def _output(self, decl: Declaration, block: _Block) -> None:
        (name,) = block.labels
        loc = self.loc(block.line, block.col)
        attrs = {k: e for k, (e, _, _) in block.body.attributes.items()}
        if "value" not in attrs:
            raise DeclarationSyntaxError(
                f"Output '{name}' is missing 'value'", source=self.source, line=block.line
            )
        out = OutputBlock(
            name=name,
            value=attrs["value"],
            sensitive=_const(attrs["sensitive"], "sensitive", (bool,), loc)
            if "sensitive" in attrs
            else False,
            description=_const(attrs["description"], "description", (str,), loc)
            if "description" in attrs
            else "",
            location=loc,
        )
        self._add(decl.outputs, name, out, "output", block)

    def _provider(self, decl: Declaration, block: _Block) -> None:
        (name,) = block.labels
        loc = self.loc(block.line, block.col)
        prov = ProviderBlock(name, _nested_attributes(block.body), loc)
        self._add(decl.providers, name, prov, "provider", block)

    def _locals(self, decl: Declaration, block: _Block) -> None:
        for key, (expr, _, _) in block.body.attributes.items():
            self._add(decl.locals, key, expr, "local", block)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_expression(text: str, *, source: str = "<expr>", line: int = 1, col: int = 1) -> Expr:
    """Parse a single expression (used for interpolations and ``--var`` values)."""
    lexer = _Lexer(text, source, line=line, col=col)
    parser = _Parser(lexer.tokens(), source)
    expr = parser.parse_expr()
    tail = parser.peek()
    if tail.kind != "eof":
        raise parser.error(f"Unexpected {_describe(tail)} after expression", tail)
    return expr


def parse_declaration(text: str, *, source: str = "<string>", directory: Path | None = None) -> Declaration:
    """Parse the text of one declaration file."""
    tokens = _Lexer(text, source).tokens()
    body = _Parser(tokens, source).parse_body(nested=False)
    return _Converter(source).convert(body, directory)


def load_directory(path: Path) -> Declaration:
    """Parse and merge every ``*.sf`` file of *path* (or the single file *path*)."""
    files = [path] if path.is_file() else sorted(path.glob("*.sf"))
    directory = path.parent if path.is_file() else path
    if not files:
        raise DeclarationSyntaxError(f"No *.sf declaration files found in {path}", source=str(path))

    decl = Declaration(directory=directory)
    for file in files:
        logger.debug("Parsing %s", file)
        decl.merge(parse_declaration(file.read_text(), source=str(file), directory=directory))
    return decl
