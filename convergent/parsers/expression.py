"""
Expression parser.

Turns raw manifest values into Expression trees. Strings are scanned for
``${...}`` interpolations; the text inside an interpolation is parsed with a
small recursive-descent parser covering the HCL expression subset convergent
supports (traversals, function calls, literals, collections, operators and
the ``?:`` conditional).
"""
import json
import re
from typing import Any, List, Optional, Tuple

from convergent.errors import ExpressionError
from convergent.models.expression import (
    Call,
    Expression,
    ListExpr,
    Literal,
    MapExpr,
    Reference,
    Template,
)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<op>&&|\|\||==|!=|<=|>=|[<>!+\-*/%?:()\[\]{},=.])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}

_KEYWORDS = {"true": True, "false": False, "null": None}

_BINARY_LEVELS = [
    ("||",),
    ("&&",),
    ("==", "!="),
    ("<", "<=", ">", ">="),
    ("+", "-"),
    ("*", "/", "%"),
]


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ExpressionError(f"unexpected character {text[pos]!r} in expression {text!r}")
        kind = m.lastgroup
        if kind != "ws":
            tokens.append((kind, m.group(kind)))
        pos = m.end()
    tokens.append(("end", ""))
    return tokens


def _unescape(body: str) -> str:
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            out.append(_ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    # ------------------------------------------------------------ helpers
    def _peek(self, offset: int = 0) -> Tuple[str, str]:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _next(self) -> Tuple[str, str]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _accept(self, value: str) -> bool:
        kind, val = self._peek()
        if kind == "op" and val == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            got = self._peek()[1] or "end of expression"
            raise ExpressionError(f"expected {value!r}, got {got!r} in {self.text!r}")

    # ------------------------------------------------------------ grammar
    def parse(self) -> Expression:
        expr = self._conditional()
        if self._peek()[0] != "end":
            raise ExpressionError(f"unexpected {self._peek()[1]!r} in {self.text!r}")
        return expr

    def _conditional(self) -> Expression:
        cond = self._binary(0)
        if self._accept("?"):
            when_true = self._conditional()
            self._expect(":")
            when_false = self._conditional()
            return Call("?:", (cond, when_true, when_false))
        return cond

    def _binary(self, level: int) -> Expression:
        if level == len(_BINARY_LEVELS):
            return self._unary()
        left = self._binary(level + 1)
        while True:
            kind, val = self._peek()
            if kind == "op" and val in _BINARY_LEVELS[level]:
                self.pos += 1
                right = self._binary(level + 1)
                left = Call(val, (left, right))
            else:
                return left

    def _unary(self) -> Expression:
        if self._accept("!"):
            return Call("!", (self._unary(),))
        if self._accept("-"):
            operand = self._unary()
            if isinstance(operand, Literal) and isinstance(operand.value, (int, float)):
                return Literal(-operand.value)
            return Call("neg", (operand,))
        return self._postfix()

    def _postfix(self) -> Expression:
        expr = self._primary()
        while True:
            if self._accept("."):
                kind, name = self._next()
                if kind == "number" and name.isdigit():
                    expr = self._extend(expr, int(name))
                elif kind == "ident":
                    expr = self._extend(expr, name)
                else:
                    raise ExpressionError(f"expected attribute name after '.' in {self.text!r}")
            elif self._accept("["):
                index = self._conditional()
                self._expect("]")
                if isinstance(index, Literal) and isinstance(index.value, (int, str)) \
                        and not isinstance(index.value, bool):
                    expr = self._extend(expr, index.value)
                else:
                    expr = Call("index", (expr, index))
            else:
                return expr

    @staticmethod
    def _extend(expr: Expression, part) -> Expression:
        if isinstance(expr, Reference):
            return Reference(expr.parts + (part,))
        return Call("index", (expr, Literal(part)))

    def _primary(self) -> Expression:
        kind, val = self._next()
        if kind == "number":
            return Literal(float(val) if any(c in val for c in ".eE") else int(val))
        if kind == "string":
            return parse_template(_unescape(val[1:-1]))
        if kind == "ident":
            if val in _KEYWORDS:
                return Literal(_KEYWORDS[val])
            if self._accept("("):
                return Call(val, tuple(self._sequence(")")))
            return Reference((val,))
        if kind == "op":
            if val == "(":
                expr = self._conditional()
                self._expect(")")
                return expr
            if val == "[":
                return ListExpr(tuple(self._sequence("]")))
            if val == "{":
                return self._object()
        raise ExpressionError(f"unexpected {val or 'end of expression'!r} in {self.text!r}")

    def _sequence(self, closer: str) -> List[Expression]:
        items: List[Expression] = []
        if self._accept(closer):
            return items
        while True:
            items.append(self._conditional())
            if self._accept(closer):
                return items
            self._expect(",")
            if self._accept(closer):
                return items

    def _object(self) -> MapExpr:
        items = []
        while not self._accept("}"):
            kind, key = self._next()
            if kind == "string":
                key = _unescape(key[1:-1])
            elif kind != "ident":
                raise ExpressionError(f"invalid object key {key!r} in {self.text!r}")
            if not (self._accept("=") or self._accept(":")):
                raise ExpressionError(f"expected '=' after object key {key!r} in {self.text!r}")
            items.append((key, self._conditional()))
            self._accept(",")
        return MapExpr(tuple(items))


def parse_expression(text: str) -> Expression:
    """Parse the body of an interpolation (no surrounding ``${ }``)."""
    return _Parser(text).parse()


def _find_closing(text: str, start: int) -> int:
    """Index of the ``}`` closing the interpolation whose body starts at ``start``."""
    depth = 0
    i = start
    in_string = False
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            if depth == 0:
                return i
            depth -= 1
        i += 1
    raise ExpressionError(f"unterminated interpolation in {text!r}")


def parse_template(text: str) -> Expression:
    """
    Parse a string that may contain ``${...}`` interpolations.

    A string that is exactly one interpolation yields the inner expression
    itself, so its type is preserved (``"${var.count}"`` stays a number).
    ``$${`` escapes a literal ``${``.
    """
    parts: List[Expression] = []
    buf: List[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _find_closing(text, i + 2)
            if buf:
                parts.append(Literal("".join(buf)))
                buf = []
            parts.append(parse_expression(text[i + 2:end]))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append(Literal("".join(buf)))

    if not parts:
        return Literal("")
    if len(parts) == 1:
        return parts[0]
    return Template(tuple(parts))


def _strip_hcl_quotes(value: str) -> str:
    # Some python-hcl2 releases keep the quotes around string literals
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        try:
            return json.loads(value)
        except ValueError:
            return value[1:-1]
    return value


def compile_value(raw: Any, interpolate: bool = True) -> Expression:
    """Compile a raw parsed manifest value into an expression tree."""
    if isinstance(raw, Expression):
        return raw
    if isinstance(raw, str):
        if not interpolate:
            return Literal(raw)
        return parse_template(_strip_hcl_quotes(raw))
    if isinstance(raw, dict):
        return MapExpr(tuple((str(k), compile_value(v, interpolate)) for k, v in raw.items()))
    if isinstance(raw, (list, tuple)):
        return ListExpr(tuple(compile_value(v, interpolate) for v in raw))
    return Literal(raw)


def reference_from_string(text: str, source: Optional[str] = None) -> Reference:
    """Parse a bare traversal such as ``azurerm_lb.main`` (``depends_on`` entries)."""
    inner = text.strip()
    if inner.startswith("${") and inner.endswith("}"):
        inner = inner[2:-1]
    expr = parse_expression(inner)
    if not isinstance(expr, Reference):
        where = f" in {source}" if source else ""
        raise ExpressionError(f"expected a resource reference{where}, got {text!r}")
    return expr
