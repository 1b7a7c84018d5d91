"""
Property expression tree.

Every property value in a manifest compiles to one of a closed set of node
kinds: Literal, Reference, Template, Call, ListExpr, MapExpr. The graph builder
and the resolver are exhaustive over exactly these.
"""
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Tuple, Union

# Reference roots that never name a node
VARIABLE_ROOT = "var"
LOCAL_ROOT = "local"
DEPLOYMENT_ROOT = "deployment"
COUNT_ROOT = "count"

PathPart = Union[str, int]


class Expression:
    def children(self) -> Tuple["Expression", ...]:
        return ()

    def walk(self) -> Iterator["Expression"]:
        yield self
        for child in self.children():
            yield from child.walk()

    def references(self) -> Iterator["Reference"]:
        for expr in self.walk():
            if isinstance(expr, Reference):
                yield expr


@dataclass(frozen=True)
class Literal(Expression):
    value: Any


@dataclass(frozen=True)
class Reference(Expression):
    """A traversal such as ``var.prefix`` or ``azurerm_lb.main[0].frontend.id``."""

    parts: Tuple[PathPart, ...]

    @property
    def root(self) -> str:
        return str(self.parts[0])

    @property
    def is_node_reference(self) -> bool:
        return self.root not in (VARIABLE_ROOT, DEPLOYMENT_ROOT, COUNT_ROOT)

    @property
    def address(self) -> Optional[str]:
        """Address of the producing node, or None for var/deployment/count roots."""
        if not self.is_node_reference:
            return None
        if len(self.parts) < 2:
            return self.root
        address = f"{self.parts[0]}.{self.parts[1]}"
        if self.root != LOCAL_ROOT and len(self.parts) > 2 and isinstance(self.parts[2], int):
            address += f"[{self.parts[2]}]"
        return address

    @property
    def attribute_path(self) -> Tuple[PathPart, ...]:
        """Parts after the producer (or after the var/deployment/count name)."""
        if not self.is_node_reference:
            return tuple(self.parts[2:])
        skip = 2
        if self.root != LOCAL_ROOT and len(self.parts) > 2 and isinstance(self.parts[2], int):
            skip = 3
        return tuple(self.parts[skip:])

    @property
    def field(self) -> Optional[str]:
        """First attribute read from the producer, the edge's produced field."""
        if self.root == LOCAL_ROOT:
            return "value"
        path = self.attribute_path
        if path and isinstance(path[0], str):
            return path[0]
        return None

    def __str__(self) -> str:
        text = ""
        for part in self.parts:
            if isinstance(part, int):
                text += f"[{part}]"
            else:
                text += ("." if text else "") + part
        return text


@dataclass(frozen=True)
class Template(Expression):
    """String interpolation: parts are resolved then concatenated."""

    parts: Tuple[Expression, ...]

    def children(self) -> Tuple[Expression, ...]:
        return self.parts


@dataclass(frozen=True)
class Call(Expression):
    """Function call or operator (operators use their symbol as name)."""

    name: str
    args: Tuple[Expression, ...] = ()

    def children(self) -> Tuple[Expression, ...]:
        return self.args


@dataclass(frozen=True)
class ListExpr(Expression):
    items: Tuple[Expression, ...] = ()

    def children(self) -> Tuple[Expression, ...]:
        return self.items


@dataclass(frozen=True)
class MapExpr(Expression):
    items: Tuple[Tuple[str, Expression], ...] = field(default_factory=tuple)

    def children(self) -> Tuple[Expression, ...]:
        return tuple(v for _, v in self.items)


def substitute(expr: Expression, root: str, name: str, value: Any) -> Expression:
    """Replace references to ``root.name`` with a literal, e.g. ``count.index``."""
    if isinstance(expr, Reference):
        if expr.root == root and len(expr.parts) > 1 and expr.parts[1] == name:
            return Literal(value)
        return expr
    if isinstance(expr, Template):
        return Template(tuple(substitute(p, root, name, value) for p in expr.parts))
    if isinstance(expr, Call):
        return Call(expr.name, tuple(substitute(a, root, name, value) for a in expr.args))
    if isinstance(expr, ListExpr):
        return ListExpr(tuple(substitute(i, root, name, value) for i in expr.items))
    if isinstance(expr, MapExpr):
        return MapExpr(tuple((k, substitute(v, root, name, value)) for k, v in expr.items))
    return expr
