"""
Value resolver.

Evaluates an expression tree against the outputs of nodes that have already
reached Applied. Sensitivity flows from inputs to everything derived from them.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from convergent.engine import functions
from convergent.errors import (
    ExpressionError,
    UnknownAttributeError,
    UnresolvedDependencyError,
)
from convergent.models.expression import (
    COUNT_ROOT,
    DEPLOYMENT_ROOT,
    LOCAL_ROOT,
    VARIABLE_ROOT,
    Call,
    Expression,
    ListExpr,
    Literal,
    MapExpr,
    PathPart,
    Reference,
    Template,
)
from convergent.models.values import Sensitive, contains_sensitive, derive, reveal


@dataclass
class ResolvedScope:
    """What an expression may read: applied node outputs, inputs, deployment facts."""

    nodes: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    deployment: Mapping[str, Any] = field(default_factory=dict)
    base_dir: str = ""


def _traverse(value: Any, path: Tuple[PathPart, ...], ref: Reference) -> Any:
    sensitive = False
    for part in path:
        if isinstance(value, Sensitive):
            sensitive = True
            value = value.value
        try:
            value = value[part]
        except (KeyError, IndexError, TypeError):
            raise UnknownAttributeError(f"{ref}: no attribute {part!r}") from None
    if sensitive:
        return Sensitive(value)
    return value


def _resolve_reference(ref: Reference, scope: ResolvedScope) -> Any:
    root = ref.root
    if len(ref.parts) < 2:
        raise ExpressionError(f"incomplete reference {ref}")
    name = ref.parts[1]

    if root == VARIABLE_ROOT:
        if name not in scope.variables:
            raise UnresolvedDependencyError(f"input {name!r} is not in scope for {ref}")
        return _traverse(scope.variables[name], ref.attribute_path, ref)

    if root == DEPLOYMENT_ROOT:
        if name not in scope.deployment:
            raise UnknownAttributeError(f"{ref}: unknown deployment attribute {name!r}")
        return _traverse(scope.deployment[name], ref.attribute_path, ref)

    if root == COUNT_ROOT:
        raise ExpressionError(f"{ref} used outside a counted declaration")

    address = ref.address
    outputs = scope.nodes.get(address)
    if outputs is None:
        raise UnresolvedDependencyError(
            f"{address} read before it was applied (via {ref})"
        )
    if root == LOCAL_ROOT:
        return _traverse(outputs.get("value"), ref.attribute_path, ref)
    return _traverse(outputs, ref.attribute_path, ref)


def _call(name: str, args: List[Any], base_dir: str) -> Any:
    """Call a function on resolved arguments without quoting sensitive ones in errors."""
    try:
        return functions.call(name, [reveal(a) for a in args], base_dir=base_dir)
    except ExpressionError:
        if not contains_sensitive(args):
            raise
    raise ExpressionError(f"{name}(): invalid argument (sensitive value)")


def _resolve_call(expr: Call, scope: ResolvedScope) -> Any:
    name = expr.name

    if name == "can":
        if len(expr.args) != 1:
            raise ExpressionError("can() takes exactly one argument")
        try:
            resolve(expr.args[0], scope)
        except ExpressionError:
            return False
        return True

    if name == "?:":
        cond = resolve(expr.args[0], scope)
        branch = expr.args[1] if reveal(cond) else expr.args[2]
        return derive(resolve(branch, scope), cond)

    if name in ("&&", "||"):
        left = resolve(expr.args[0], scope)
        if bool(reveal(left)) == (name == "||"):
            return derive(bool(reveal(left)), left)
        right = resolve(expr.args[1], scope)
        return derive(bool(reveal(right)), left, right)

    args = [resolve(a, scope) for a in expr.args]
    result = _call(name, args, scope.base_dir)
    return derive(result, *args)


def resolve(expr: Expression, scope: ResolvedScope) -> Any:
    """
    Evaluate ``expr`` against ``scope``.

    Raises UnresolvedDependencyError when a producer is not in scope: the
    executor only resolves a node after all its producers applied, so this is
    an engine bug rather than a user error.
    """
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Reference):
        return _resolve_reference(expr, scope)
    if isinstance(expr, Template):
        parts = [resolve(p, scope) for p in expr.parts]
        text = "".join(_call("tostring", [p], scope.base_dir) for p in parts)
        return derive(text, *parts)
    if isinstance(expr, Call):
        return _resolve_call(expr, scope)
    if isinstance(expr, ListExpr):
        return [resolve(i, scope) for i in expr.items]
    if isinstance(expr, MapExpr):
        return {k: resolve(v, scope) for k, v in expr.items}
    raise ExpressionError(f"unsupported expression {type(expr).__name__}")


def resolve_properties(properties: Mapping[str, Expression], scope: ResolvedScope) -> Dict[str, Any]:
    return {name: resolve(expr, scope) for name, expr in properties.items()}
