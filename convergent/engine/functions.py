"""
Built-in functions and operators available to manifest expressions.

Functions receive plain (revealed) Python values; sensitivity is re-applied by
the resolver. ``can`` and ``?:`` are evaluated lazily by the resolver itself.
"""
import base64
import operator
import os
import re
from typing import Any, Callable, Dict, List

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from convergent.errors import ExpressionError

LAZY_FORMS = {"can", "?:", "&&", "||"}


def _base64encode(value: str) -> str:
    return base64.b64encode(str(value).encode("utf-8")).decode("ascii")


def _base64decode(value: str) -> str:
    try:
        return base64.b64decode(value).decode("utf-8")
    except ValueError as exc:
        raise ExpressionError(f"base64decode: {exc}") from exc


def _format(fmt: str, *args: Any) -> str:
    # Terraform verbs that Python's %-formatting does not know
    fmt = fmt.replace("%v", "%s").replace("%q", '"%s"')
    try:
        return fmt % tuple(args)
    except (TypeError, ValueError) as exc:
        raise ExpressionError(f"format({fmt!r}): {exc}") from exc


def _join(separator: str, *lists: List[Any]) -> str:
    items: List[Any] = []
    for lst in lists:
        items.extend(lst)
    return str(separator).join(_tostring(i) for i in items)


def _split(separator: str, value: str) -> List[str]:
    return str(value).split(separator)


def _length(value: Any) -> int:
    if value is None:
        raise ExpressionError("length: argument is null")
    try:
        return len(value)
    except TypeError as exc:
        raise ExpressionError(f"length: {exc}") from exc


def _substr(value: str, offset: int, length: int) -> str:
    value = str(value)
    if offset < 0:
        offset = max(len(value) + offset, 0)
    if length < 0:
        return value[offset:]
    return value[offset:offset + length]


def _concat(*lists: List[Any]) -> List[Any]:
    out: List[Any] = []
    for lst in lists:
        out.extend(lst)
    return out


def _lookup(mapping: Dict[str, Any], key: str, *default: Any) -> Any:
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise ExpressionError(f"lookup: key {key!r} not found and no default given")


def _merge(*maps: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for m in maps:
        out.update(m)
    return out


def _regex(pattern: str, value: str) -> Any:
    m = re.search(pattern, str(value))
    if m is None:
        raise ExpressionError(f"regex: pattern {pattern!r} did not match")
    if m.groupdict():
        return m.groupdict()
    if m.groups():
        return list(m.groups())
    return m.group(0)


def _tostring(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _tonumber(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        text = str(value)
        return float(text) if any(c in text for c in ".eE") else int(text)
    except ValueError as exc:
        raise ExpressionError(f"tonumber: cannot convert {value!r}") from exc


def _index(collection: Any, key: Any) -> Any:
    try:
        return collection[key]
    except (KeyError, IndexError, TypeError) as exc:
        raise ExpressionError(f"invalid index {key!r}") from exc


def _add(left: Any, right: Any) -> Any:
    return _tonumber(left) + _tonumber(right)


def _div(left: Any, right: Any) -> Any:
    if _tonumber(right) == 0:
        raise ExpressionError("division by zero")
    return _tonumber(left) / _tonumber(right)


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def fn(left: Any, right: Any) -> bool:
        return op(_tonumber(left), _tonumber(right))
    return fn


def _arith(op: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def fn(left: Any, right: Any) -> Any:
        return op(_tonumber(left), _tonumber(right))
    return fn


def _resolve_path(base_dir: str, path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(base_dir or os.getcwd(), path)


def _file(base_dir: str, path: str) -> str:
    try:
        with open(_resolve_path(base_dir, path), encoding="utf-8") as fh:
            return fh.read()
    except OSError as exc:
        raise ExpressionError(f"file({path!r}): {exc}") from exc


def _templatefile(base_dir: str, path: str, variables: Dict[str, Any] = None) -> str:
    """Render a Jinja2 template file with the given variables."""
    full = _resolve_path(base_dir, path)
    env = Environment(
        loader=FileSystemLoader(os.path.dirname(full)),
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    try:
        template = env.get_template(os.path.basename(full))
        return template.render(**(variables or {}))
    except (OSError, TemplateError) as exc:
        raise ExpressionError(f"templatefile({path!r}): {exc}") from exc


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "base64encode": _base64encode,
    "base64decode": _base64decode,
    "format": _format,
    "join": _join,
    "split": _split,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "trimspace": lambda s: str(s).strip(),
    "replace": lambda s, old, new: str(s).replace(old, new),
    "substr": _substr,
    "length": _length,
    "concat": _concat,
    "contains": lambda lst, v: v in lst,
    "lookup": _lookup,
    "merge": _merge,
    "regex": _regex,
    "tostring": _tostring,
    "tonumber": _tonumber,
    "index": _index,
    # operators
    "==": operator.eq,
    "!=": operator.ne,
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
    "+": _add,
    "-": _arith(operator.sub),
    "*": _arith(operator.mul),
    "/": _div,
    "%": _arith(operator.mod),
    "!": lambda v: not v,
    "neg": lambda v: -_tonumber(v),
}

# Functions that read files relative to the manifest directory
FILE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "file": _file,
    "templatefile": _templatefile,
}


def call(name: str, args: List[Any], base_dir: str = "") -> Any:
    if name in FILE_FUNCTIONS:
        fn = FILE_FUNCTIONS[name]
        args = [base_dir] + list(args)
    elif name in FUNCTIONS:
        fn = FUNCTIONS[name]
    else:
        raise ExpressionError(f"unknown function {name!r}")
    try:
        return fn(*args)
    except ExpressionError:
        raise
    except (TypeError, ValueError, AttributeError, re.error) as exc:
        raise ExpressionError(f"{name}(): {exc}") from exc


def is_known(name: str) -> bool:
    return name in FUNCTIONS or name in FILE_FUNCTIONS or name in LAZY_FORMS
