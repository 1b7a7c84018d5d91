import json
import os
from typing import Any, Dict, List

import yaml

from convergent.detect import detect_format
from convergent.errors import ExpressionError, ManifestError
from convergent.models.expression import Call, Expression, ListExpr, Literal, MapExpr
from convergent.models.manifest import (
    VARIABLE_TYPES,
    Declaration,
    InputVariable,
    Manifest,
    OutputDecl,
    Validation,
)
from convergent.models.resource import NodeKind
from convergent.parsers.expression import parse_expression, parse_template, reference_from_string


# ------------------------------------------------------------------ YAML loader
# yaml.safe_load can't handle intrinsic tags (!Ref, !Sub, !Expr, etc.).
# We register multi-constructors that turn them into plain dicts so the rest of
# the parser can operate on normal Python objects, exactly like the JSON form.

class _ManifestLoader(yaml.SafeLoader):
    pass


def _tag_constructor(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    """Convert any !Tag into {"Tag": value} so downstream code can traverse it."""
    if isinstance(node, yaml.ScalarNode):
        return {tag_suffix: loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {tag_suffix: loader.construct_sequence(node, deep=True)}
    if isinstance(node, yaml.MappingNode):
        return {tag_suffix: loader.construct_mapping(node, deep=True)}
    return {tag_suffix: None}


_ManifestLoader.add_multi_constructor("!", _tag_constructor)

_INTRINSICS = {"Ref", "Sub", "Expr", "Base64", "Join"}


def _intrinsic_name(val: Dict[str, Any]) -> str:
    if len(val) != 1:
        return ""
    key = next(iter(val))
    name = key[5:] if key.startswith("Fn::") else key
    return name if name in _INTRINSICS else ""


def _convert(val: Any) -> Expression:
    """
    Turn a loaded value into an expression tree.
      !Ref a.b.c          -> {"Ref": "a.b.c"}        -> Reference
      !Sub "x-${var.y}"   -> {"Sub": "x-${var.y}"}   -> Template
      !Expr "length(x)"   -> {"Expr": "length(x)"}   -> any expression
      !Base64 v           -> {"Base64": v}           -> base64encode(v)
      !Join [sep, [..]]   -> {"Join": [sep, [..]]}   -> join(sep, [..])
    Plain strings stay literal.
    """
    if isinstance(val, dict):
        name = _intrinsic_name(val)
        arg = next(iter(val.values())) if name else None
        if name == "Ref":
            return reference_from_string(str(arg))
        if name == "Sub":
            if not isinstance(arg, str):
                raise ExpressionError("Sub takes a single template string")
            return parse_template(arg)
        if name == "Expr":
            return parse_expression(str(arg))
        if name == "Base64":
            return Call("base64encode", (_convert(arg),))
        if name == "Join":
            if not isinstance(arg, list) or len(arg) != 2:
                raise ExpressionError("Join takes [separator, list]")
            return Call("join", (_convert(arg[0]), _convert(arg[1])))
        return MapExpr(tuple((str(k), _convert(v)) for k, v in val.items()))
    if isinstance(val, list):
        return ListExpr(tuple(_convert(v) for v in val))
    return Literal(val)


def _as_condition(val: Any) -> Expression:
    if isinstance(val, str):
        return parse_expression(val)
    return _convert(val)


def _string_list(val: Any) -> List[str]:
    if val is None:
        return []
    if not isinstance(val, list):
        val = [val]
    return [str(v) for v in val]


def _parse_variable(name: str, body: Any, filepath: str) -> InputVariable:
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ManifestError(f"variable {name}: expected a mapping", filepath)
    var_type = str(body.get("type", "any"))
    if var_type not in VARIABLE_TYPES:
        raise ManifestError(f"variable {name}: unsupported type {var_type!r}", filepath)
    var = InputVariable(
        name=name,
        var_type=var_type,
        description=str(body.get("description", "")),
        sensitive=bool(body.get("sensitive", False)),
    )
    if "default" in body:
        var.default = body["default"]
    for rule in body.get("validation", []) or []:
        if not isinstance(rule, dict) or "condition" not in rule:
            raise ManifestError(f"variable {name}: validation needs a condition", filepath)
        var.validations.append(Validation(
            condition=_as_condition(rule["condition"]),
            error_message=str(rule.get("error_message", "invalid value")),
        ))
    return var


def _parse_declarations(kind: NodeKind, section: Any, filepath: str) -> List[Declaration]:
    decls: List[Declaration] = []
    if not section:
        return decls
    if not isinstance(section, dict):
        raise ManifestError(f"'{kind.value}s' must be a mapping of name to definition", filepath)

    for logical_name, definition in section.items():
        if not isinstance(definition, dict) or not definition.get("type"):
            raise ManifestError(f"{kind.value} {logical_name}: missing 'type'", filepath)
        properties = definition.get("properties", {}) or {}
        if not isinstance(properties, dict):
            raise ManifestError(f"{kind.value} {logical_name}: 'properties' must be a mapping", filepath)

        decl = Declaration(
            kind=kind,
            resource_type=str(definition["type"]),
            name=str(logical_name),
            source_file=filepath,
        )
        decl.properties = {k: _convert(v) for k, v in properties.items()}
        if definition.get("count") is not None:
            decl.count = _convert(definition["count"])
        decl.depends_on = [
            reference_from_string(r, decl.address) for r in _string_list(definition.get("depends_on"))
        ]
        if kind == NodeKind.ACTION:
            decl.exports = _string_list(definition.get("exports"))
            decl.sensitive_exports = _string_list(definition.get("sensitive_exports"))
            unknown = [s for s in decl.sensitive_exports if s not in decl.exports]
            if unknown:
                raise ManifestError(
                    f"{decl.address}: sensitive_exports not in exports: {', '.join(unknown)}", filepath
                )
        decls.append(decl)
    return decls


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    with open(filepath) as fh:
        if ext == ".json":
            return json.load(fh)
        return yaml.load(fh, Loader=_ManifestLoader)


def parse_file(filepath: str) -> Manifest:
    try:
        document = _load(filepath)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ManifestError(f"failed to parse: {exc}", filepath) from exc

    if not isinstance(document, dict):
        raise ManifestError("expected a mapping at the top level", filepath)

    manifest = Manifest(source_files=[filepath], base_dir=os.path.dirname(os.path.abspath(filepath)))
    try:
        for name, body in (document.get("variables") or {}).items():
            manifest.variables[name] = _parse_variable(name, body, filepath)
        for name, raw in (document.get("locals") or {}).items():
            manifest.locals[name] = _convert(raw)
        manifest.declarations.extend(
            _parse_declarations(NodeKind.RESOURCE, document.get("resources"), filepath)
        )
        manifest.declarations.extend(
            _parse_declarations(NodeKind.ACTION, document.get("actions"), filepath)
        )
        for name, body in (document.get("outputs") or {}).items():
            if not isinstance(body, dict) or "value" not in body:
                raise ManifestError(f"output {name}: missing value", filepath)
            manifest.outputs[name] = OutputDecl(
                name=name,
                value=_convert(body["value"]),
                sensitive=bool(body.get("sensitive", False)),
                description=str(body.get("description", "")),
            )
    except ExpressionError as exc:
        raise ManifestError(str(exc), filepath) from exc
    except AttributeError as exc:
        raise ManifestError(f"malformed section: {exc}", filepath) from exc

    return manifest


def parse_directory(path: str) -> Manifest:
    if os.path.isfile(path):
        return parse_file(path)

    manifest = Manifest(base_dir=os.path.abspath(path))
    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "yaml":
                manifest.merge(parse_file(fpath))
    return manifest
