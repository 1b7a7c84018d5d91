import logging
import os
from typing import Any, Dict, Iterator, List, Tuple

import hcl2

from convergent.detect import detect_format
from convergent.errors import ExpressionError, ManifestError
from convergent.models.manifest import (
    VARIABLE_TYPES,
    Declaration,
    InputVariable,
    Manifest,
    OutputDecl,
    Validation,
)
from convergent.models.resource import NodeKind
from convergent.parsers.expression import (
    compile_value,
    parse_template,
    reference_from_string,
)

logger = logging.getLogger(__name__)

_META_ARGS = {"count", "depends_on", "lifecycle", "provider", "exports", "sensitive_exports"}
_IGNORED_BLOCKS = {"terraform", "provider", "data", "module", "moved", "import", "check"}


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _labelled(blocks: Any) -> Iterator[Tuple[str, Any]]:
    """Yield (label, body) pairs for blocks like ``variable "x" {}``; hcl2 gives list-or-dict."""
    if isinstance(blocks, dict):
        blocks = [blocks]
    for block in blocks or []:
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            yield label, body


def _scalar(val: Any) -> Any:
    """Plain value of a literal attribute (types, descriptions, flags)."""
    if isinstance(val, str):
        text = val.strip()
        if text.startswith("${") and text.endswith("}"):
            text = text[2:-1].strip()
        if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
            text = text[1:-1]
        return text
    return val


def _flag(val: Any) -> bool:
    val = _scalar(val)
    if isinstance(val, str):
        return val.lower() == "true"
    return bool(val)


def _string_list(val: Any) -> List[str]:
    if val is None:
        return []
    if not isinstance(val, list):
        val = [val]
    return [str(_scalar(v)) for v in val]


def _variable_type(raw: Any, where: str) -> str:
    text = str(_scalar(raw)) if raw is not None else "any"
    base = text.split("(", 1)[0].strip()
    aliases = {"object": "map", "tuple": "list", "set": "list"}
    base = aliases.get(base, base)
    if base not in VARIABLE_TYPES:
        raise ManifestError(f"variable {where}: unsupported type {text!r}")
    return base


def _parse_variable(name: str, body: Any, filepath: str) -> InputVariable:
    body = _unwrap(body) if isinstance(body, (dict, list)) else {}
    if not isinstance(body, dict):
        body = {}
    var = InputVariable(
        name=name,
        var_type=_variable_type(body.get("type"), name),
        description=str(_scalar(body.get("description", "")) or ""),
        sensitive=_flag(body.get("sensitive", False)),
    )
    if "default" in body:
        var.default = _literal_default(body["default"])

    rules = body.get("validation", [])
    if isinstance(rules, dict):
        rules = [rules]
    for rule in rules:
        if not isinstance(rule, dict) or "condition" not in rule:
            raise ManifestError(f"variable {name}: validation block needs a condition", filepath)
        try:
            condition = parse_template(str(rule["condition"]))
        except ExpressionError as exc:
            raise ManifestError(f"variable {name}: {exc}", filepath) from exc
        var.validations.append(Validation(
            condition=condition,
            error_message=str(_scalar(rule.get("error_message", "invalid value"))),
        ))
    return var


def _literal_default(val: Any) -> Any:
    if isinstance(val, str):
        return _scalar(val) if not val.startswith("${") else val
    if isinstance(val, list):
        return [_literal_default(v) for v in val]
    if isinstance(val, dict):
        return {k: _literal_default(v) for k, v in val.items()}
    return val


def _parse_declaration(kind: NodeKind, resource_type: str, name: str, raw_props: Any, filepath: str) -> Declaration:
    props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
    if not isinstance(props, dict):
        props = {}
    decl = Declaration(kind=kind, resource_type=resource_type, name=name, source_file=filepath)
    try:
        decl.properties = {
            k: compile_value(v) for k, v in props.items() if k not in _META_ARGS
        }
        if "count" in props:
            decl.count = compile_value(props["count"])
        decl.depends_on = [
            reference_from_string(str(r), decl.address) for r in _string_list_raw(props.get("depends_on"))
        ]
    except ExpressionError as exc:
        raise ManifestError(f"{decl.address}: {exc}", filepath) from exc

    if kind == NodeKind.ACTION:
        decl.exports = _string_list(props.get("exports"))
        decl.sensitive_exports = _string_list(props.get("sensitive_exports"))
        unknown = [s for s in decl.sensitive_exports if s not in decl.exports]
        if unknown:
            raise ManifestError(
                f"{decl.address}: sensitive_exports not in exports: {', '.join(unknown)}", filepath
            )
    if "lifecycle" in props or "provider" in props:
        logger.debug("%s: ignoring lifecycle/provider meta-arguments", decl.address)
    return decl


def _string_list_raw(val: Any) -> List[Any]:
    if val is None:
        return []
    return val if isinstance(val, list) else [val]


def _parse_typed_blocks(kind: NodeKind, blocks: Any, filepath: str) -> List[Declaration]:
    decls = []
    for resource_type, instances in _labelled(blocks):
        # hcl2 wraps the block in a list
        for name, raw_props in _labelled(instances):
            decls.append(_parse_declaration(kind, resource_type, name, raw_props, filepath))
    return decls


def parse_file(filepath: str) -> Manifest:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        # python-hcl2 raises lark exceptions without a common base class
        raise ManifestError(f"failed to parse: {exc}", filepath) from exc

    manifest = Manifest(source_files=[filepath], base_dir=os.path.dirname(os.path.abspath(filepath)))

    for block_type in data:
        if block_type in _IGNORED_BLOCKS:
            logger.debug("%s: ignoring %s block(s)", filepath, block_type)
        elif block_type not in ("variable", "locals", "resource", "action", "output"):
            logger.warning("%s: unsupported block type %r skipped", filepath, block_type)

    for name, body in _labelled(data.get("variable", [])):
        manifest.variables[name] = _parse_variable(name, body, filepath)

    for locals_block in data.get("locals", []):
        for name, raw in (locals_block or {}).items():
            try:
                manifest.locals[name] = compile_value(_unwrap(raw))
            except ExpressionError as exc:
                raise ManifestError(f"local.{name}: {exc}", filepath) from exc

    manifest.declarations.extend(_parse_typed_blocks(NodeKind.RESOURCE, data.get("resource", []), filepath))
    manifest.declarations.extend(_parse_typed_blocks(NodeKind.ACTION, data.get("action", []), filepath))

    for name, body in _labelled(data.get("output", [])):
        body = _unwrap(body) if isinstance(body, (dict, list)) else {}
        if not isinstance(body, dict) or "value" not in body:
            raise ManifestError(f"output {name}: missing value", filepath)
        try:
            value = compile_value(body["value"])
        except ExpressionError as exc:
            raise ManifestError(f"output {name}: {exc}", filepath) from exc
        manifest.outputs[name] = OutputDecl(
            name=name,
            value=value,
            sensitive=_flag(body.get("sensitive", False)),
            description=str(_scalar(body.get("description", "")) or ""),
        )

    return manifest


def parse_directory(path: str) -> Manifest:
    """All ``.tf`` files of a directory (recursively) form one manifest."""
    if os.path.isfile(path):
        return parse_file(path)

    manifest = Manifest(base_dir=os.path.abspath(path))
    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                manifest.merge(parse_file(fpath))
    manifest.base_dir = os.path.abspath(path)
    return manifest
