"""
Input variable coercion and validation.

Runs once, before the registry and graph are built. Every problem is collected
so the user sees all of them in a single ValidationError.
"""
import json
from typing import Any, Dict, List, Mapping

from convergent.engine.resolver import ResolvedScope, resolve
from convergent.errors import ExpressionError, ValidationError
from convergent.models.expression import VARIABLE_ROOT
from convergent.models.manifest import InputVariable
from convergent.models.values import Sensitive, reveal

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def coerce(var: InputVariable, value: Any) -> Any:
    """Convert a raw value (CLI strings included) to the variable's declared type."""
    t = var.var_type
    if value is None or t == "any":
        return value
    if t == "string":
        if isinstance(value, (dict, list)):
            raise ValueError("expected a string")
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    if t == "number":
        if isinstance(value, bool):
            raise ValueError("expected a number")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        return float(text) if any(c in text for c in ".eE") else int(text)
    if t == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError("expected a bool")
    if t in ("list", "map"):
        if isinstance(value, str):
            value = json.loads(value)
        expected = list if t == "list" else dict
        if not isinstance(value, expected):
            raise ValueError(f"expected a {t}")
        return value
    raise ValueError(f"unsupported type {t!r}")


def validate_inputs(variables: Mapping[str, InputVariable], supplied: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return resolved input values, wrapping sensitive ones.

    Raises ValidationError listing missing values, type errors, unknown names
    and failed validation conditions.
    """
    errors: List[str] = []
    values: Dict[str, Any] = {}

    for name in supplied:
        if name not in variables:
            errors.append(f"value given for undeclared variable {name!r}")

    for name, var in variables.items():
        if name in supplied:
            raw = supplied[name]
        elif not var.required:
            raw = var.default
        else:
            errors.append(f"variable {name!r} is required but no value was given")
            continue
        try:
            value = coerce(var, reveal(raw))
        except (ValueError, TypeError) as exc:
            if var.sensitive:
                # conversion messages quote the offending value
                errors.append(f"variable {name!r}: invalid value for type {var.var_type}")
            else:
                errors.append(f"variable {name!r}: {exc}")
            continue
        values[name] = Sensitive(value) if var.sensitive else value

    if errors:
        raise ValidationError(errors)

    scope = ResolvedScope(variables=values)
    for name, var in variables.items():
        for rule in var.validations:
            bad = [
                str(ref) for ref in rule.condition.references()
                if ref.root != VARIABLE_ROOT or len(ref.parts) < 2 or ref.parts[1] not in values
            ]
            if bad:
                errors.append(
                    f"variable {name!r}: validation may only refer to input variables, got {', '.join(bad)}"
                )
                continue
            try:
                ok = reveal(resolve(rule.condition, scope))
            except ExpressionError as exc:
                errors.append(f"variable {name!r}: validation could not be evaluated: {exc}")
                continue
            if not isinstance(ok, bool):
                errors.append(f"variable {name!r}: validation condition must be true or false")
            elif not ok:
                errors.append(f"variable {name!r}: {rule.error_message}")

    if errors:
        raise ValidationError(errors)
    return values
