"""
Input variable coercion and validation.
"""
import pytest

from convergent.engine.inputs import coerce, validate_inputs
from convergent.errors import ValidationError
from convergent.models.manifest import InputVariable, Validation
from convergent.models.values import Sensitive
from convergent.parsers.expression import parse_expression


def _var(name, var_type="any", **kwargs):
    return InputVariable(name=name, var_type=var_type, **kwargs)


def _rule(condition, message):
    return Validation(condition=parse_expression(condition), error_message=message)


class TestCoerce:
    def test_string(self):
        assert coerce(_var("s", "string"), 42) == "42"
        assert coerce(_var("s", "string"), True) == "true"
        with pytest.raises(ValueError):
            coerce(_var("s", "string"), ["a"])

    def test_number_from_cli_text(self):
        assert coerce(_var("n", "number"), "3") == 3
        assert coerce(_var("n", "number"), "2.5") == 2.5
        assert coerce(_var("n", "number"), 7) == 7
        with pytest.raises(ValueError):
            coerce(_var("n", "number"), "three")
        with pytest.raises(ValueError):
            coerce(_var("n", "number"), True)

    @pytest.mark.parametrize("text,expected", [
        ("true", True), ("YES", True), ("1", True),
        ("false", False), ("off", False), ("0", False),
    ])
    def test_bool(self, text, expected):
        assert coerce(_var("b", "bool"), text) is expected

    def test_bool_rejects_other_text(self):
        with pytest.raises(ValueError):
            coerce(_var("b", "bool"), "maybe")

    def test_list_and_map_from_json(self):
        assert coerce(_var("l", "list"), '["1", "2"]') == ["1", "2"]
        assert coerce(_var("m", "map"), '{"env": "prod"}') == {"env": "prod"}
        with pytest.raises(ValueError):
            coerce(_var("l", "list"), '{"a": 1}')

    def test_any_passes_through(self):
        value = {"nested": [1, 2]}
        assert coerce(_var("a"), value) is value


class TestValidateInputs:
    def test_defaults_and_supplied_values(self):
        variables = {
            "prefix": _var("prefix", "string", default="web"),
            "count": _var("count", "number", default=2),
        }
        values = validate_inputs(variables, {"count": "5"})
        assert values == {"prefix": "web", "count": 5}

    def test_missing_required_and_undeclared_reported_together(self):
        variables = {
            "location": _var("location", "string"),
            "size": _var("size", "number"),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {"size": "big", "colour": "red"})
        errors = exc.value.errors
        assert len(errors) == 3
        assert "value given for undeclared variable 'colour'" in errors
        assert "variable 'location' is required but no value was given" in errors
        assert any(e.startswith("variable 'size':") for e in errors)

    def test_sensitive_inputs_are_wrapped(self):
        variables = {"password": _var("password", "string", sensitive=True)}
        values = validate_inputs(variables, {"password": "hunter2"})
        assert isinstance(values["password"], Sensitive)
        assert values["password"].value == "hunter2"

    def test_validation_passes(self):
        variables = {
            "instances": _var("instances", "number", default=3, validations=[
                _rule("var.instances >= 1 && var.instances <= 10", "instances must be between 1 and 10"),
            ]),
        }
        assert validate_inputs(variables, {}) == {"instances": 3}

    def test_validation_failures_use_error_message(self):
        variables = {
            "instances": _var("instances", "number", validations=[
                _rule("var.instances >= 1", "need at least one instance"),
            ]),
            "prefix": _var("prefix", "string", validations=[
                _rule("length(var.prefix) <= 5", "prefix is too long"),
                _rule('can(regex("^[a-z]+$", var.prefix))', "prefix must be lowercase letters"),
            ]),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {"instances": 0, "prefix": "Web-Frontend"})
        assert exc.value.errors == [
            "variable 'instances': need at least one instance",
            "variable 'prefix': prefix is too long",
            "variable 'prefix': prefix must be lowercase letters",
        ]

    def test_validation_may_only_read_inputs(self):
        variables = {
            "name": _var("name", "string", default="x", validations=[
                _rule("var.name != network.vnet.name", "must differ"),
            ]),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {})
        assert "may only refer to input variables" in str(exc.value)

    def test_validation_must_be_boolean(self):
        variables = {
            "name": _var("name", "string", default="x", validations=[
                _rule("length(var.name)", "bad"),
            ]),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {})
        assert "must be true or false" in str(exc.value)

    def test_validation_of_sensitive_input(self):
        variables = {
            "password": _var("password", "string", sensitive=True, validations=[
                _rule("length(var.password) >= 8", "password is too short"),
            ]),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {"password": "abc"})
        assert exc.value.errors == ["variable 'password': password is too short"]
        assert "abc" not in str(exc.value)

    def test_sensitive_conversion_error_hides_value(self):
        variables = {
            "pin": _var("pin", "number", sensitive=True),
            "port": _var("port", "number"),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {"pin": "hunter2", "port": "http"})
        assert exc.value.errors[0] == "variable 'pin': invalid value for type number"
        assert "'http'" in exc.value.errors[1]
        assert "hunter2" not in str(exc.value)

    def test_sensitive_validation_error_hides_value(self):
        variables = {
            "pin": _var("pin", "string", sensitive=True, validations=[
                _rule("tonumber(var.pin) > 0", "pin must be positive"),
            ]),
        }
        with pytest.raises(ValidationError) as exc:
            validate_inputs(variables, {"pin": "hunter2"})
        assert "could not be evaluated" in str(exc.value)
        assert "hunter2" not in str(exc.value)
