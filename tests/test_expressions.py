"""
Expression parser, built-in functions and value resolver.
"""
import pytest

from convergent.engine import functions
from convergent.engine.resolver import ResolvedScope, resolve
from convergent.errors import ExpressionError, UnknownAttributeError, UnresolvedDependencyError
from convergent.models.expression import Call, ListExpr, Literal, MapExpr, Reference, Template, substitute
from convergent.models.values import MASK, Sensitive, contains_sensitive, derive, mask, reveal
from convergent.parsers.expression import compile_value, parse_expression, parse_template, reference_from_string


# --------------------------------------------------------- parser
class TestParser:
    def test_reference(self):
        expr = parse_expression("azurerm_lb.main.frontend.id")
        assert expr == Reference(("azurerm_lb", "main", "frontend", "id"))
        assert expr.address == "azurerm_lb.main"
        assert expr.field == "frontend"

    def test_indexed_reference(self):
        expr = parse_expression("vm.web[1].id")
        assert expr.parts == ("vm", "web", 1, "id")
        assert expr.address == "vm.web[1]"
        assert expr.field == "id"
        assert str(expr) == "vm.web[1].id"

    def test_variable_and_local_references(self):
        var = parse_expression("var.prefix")
        assert var.address is None
        assert not var.is_node_reference
        local = parse_expression("local.tags.env")
        assert local.address == "local.tags"
        assert local.field == "value"
        assert local.attribute_path == ("env",)

    def test_operator_precedence(self):
        expr = parse_expression("1 + 2 * 3 == 7 && !false")
        assert expr == Call("&&", (
            Call("==", (Call("+", (Literal(1), Call("*", (Literal(2), Literal(3))))), Literal(7))),
            Call("!", (Literal(False),)),
        ))

    def test_conditional(self):
        expr = parse_expression('var.env == "prod" ? 3 : 1')
        assert isinstance(expr, Call) and expr.name == "?:"
        assert expr.args[1] == Literal(3)

    def test_function_call_with_collections(self):
        expr = parse_expression('merge(local.tags, { role = "web", "tier": 2 })')
        assert expr.name == "merge"
        assert expr.args[1] == MapExpr((("role", Literal("web")), ("tier", Literal(2))))
        assert parse_expression("[1, 2,]") == ListExpr((Literal(1), Literal(2)))

    def test_negative_number_literal(self):
        assert parse_expression("-3") == Literal(-3)
        assert parse_expression("-var.x") == Call("neg", (Reference(("var", "x")),))

    def test_dynamic_index_becomes_call(self):
        expr = parse_expression("var.zones[count.index]")
        assert expr == Call("index", (Reference(("var", "zones")), Reference(("count", "index"))))

    def test_syntax_errors(self):
        for text in ("1 +", "foo(", "a.b]", "{ 1 = 2 }", "@x"):
            with pytest.raises(ExpressionError):
                parse_expression(text)


class TestTemplates:
    def test_plain_string_is_literal(self):
        assert parse_template("hello") == Literal("hello")

    def test_single_interpolation_keeps_type(self):
        assert parse_template("${var.count}") == Reference(("var", "count"))

    def test_mixed_template(self):
        expr = parse_template("${var.prefix}-vnet-${deployment.suffix}")
        assert expr == Template((
            Reference(("var", "prefix")),
            Literal("-vnet-"),
            Reference(("deployment", "suffix")),
        ))

    def test_escaped_interpolation(self):
        assert parse_template("cost: $${amount}") == Literal("cost: ${amount}")

    def test_nested_braces_and_strings(self):
        expr = parse_template('x-${lookup({ a = "}" }, "a")}')
        assert isinstance(expr, Template)
        assert expr.parts[1].name == "lookup"

    def test_unterminated(self):
        with pytest.raises(ExpressionError):
            parse_template("${var.x")

    def test_compile_value_walks_collections(self):
        expr = compile_value({"names": ["${var.a}", "b"], "n": 1})
        assert expr == MapExpr((
            ("names", ListExpr((Reference(("var", "a")), Literal("b")))),
            ("n", Literal(1)),
        ))

    def test_compile_value_without_interpolation(self):
        assert compile_value("${var.a}", interpolate=False) == Literal("${var.a}")

    def test_reference_from_string(self):
        assert reference_from_string("azurerm_lb.main") == Reference(("azurerm_lb", "main"))
        assert reference_from_string("${azurerm_lb.main}") == Reference(("azurerm_lb", "main"))
        with pytest.raises(ExpressionError):
            reference_from_string("length(var.x)", "thing.a")

    def test_references_walk_whole_tree(self):
        expr = parse_template('${join(",", [a.b.id, local.c])}-${var.d}')
        found = {str(r) for r in expr.references()}
        assert found == {"a.b.id", "local.c", "var.d"}

    def test_substitute_count_index(self):
        expr = parse_template("vm-${count.index}")
        assert substitute(expr, "count", "index", 2) == Template((Literal("vm-"), Literal(2)))


# --------------------------------------------------------- sensitive values
class TestSensitive:
    def test_never_double_wrapped(self):
        assert Sensitive(Sensitive("x")).value == "x"

    def test_repr_hides_value(self):
        assert "secret" not in repr(Sensitive("secret"))
        assert "secret" not in str(Sensitive("secret"))

    def test_reveal_and_mask_nested(self):
        value = {"a": [1, Sensitive("s")], "b": Sensitive({"k": "v"})}
        assert reveal(value) == {"a": [1, "s"], "b": {"k": "v"}}
        assert mask(value) == {"a": [1, MASK], "b": MASK}
        assert contains_sensitive(value)

    def test_derive(self):
        assert derive("ab", "a", "b") == "ab"
        assert derive("ab", Sensitive("a"), "b") == Sensitive("ab")
        assert derive("ab", ["x", Sensitive("a")]) == Sensitive("ab")


# --------------------------------------------------------- functions
class TestFunctions:
    def test_string_functions(self):
        assert functions.call("lower", ["WeB"]) == "web"
        assert functions.call("upper", ["web"]) == "WEB"
        assert functions.call("trimspace", ["  x "]) == "x"
        assert functions.call("replace", ["a-b-c", "-", "_"]) == "a_b_c"
        assert functions.call("substr", ["hello", 1, 3]) == "ell"
        assert functions.call("format", ["%s-%v-%d", "a", "b", 3]) == "a-b-3"

    def test_collection_functions(self):
        assert functions.call("join", ["-", ["a", 1, True]]) == "a-1-true"
        assert functions.call("split", [",", "a,b"]) == ["a", "b"]
        assert functions.call("concat", [[1], [2, 3]]) == [1, 2, 3]
        assert functions.call("contains", [["a"], "a"]) is True
        assert functions.call("length", [{"a": 1}]) == 1
        assert functions.call("lookup", [{"a": 1}, "b", 7]) == 7
        assert functions.call("merge", [{"a": 1}, {"a": 2, "b": 3}]) == {"a": 2, "b": 3}

    def test_base64_round_trip(self):
        encoded = functions.call("base64encode", ["#!/bin/bash\necho hi\n"])
        assert encoded == "IyEvYmluL2Jhc2gKZWNobyBoaQo="
        assert functions.call("base64decode", [encoded]) == "#!/bin/bash\necho hi\n"

    def test_regex(self):
        assert functions.call("regex", ["^[a-z]+$", "web"]) == "web"
        assert functions.call("regex", [r"(\d+)-(\d+)", "10-20"]) == ["10", "20"]
        with pytest.raises(ExpressionError):
            functions.call("regex", ["^[a-z]+$", "Web1"])

    def test_numbers(self):
        assert functions.call("tonumber", ["3"]) == 3
        assert functions.call("tonumber", ["2.5"]) == 2.5
        assert functions.call("+", ["2", 3]) == 5
        assert functions.call("%", [7, 3]) == 1
        assert functions.call("tostring", [4.0]) == "4"
        with pytest.raises(ExpressionError):
            functions.call("/", [1, 0])

    def test_errors_are_expression_errors(self):
        with pytest.raises(ExpressionError):
            functions.call("nope", [])
        with pytest.raises(ExpressionError):
            functions.call("lookup", [{}, "a"])
        with pytest.raises(ExpressionError):
            functions.call("substr", ["abc"])

    def test_templatefile_renders_jinja(self, tmp_path):
        (tmp_path / "setup.sh.j2").write_text("lb={{ lb_ip }}\n{% for n in names %}{{ n }};{% endfor %}")
        out = functions.call("templatefile", ["setup.sh.j2", {"lb_ip": "1.2.3.4", "names": ["a", "b"]}],
                             base_dir=str(tmp_path))
        assert out == "lb=1.2.3.4\na;b;"

    def test_templatefile_undefined_variable(self, tmp_path):
        (tmp_path / "t.j2").write_text("{{ missing }}")
        with pytest.raises(ExpressionError):
            functions.call("templatefile", ["t.j2", {}], base_dir=str(tmp_path))

    def test_file(self, tmp_path):
        (tmp_path / "key.pub").write_text("ssh-ed25519 AAAA")
        assert functions.call("file", ["key.pub"], base_dir=str(tmp_path)) == "ssh-ed25519 AAAA"
        with pytest.raises(ExpressionError):
            functions.call("file", ["missing"], base_dir=str(tmp_path))


# --------------------------------------------------------- resolver
class TestResolver:
    def setup_method(self):
        self.scope = ResolvedScope(
            nodes={
                "network.vnet": {"id": "net-1", "cidr": "10.0.0.0/16", "tags": {"env": "prod"}},
                "key_pair.admin": {"publicKey": Sensitive("ssh-rsa AAA"), "id": "op-1"},
                "vm.web[0]": {"id": "vm-0"},
                "local.names": {"value": ["a", "b"]},
            },
            variables={"prefix": "web", "password": Sensitive("hunter2"), "zones": ["1", "2"]},
            deployment={"suffix": "x1y2z3"},
        )

    def _eval(self, text):
        return resolve(parse_template(text), self.scope)

    def test_literal_and_reference(self):
        assert self._eval("plain") == "plain"
        assert self._eval("${network.vnet.id}") == "net-1"
        assert self._eval("${network.vnet.tags.env}") == "prod"
        assert self._eval("${vm.web[0].id}") == "vm-0"
        assert self._eval("${local.names[1]}") == "b"

    def test_template_concatenation(self):
        assert self._eval("${var.prefix}-vnet-${deployment.suffix}") == "web-vnet-x1y2z3"

    def test_sensitive_propagates_through_templates(self):
        value = self._eval("postgres://admin:${var.password}@db")
        assert value == Sensitive("postgres://admin:hunter2@db")

    def test_sensitive_propagates_through_functions(self):
        value = self._eval("${base64encode(key_pair.admin.publicKey)}")
        assert isinstance(value, Sensitive)
        assert reveal(value) == functions.call("base64encode", ["ssh-rsa AAA"])

    def test_function_errors_do_not_quote_sensitive_arguments(self):
        with pytest.raises(ExpressionError) as exc:
            self._eval("${tonumber(var.password)}")
        assert str(exc.value) == "tonumber(): invalid argument (sensitive value)"
        assert "hunter2" not in str(exc.value)

        with pytest.raises(ExpressionError) as exc:
            self._eval("${tonumber(var.prefix)}")
        assert "'web'" in str(exc.value)

    def test_sensitive_reference_stays_sensitive(self):
        assert self._eval("${key_pair.admin.publicKey}") == Sensitive("ssh-rsa AAA")

    def test_collections(self):
        value = resolve(compile_value({"keys": ["${key_pair.admin.publicKey}"], "n": "${length(var.zones)}"}),
                        self.scope)
        assert value["n"] == 2
        assert value["keys"] == [Sensitive("ssh-rsa AAA")]

    def test_conditional_and_short_circuit(self):
        assert self._eval('${var.prefix == "web" ? "yes" : "no"}') == "yes"
        # the right-hand side would fail if evaluated
        assert self._eval("${false && missing.node.id}") is False
        assert self._eval("${true || missing.node.id}") is True

    def test_can(self):
        assert self._eval("${can(network.vnet.nope)}") is False
        assert self._eval('${can(regex("^w", var.prefix))}') is True

    def test_dynamic_index(self):
        scope = ResolvedScope(variables={"zones": ["1", "2"], "i": 1})
        assert resolve(parse_expression("var.zones[var.i]"), scope) == "2"

    def test_missing_producer_is_engine_error(self):
        with pytest.raises(UnresolvedDependencyError):
            self._eval("${lb.main.id}")

    def test_missing_variable_is_engine_error(self):
        with pytest.raises(UnresolvedDependencyError):
            self._eval("${var.nope}")

    def test_missing_attribute(self):
        with pytest.raises(UnknownAttributeError):
            self._eval("${network.vnet.nope}")
        with pytest.raises(UnknownAttributeError):
            self._eval("${deployment.region}")

    def test_count_index_outside_count(self):
        with pytest.raises(ExpressionError):
            self._eval("${count.index}")
