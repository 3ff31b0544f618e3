"""Unit tests for the composition algebra."""

import pytest

from action_composer.composition.combinators import COMBINATORS, PRIMITIVES, Composer, Composition, Kind
from action_composer.errors import ArgumentError, NameValidationError

c = Composer()


def test_every_kind_has_a_builder() -> None:
    for kind in Kind:
        method = {"if": "if_", "while": "while_", "try": "try_", "finally": "finally_", "async": "async_"}
        assert callable(getattr(c, method.get(kind.value, kind.value)))
        assert kind in COMBINATORS


def test_primitives() -> None:
    assert {k.value for k in PRIMITIVES} == {
        "sequence",
        "if_nosave",
        "while_nosave",
        "dowhile_nosave",
        "try",
        "finally",
        "let",
        "mask",
        "action",
        "composition",
        "function",
        "async",
        "parallel",
        "map",
        "dynamic",
    }


def test_task_coercion() -> None:
    assert c.task(None).type is Kind.EMPTY
    assert c.task("foo") == c.action("foo")
    assert c.task(lambda params: params).type is Kind.FUNCTION

    node = c.seq("a")
    assert c.task(node) is node


@pytest.mark.parametrize("value", [42, True, 3.5, ["a"], {"type": "action"}])
def test_task_rejects_other_values(value: object) -> None:
    with pytest.raises(ArgumentError, match="Invalid argument"):
        c.task(value)


def test_action_names_are_qualified() -> None:
    node = c.action("pkg/foo")

    assert node.type is Kind.ACTION
    assert node["name"] == "/_/pkg/foo"
    assert node.to_json() == {"type": "action", "name": "/_/pkg/foo"}


def test_action_requires_a_valid_name() -> None:
    with pytest.raises(NameValidationError, match="'action' combinator"):
        c.action()
    with pytest.raises(NameValidationError, match="Name is not valid"):
        c.action("a/b/c/d")


def test_action_with_embedded_code() -> None:
    node = c.action("hello", {"action": "lambda params: {'message': 'hi'}", "limits": {"timeout": 1000}})

    assert node["action"] == {
        "action": {"exec": {"kind": "python:3", "code": "lambda params: {'message': 'hi'}"}},
        "limits": {"timeout": 1000},
    }


def test_action_options_must_be_an_object() -> None:
    with pytest.raises(ArgumentError, match="expected an object"):
        c.action("foo", 42)


def test_too_many_arguments() -> None:
    with pytest.raises(ArgumentError, match="Too many arguments in 'if' combinator"):
        c.if_("a", "b", "c", "d")
    with pytest.raises(ArgumentError, match="Too many arguments in 'empty' combinator"):
        c.empty("a")


def test_invalid_child_argument() -> None:
    with pytest.raises(ArgumentError, match="Invalid argument 'test' in 'while' combinator"):
        c.while_(42, "a")


def test_missing_required_child() -> None:
    with pytest.raises(ArgumentError, match="Invalid argument 'body' in 'while' combinator"):
        c.while_("a")


def test_optional_alternate_defaults_to_empty() -> None:
    node = c.if_("test", "yes")

    assert node["alternate"].type is Kind.EMPTY


def test_components_are_coerced() -> None:
    node = c.seq("a", None, lambda params: params)

    assert [child.type for child in node.components] == [Kind.ACTION, Kind.EMPTY, Kind.FUNCTION]


def test_let_requires_object_declarations() -> None:
    with pytest.raises(ArgumentError, match="expected an object"):
        c.let("x", "a")


def test_let_declarations_are_copied() -> None:
    declarations = {"x": [1, 2]}
    node = c.let(declarations, "a")
    declarations["x"].append(3)

    assert node["declarations"] == {"x": [1, 2]}


def test_let_rejects_non_json_values() -> None:
    with pytest.raises(ArgumentError, match="not JSON serializable"):
        c.let({"x": object()})


@pytest.mark.parametrize("count", ["3", None, True])
def test_counts_must_be_numbers(count: object) -> None:
    with pytest.raises(ArgumentError, match="expected a number"):
        c.repeat(count, "a")


def test_literal_values() -> None:
    assert c.literal({"a": 1})["value"] == {"a": 1}
    assert c.literal()["value"] == {}
    assert c.literal(None)["value"] is None
    assert c.value(42).to_json() == {"type": "value", "value": 42}


def test_literal_rejects_functions() -> None:
    with pytest.raises(ArgumentError, match="functions are not values"):
        c.literal(lambda: 1)


def test_function_from_source_string() -> None:
    node = c.function("lambda params: {'n': params['n'] + 1}")

    assert node["function"] == {"exec": {"kind": "python:3", "code": "lambda params: {'n': params['n'] + 1}"}}


def test_unknown_combinator() -> None:
    with pytest.raises(ArgumentError, match="unknown combinator 'foo'"):
        c.build("foo")


def test_composition_node_children_and_paths() -> None:
    node = c.if_("t", "a")

    assert [suffix for suffix, _ in node.children()] == [".test", ".consequent", ".alternate"]
    assert [suffix for suffix, _ in c.seq("a", "b").children()] == ["[0]", "[1]"]


def test_nodes_are_immutable() -> None:
    node = c.action("foo")

    with pytest.raises(AttributeError):
        node.type = Kind.EMPTY  # type: ignore[misc]


def test_json_round_trip() -> None:
    node = c.seq(
        c.let({"x": 1}, c.mask("a")),
        c.if_("t", c.literal([1, 2])),
        c.retry(2, "flaky"),
        c.composition("child", c.seq("a", "b")),
        c.action("hello", {"action": "lambda params: params"}),
        c.function("lambda params: params"),
    )

    ast = node.to_json()

    assert ast["type"] == "seq"
    assert ast["components"][1] == {
        "type": "if",
        "test": {"type": "action", "name": "/_/t"},
        "consequent": {"type": "literal", "value": [1, 2]},
        "alternate": {"type": "empty"},
    }
    assert c.parse(ast) == node
    assert c.parse(ast).to_json() == ast


def test_parse_rejects_malformed_ast() -> None:
    with pytest.raises(ArgumentError, match="expected a composition object"):
        c.parse(["seq"])
    with pytest.raises(ArgumentError, match="unknown combinator 'loop'"):
        c.parse({"type": "loop"})
    with pytest.raises(ArgumentError, match="components of 'seq' must be a list"):
        c.parse({"type": "seq", "components": "a"})


def test_parse_passes_nodes_through() -> None:
    node = c.action("foo")

    assert c.parse(node) is node
    assert isinstance(c.deserialize(node.to_json()), Composition)


def test_assign_arguments() -> None:
    node = c.assign("out", "a", "in", True)

    assert node.to_json() == {
        "type": "assign",
        "dest": "out",
        "body": {"type": "action", "name": "/_/a"},
        "source": "in",
        "catch": True,
    }
    assert c.assign("out", "a")["body"] == c.action("a")


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (("", "a"), "expected a field name"),
        ((1, "a"), "expected a field name"),
        (("out", "a", 3), "expected a field name"),
        (("out", "a", None, "yes"), "expected a boolean"),
        (("out", 42), "Invalid argument 'body'"),
    ],
)
def test_assign_rejects_bad_arguments(args: tuple, message: str) -> None:
    with pytest.raises(ArgumentError, match=message):
        c.assign(*args)


def test_parse_keeps_arguments_after_a_missing_optional() -> None:
    ast = {"type": "assign", "dest": "out", "body": {"type": "empty"}, "catch": True}

    node = c.parse(ast)

    assert "source" not in node.args
    assert node["catch"] is True
    assert node.to_json() == ast


def test_task_options() -> None:
    assert c.task("a", {"output": "out", "input": "in"}) == c.assign("out", "a", "in")
    assert c.task("a", {"output": "out"}) == c.assign("out", "a", None)
    assert c.task("a", {"merge": True}) == c.merge("a")
    assert c.task("a", {}) == c.action("a")

    with pytest.raises(ArgumentError, match="task options must be an object"):
        c.task("a", ["output"])
