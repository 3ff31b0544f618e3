"""Unit tests for function capture and evaluation."""

import pytest

from action_composer.composition.combinators import Composer
from action_composer.composition.functions import PYTHON_KIND, capture
from action_composer.conductor.executor import PythonTaskExecutor, call_function, load_function
from action_composer.errors import ArgumentError

c = Composer()


def _code(node) -> str:
    return node["function"]["exec"]["code"]


def test_capture_lambda() -> None:
    record = capture(lambda params: {"n": params["n"] + 1})

    assert record == {"kind": PYTHON_KIND, "code": 'lambda params: {"n": params["n"] + 1}'}


def test_capture_picks_the_right_lambda_on_a_shared_line() -> None:
    node = c.if_(lambda params: params["n"] > 0, lambda params: {"sign": 1}, lambda params: {"sign": -1})

    assert _code(node["test"]) == 'lambda params: params["n"] > 0'
    assert _code(node["consequent"]) == 'lambda params: {"sign": 1}'
    assert _code(node["alternate"]) == 'lambda params: {"sign": -1}'


def test_capture_distinguishes_argument_lists() -> None:
    node = c.seq(lambda: {"a": 1}, lambda params, env: env["x"])

    assert _code(node.components[0]) == 'lambda: {"a": 1}'
    assert _code(node.components[1]) == 'lambda params, env: env["x"]'


def test_capture_multiline_lambda_parses() -> None:
    fn = lambda params: {  # noqa: E731
        "total": params["a"] + params["b"],
    }

    code = capture(fn)["code"]

    assert code.startswith("(lambda params:")
    assert load_function(code)({"a": 1, "b": 2}) == {"total": 3}


def test_capture_def_function() -> None:
    def add_one(params):
        return {"n": params["n"] + 1}

    code = capture(add_one)["code"]

    assert code.startswith("def add_one(params):")
    assert load_function(code)({"n": 1}) == {"n": 2}


def test_capture_exec_records_and_strings() -> None:
    record = {"kind": "nodejs:default", "code": "function main() {}"}

    assert capture(record) == record
    assert capture({"exec": record}) == record
    assert capture("lambda params: params") == {"kind": PYTHON_KIND, "code": "lambda params: params"}


def test_capture_rejects_builtins_and_junk() -> None:
    with pytest.raises(ArgumentError, match="cannot capture the source"):
        capture(len)
    with pytest.raises(ArgumentError, match="expected an exec record"):
        capture({"kind": "python:3"})
    with pytest.raises(ArgumentError, match="expected a function"):
        capture(42)


def test_load_function_prefers_main() -> None:
    code = "def helper(params):\n    return {'x': 1}\n\ndef main(params):\n    return helper(params)\n"

    assert load_function(code)({}) == {"x": 1}


def test_load_function_without_callable() -> None:
    with pytest.raises(TypeError, match="does not define a callable"):
        load_function("x = 1")


@pytest.mark.parametrize(
    ("fn", "expected"),
    [
        (lambda: "none", "none"),
        (lambda params: params["a"], 1),
        (lambda params, env: env["b"], 2),
        (lambda *args: len(args), 2),
    ],
)
def test_call_function_matches_arity(fn, expected) -> None:
    assert call_function(fn, {"a": 1}, {"b": 2}) == expected


def test_python_executor_evaluates_bodies() -> None:
    executor = PythonTaskExecutor()
    env = {"x": 1}

    result, env = executor.evaluate(
        {"exec": {"kind": PYTHON_KIND, "code": "lambda params, env: env.update(x=params['x'])"}},
        {"x": 5},
        env,
    )

    assert result is None
    assert env == {"x": 5}


def test_python_executor_rejects_other_kinds() -> None:
    with pytest.raises(ValueError, match="Unsupported function kind"):
        PythonTaskExecutor().evaluate({"kind": "nodejs:default", "code": "x"}, {}, {})
