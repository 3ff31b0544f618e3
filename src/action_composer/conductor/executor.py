"""Task executors evaluate inline function bodies for the interpreter."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

from action_composer.composition.functions import PYTHON_KIND
from action_composer.values import JsonObject


class TaskExecutor(Protocol):
    def evaluate(
        self, body: dict[str, Any], params: JsonObject, env: JsonObject
    ) -> tuple[Any, JsonObject]:
        """Run ``body`` and return ``(result, env)``; exceptions propagate."""


@lru_cache(maxsize=512)
def load_function(code: str) -> Callable[..., Any]:
    """Turn function source into a callable.

    ``code`` is either an expression (``lambda params, env: ...``) or a module
    snippet; for snippets ``main`` wins, otherwise the last function defined.
    """

    namespace: dict[str, Any] = {"__name__": "composition"}
    try:
        expression = compile(code, "<composition>", "eval")
    except SyntaxError:
        exec(compile(code, "<composition>", "exec"), namespace)  # noqa: S102
        fn = namespace.get("main")
        if fn is None:
            functions = [v for v in namespace.values() if inspect.isfunction(v)]
            fn = functions[-1] if functions else None
    else:
        fn = eval(expression, namespace)  # noqa: S307

    if not callable(fn):
        raise TypeError("Function body does not define a callable")
    return fn


def call_function(fn: Callable[..., Any], params: JsonObject, env: JsonObject) -> Any:
    """Call ``fn`` with as many of ``(params, env)`` as it accepts."""

    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return fn(params, env)

    positional = 0
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
            positional = 2
            break
        if parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            positional += 1

    if positional >= 2:
        return fn(params, env)
    if positional == 1:
        return fn(params)
    return fn()


class PythonTaskExecutor:
    """Evaluates ``python:3`` bodies in the current interpreter."""

    def evaluate(
        self, body: dict[str, Any], params: JsonObject, env: JsonObject
    ) -> tuple[Any, JsonObject]:
        record = body.get("exec", body)
        kind = record.get("kind")
        if kind != PYTHON_KIND:
            raise ValueError(f"Unsupported function kind {kind!r}")
        fn = load_function(record["code"])
        return call_function(fn, params, env), env
