"""Capture Python callables as portable function bodies.

A compiled composition is plain JSON, so inline functions travel as source
text: ``{"kind": "python:3", "code": "<source>"}``. The source is either an
expression evaluating to a callable (typically a ``lambda``) or a module
snippet defining ``main`` (or a single function).

Captured functions run far away from where they were written, so they must
not close over local variables. Use ``let`` to share state between steps.
"""

from __future__ import annotations

import ast
import inspect
import textwrap
from collections.abc import Callable
from typing import Any

from action_composer.errors import ArgumentError

PYTHON_KIND = "python:3"


def capture(fn: Any, *, combinator: str = "function") -> dict[str, Any]:
    """Normalize a callable, a source string or an exec record to ``{kind, code}``.

    Args:
        fn: A Python function or lambda, a source string, ``{"kind", "code"}``
            or ``{"exec": {"kind", "code"}}``.
        combinator: Name reported in error messages.

    Raises:
        ArgumentError: If ``fn`` cannot be turned into a function body.
    """

    if isinstance(fn, str):
        return {"kind": PYTHON_KIND, "code": fn}
    if isinstance(fn, dict):
        record = fn.get("exec", fn)
        if (
            isinstance(record, dict)
            and isinstance(record.get("kind"), str)
            and isinstance(record.get("code"), str)
        ):
            return {"kind": record["kind"], "code": record["code"]}
        raise ArgumentError(
            f"Invalid argument in '{combinator}' combinator: expected an exec record with kind and code",
            combinator=combinator,
            argument=fn,
        )
    if callable(fn):
        return {"kind": PYTHON_KIND, "code": source_of(fn, combinator=combinator)}
    raise ArgumentError(
        f"Invalid argument in '{combinator}' combinator: expected a function",
        combinator=combinator,
        argument=fn,
    )


def source_of(fn: Callable[..., Any], *, combinator: str = "function") -> str:
    if not inspect.isfunction(fn):
        raise ArgumentError(
            f"Invalid argument in '{combinator}' combinator: cannot capture the source of {fn!r}",
            combinator=combinator,
            argument=fn,
        )
    try:
        if fn.__name__ != "<lambda>":
            return textwrap.dedent(inspect.getsource(fn))
        return _lambda_source(fn)
    except (OSError, TypeError, SyntaxError) as exc:
        raise ArgumentError(
            f"Invalid argument in '{combinator}' combinator: cannot capture the source of {fn!r} ({exc})",
            combinator=combinator,
            argument=fn,
        ) from exc


def _lambda_source(fn: Callable[..., Any]) -> str:
    """Locate a lambda in its module source.

    ``inspect.getsource`` returns whole lines, which is useless when a line
    holds several lambdas (``c.if_(lambda p: ..., lambda p: ...)``). Instead
    parse the module and pick the lambda node whose body covers the code
    object's instruction positions.
    """

    code = fn.__code__
    lines, _ = inspect.findsource(fn)
    source = "".join(lines)
    tree = ast.parse(source)

    arg_names = list(code.co_varnames[: code.co_argcount])
    candidates = [
        node
        for node in ast.walk(tree)
        if isinstance(node, ast.Lambda)
        and node.lineno == code.co_firstlineno
        and [a.arg for a in node.args.args] == arg_names
    ]
    if not candidates:
        raise OSError("lambda not found in module source")

    if len(candidates) > 1:
        positions = [
            (line, col)
            for line, _end_line, col, _end_col in code.co_positions()
            if line is not None and col is not None
        ]

        def covered(node: ast.Lambda) -> int:
            body = node.body
            start = (body.lineno, body.col_offset)
            end = (body.end_lineno, body.end_col_offset)
            return sum(1 for pos in positions if start <= pos < end)

        def span(node: ast.Lambda) -> tuple[int, int]:
            return (node.end_lineno - node.lineno, node.end_col_offset - node.col_offset)

        best = max(covered(node) for node in candidates)
        candidates = sorted((node for node in candidates if covered(node) == best), key=span)
        if best == 0:
            raise OSError("ambiguous lambda source, use a def instead")

    segment = ast.get_source_segment(source, candidates[0])
    if segment is None:
        raise OSError("lambda source segment unavailable")
    # Multi-line lambdas keep their continuation indentation; wrap so the
    # snippet still parses as a single expression.
    return f"({segment})" if "\n" in segment else segment
