"""JSON value helpers shared by the compiler and the conductor.

Everything that flows through a workflow (params, let bindings, literals,
persisted stack frames) is restricted to the JSON value model: dicts with
string keys, lists, strings, numbers, booleans and ``None``.
"""

from __future__ import annotations

from typing import Any

JsonObject = dict[str, Any]

_SCALARS = (str, int, float, bool, type(None))


def is_object(value: Any) -> bool:
    """Return True for a JSON object (a dict, never a list)."""

    return isinstance(value, dict)


def deep_copy(value: Any) -> Any:
    """Return an independent structural copy of a JSON value.

    Tuples are copied as lists, mirroring what a JSON round trip would do.

    Raises:
        TypeError: If the value contains anything outside the JSON model.
    """

    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, dict):
        copied: JsonObject = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"JSON object keys must be strings, got {type(key).__name__}")
            copied[key] = deep_copy(item)
        return copied
    if isinstance(value, (list, tuple)):
        return [deep_copy(item) for item in value]
    raise TypeError(f"Value of type {type(value).__name__} is not JSON serializable")


def as_object(value: Any) -> JsonObject:
    """Coerce a task output to a JSON object (non-objects become ``{"value": ...}``)."""

    if is_object(value):
        return value
    return {"value": value}
