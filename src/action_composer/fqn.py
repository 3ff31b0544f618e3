"""Fully-qualified action names (``/namespace/package/action``)."""

from __future__ import annotations

from typing import Any

from action_composer.errors import NameValidationError

DEFAULT_NAMESPACE = "_"


def qualify(name: Any) -> str:
    """Return the canonical absolute form of an action name.

    ``a`` and ``a/b`` land in the default namespace, ``a/b/c`` is taken as
    ``namespace/package/action``; names with a leading slash must already be
    absolute.

    Raises:
        NameValidationError: If ``name`` is not a string or is malformed.
    """

    if not isinstance(name, str):
        raise NameValidationError("Name must be a string", name)
    name = name.strip()
    if not name:
        raise NameValidationError("Name is not valid", name)

    delimiter = "/"
    parts = name.split(delimiter)
    count = len(parts)
    leading_slash = name.startswith(delimiter)

    if count < 1 or count > 4 or (leading_slash and count == 2) or (not leading_slash and count == 4):
        raise NameValidationError("Name is not valid", name)

    # Any segment after the leading one must be non-blank.
    for part in parts[1:]:
        if not part.strip():
            raise NameValidationError("Name is not valid", name)

    if leading_slash:
        return name
    if count < 3:
        return f"{delimiter}{DEFAULT_NAMESPACE}{delimiter}{name}"
    return f"{delimiter}{name}"
