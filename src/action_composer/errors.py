"""Exception hierarchy.

Build-time problems (bad combinator arguments, bad names, failed compilation)
derive from :class:`ComposerError`. Run-time problems surfaced to a caller of
the conductor derive from :class:`ConductorError` and carry an HTTP-like code.
"""

from __future__ import annotations

from typing import Any


class ComposerError(Exception):
    """Base class for composition build and compile failures."""


class ArgumentError(ComposerError, TypeError):
    """A combinator was called with an argument of the wrong shape or count."""

    def __init__(self, message: str, *, combinator: str | None = None, argument: Any = None) -> None:
        super().__init__(message)
        self.combinator = combinator
        self.argument = argument


class NameValidationError(ComposerError, ValueError):
    """An action name does not follow the fully-qualified name rule."""

    def __init__(self, message: str, name: Any = None) -> None:
        super().__init__(message)
        self.name = name


class CompilationError(ComposerError):
    code = 422


class ConductorError(Exception):
    """A run-time failure reported to the invoking layer as ``{code, error}``."""

    code = 500

    def __init__(self, error: str, code: int | None = None) -> None:
        super().__init__(error)
        self.error = error
        if code is not None:
            self.code = code

    def to_json(self) -> dict[str, Any]:
        return {"code": self.code, "error": self.error}


class BadRequest(ConductorError):
    code = 400


class SessionNotFoundError(ConductorError):
    code = 404


class SessionKilledError(ConductorError):
    code = 410


class InternalError(ConductorError):
    code = 500


class SessionStoreError(Exception):
    """Base class for session store failures."""


class SessionNotFound(SessionStoreError):
    pass


class SessionGone(SessionStoreError):
    """The live record disappeared (killed or completed) before a write."""


class InvocationError(Exception):
    """An action invocation failed before producing a result."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
