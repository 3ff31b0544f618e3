"""Action invocation capability used by the conductor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from action_composer.values import JsonObject


@dataclass(frozen=True, slots=True)
class Recipient:
    """Where a non-blocking invocation posts its result.

    The result is delivered by invoking ``action`` with ``params`` plus
    ``$result``.
    """

    action: str
    params: JsonObject = field(default_factory=dict)

    def delivery(self, result: Any) -> JsonObject:
        return {**self.params, "$result": result}


class ActionInvoker(Protocol):
    def invoke(
        self,
        name: str,
        params: JsonObject,
        *,
        blocking: bool = False,
        notify: Recipient | None = None,
        cause: str | None = None,
    ) -> JsonObject | str:
        """Invoke an action.

        Returns the action result when ``blocking``, otherwise an activation
        id. Raises :class:`~action_composer.errors.InvocationError` when the
        invocation cannot be made.
        """
