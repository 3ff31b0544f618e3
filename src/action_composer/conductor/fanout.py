"""Fan-out tasks: ``async``, ``parallel`` and ``map``.

The interpreter suspends on these like on actions; the conductor hands them
to a :class:`FanOutDispatcher` and feeds the returned object back into the
machine.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Protocol

from action_composer.errors import InvocationError, SessionNotFound
from action_composer.invoker.local import drive
from action_composer.values import JsonObject, as_object, deep_copy

if TYPE_CHECKING:
    from action_composer.conductor.conductor import Conductor, Turn

logger = logging.getLogger(__name__)


class FanOutDispatcher(Protocol):
    def dispatch(self, kind: str, payload: Any, params: JsonObject, turn: Turn) -> JsonObject:
        """Run a fan-out task and return the params to continue with."""


class SessionFanOut:
    """Run every branch as a session of its own, then join on the results.

    Branches start as new conductor activations (with notifications), or are
    driven in-process when notifications are off. ``parallel`` hands each
    branch a copy of the params, ``map`` one element of ``params["value"]``.
    Results come back as ``{"value": [...]}`` in branch order; when any
    branch fails, the first error in branch order wins. ``async`` returns
    ``{"$session": id}`` without waiting.
    """

    def __init__(self, conductor: Conductor) -> None:
        self._conductor = conductor

    def dispatch(self, kind: str, payload: Any, params: JsonObject, turn: Turn) -> JsonObject:
        match kind:
            case "Async":
                session_id, error = self._start(payload, deep_copy(params), turn)
                return {"error": error} if error else {"$session": session_id}
            case "Parallel":
                if not isinstance(payload, list):
                    return {"error": "Parallel task expects a list of compositions"}
                return self._join([self._start(fsm, deep_copy(params), turn) for fsm in payload], turn)
            case "Map":
                values = params.get("value")
                if not isinstance(values, list):
                    return {"error": "Map task expects an array in params.value"}
                branches = [self._start(payload, as_object(deep_copy(v)), turn) for v in values]
                return self._join(branches, turn)
            case _:
                return {"error": f"Unsupported task {kind}"}

    def _start(self, fsm: Any, params: JsonObject, turn: Turn) -> tuple[str, str | None]:
        conductor = self._conductor
        session_id = uuid.uuid4().hex
        branch = {**params, "$invoke": fsm, "$activationId": session_id}
        if turn.config is not None:
            branch["$config"] = turn.config

        turn.log.debug("Starting branch", extra={"branch": session_id})
        if not turn.notify:
            drive(conductor, conductor.invoker, branch)
            return session_id, None
        try:
            conductor.invoker.invoke(conductor.name, branch, cause=turn.activation_id)
        except InvocationError as exc:
            return session_id, f"Failed to start branch: {exc}"
        return session_id, None

    def _join(self, branches: list[tuple[str, str | None]], turn: Turn) -> JsonObject:
        deadline = time.monotonic() + self._conductor.settings.blocking_timeout_seconds
        results: list[JsonObject] = []
        for session_id, error in branches:
            if error is not None:
                results.append({"error": error})
                continue
            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                results.append(turn.store.get(session_id, timeout=remaining, block=True))
            except SessionNotFound:
                results.append({"error": f"Branch {session_id} did not complete in time"})

        for result in results:
            if "error" in result:
                return {"error": result["error"]}
        return {"value": results}
