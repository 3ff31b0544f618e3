"""In-process action invoker for tests and local runs."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from action_composer.compiler.compiler import CompiledComposition
from action_composer.conductor.executor import call_function, load_function
from action_composer.errors import InvocationError, NameValidationError
from action_composer.fqn import qualify
from action_composer.invoker.base import ActionInvoker, Recipient
from action_composer.values import JsonObject, as_object, deep_copy

logger = logging.getLogger(__name__)

Handler = Callable[[JsonObject], Any]


@dataclass(frozen=True, slots=True)
class Activation:
    activation_id: str
    action: str
    params: JsonObject
    result: JsonObject
    cause: str | None = None


class LocalActionInvoker:
    """Run registered Python callables as actions.

    Every invocation runs inline, including notifications, so a whole
    workflow completes inside the first call. Long action chains therefore
    nest Python frames; keep local runs to test-sized workflows.
    """

    def __init__(self, actions: Mapping[str, Handler] | None = None) -> None:
        self._actions: dict[str, Handler] = {}
        self.activations: list[Activation] = []
        for name, handler in (actions or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: Handler) -> str:
        qualified = qualify(name)
        self._actions[qualified] = handler
        return qualified

    def invoke(
        self,
        name: str,
        params: JsonObject,
        *,
        blocking: bool = False,
        notify: Recipient | None = None,
        cause: str | None = None,
    ) -> JsonObject | str:
        try:
            qualified = qualify(name)
        except NameValidationError as exc:
            raise InvocationError(str(exc), code=400) from exc
        handler = self._actions.get(qualified)
        if handler is None:
            raise InvocationError(f"The requested resource does not exist: {qualified}", code=404)

        activation_id = uuid.uuid4().hex
        params = deep_copy(params)
        try:
            output = handler(deep_copy(params))
        except Exception as exc:
            logger.exception("Action raised", extra={"action": qualified, "activation_id": activation_id})
            output = {"error": f"{type(exc).__name__}: {exc}"}
        result = {} if output is None else as_object(output)
        self.activations.append(Activation(activation_id, qualified, params, result, cause))

        if notify is not None:
            self.invoke(notify.action, notify.delivery(result), cause=activation_id)
        return result if blocking else activation_id


def python_action(code: str) -> Handler:
    """Wrap deployable Python source as an action handler."""

    fn = load_function(code)
    return lambda params: call_function(fn, params, {})


def deploy(
    compiled: CompiledComposition,
    invoker: LocalActionInvoker,
    conductor_factory: Callable[[JsonObject], Handler],
) -> None:
    """Register the embedded actions and nested compositions of ``compiled``.

    ``conductor_factory`` builds a conductor action bound to a state machine.
    """

    for entry in compiled.actions:
        record: dict[str, Any] = entry["action"]["exec"]
        if record["kind"] == "composition":
            invoker.register(entry["name"], conductor_factory(record["composition"]))
        else:
            invoker.register(entry["name"], python_action(record["code"]))


def is_continuation(result: Any) -> bool:
    return isinstance(result, dict) and {"action", "params", "state"} <= result.keys()


def drive(conductor: Handler, invoker: ActionInvoker, params: JsonObject) -> JsonObject:
    """Play the platform's part for a conductor running without notifications.

    Runs each continuation the conductor returns as a blocking invocation and
    feeds the result back until the conductor produces a final result.
    """

    result = conductor(params)
    while is_continuation(result):
        try:
            output = invoker.invoke(result["action"], result["params"], blocking=True)
        except InvocationError as exc:
            output = {"error": str(exc)}
        if isinstance(output, str):
            output = {"error": f"Activation {output} did not complete"}
        result = conductor({**as_object(output), **result["state"]})
    return result
