"""Step interpreter for compiled compositions.

The interpreter is pure with respect to sessions: it advances a
:class:`Machine` until it reaches the end of the program or a task that must
run outside the current invocation, and leaves persistence to the conductor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from action_composer.compiler.fsm import EXTERNAL_TASKS, Fsm, State, StateType
from action_composer.conductor.executor import TaskExecutor
from action_composer.errors import BadRequest
from action_composer.values import JsonObject, as_object, deep_copy

logger = logging.getLogger(__name__)

Frame = dict[str, Any]


@dataclass(slots=True)
class Machine:
    """Execution state of one session: program, pointer, stack and params."""

    fsm: Fsm
    state: int | None
    stack: list[Frame] = field(default_factory=list)
    params: JsonObject = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Completed:
    params: JsonObject


@dataclass(frozen=True, slots=True)
class Suspended:
    """The machine stopped at an external task; ``machine.state`` already
    points past it."""

    index: int
    task: State

    @property
    def kind(self) -> str:
        return next(key for key in EXTERNAL_TASKS if key in self.task.fields)


Outcome = Completed | Suspended


def inspect_params(machine: Machine) -> None:
    """Coerce params to an object and unwind the stack if they carry an error."""

    params = as_object(machine.params)
    if "error" in params:
        params = {"error": params["error"]}
        machine.state = None
        while machine.stack:
            frame = machine.stack.pop()
            if "catch" in frame:
                machine.state = frame["catch"]
                break
    machine.params = params


def visible_frames(stack: list[Frame]) -> list[Frame]:
    """Return the let frames a function task can see, innermost first.

    The innermost mask frame ends the walk: nothing declared below it is
    visible.
    """

    visible: list[Frame] = []
    for frame in reversed(stack):
        if "let" not in frame:
            continue
        if frame["let"] is None:
            break
        visible.append(frame)
    return visible


def environment(frames: list[Frame]) -> JsonObject:
    env: JsonObject = {}
    for frame in reversed(frames):
        env.update(deep_copy(frame["let"]))
    return env


def write_back(frames: list[Frame], env: JsonObject) -> None:
    """Store bindings from ``env`` into the innermost visible frame declaring them."""

    for name, value in env.items():
        for frame in frames:
            if name in frame["let"]:
                try:
                    frame["let"][name] = deep_copy(value)
                except TypeError:
                    logger.warning("Dropping non-JSON binding", extra={"symbol": name})
                break


class Interpreter:
    def __init__(self, executor: TaskExecutor) -> None:
        self._executor = executor

    def resume(self, machine: Machine, result: Any) -> None:
        """Feed the result of an external task back into a suspended machine."""

        machine.params = result
        inspect_params(machine)

    def run(self, machine: Machine) -> Outcome:
        """Step until completion or an external task.

        Raises:
            BadRequest: If the program or the stack discipline is malformed.
        """

        while machine.state is not None:
            index = machine.state
            if not 0 <= index < len(machine.fsm):
                raise BadRequest(f"State {index} is not part of the composition")
            state = machine.fsm.states[index]
            self._check_links(machine.fsm, state, index)
            machine.state = state.next
            logger.debug(
                "Entering state",
                extra={"state": index, "type": state.type.value, "path": state.path},
            )

            match state.type:
                case StateType.CHOICE:
                    frame = self._pop(machine, "params", index)
                    branch = machine.params.get("value") is True
                    machine.params = frame["params"]
                    machine.state = state.then if branch else state.else_
                case StateType.TRY:
                    machine.stack.append({"catch": state.handler})
                case StateType.CATCH:
                    self._pop(machine, "catch", index)
                case StateType.PUSH:
                    machine.stack.append({"params": deep_copy(machine.params)})
                case StateType.POP:
                    frame = self._pop(machine, "params", index)
                    machine.params = {"result": machine.params, "params": frame["params"]}
                case StateType.LET:
                    machine.stack.append({"let": self._bindings(state, index)})
                case StateType.END:
                    self._pop(machine, "let", index)
                case StateType.PASS:
                    inspect_params(machine)
                case StateType.TASK:
                    if any(key in state.fields for key in EXTERNAL_TASKS):
                        return Suspended(index, state)
                    self._local_task(machine, state, index)
                case _:
                    raise BadRequest(f"State {index} has an unknown type")

        return Completed(machine.params)

    def _check_links(self, fsm: Fsm, state: State, index: int) -> None:
        match state.type:
            case StateType.CHOICE:
                if state.then is None or state.else_ is None:
                    raise BadRequest(f"Choice state {index} is missing a Then or Else link")
                return
            case StateType.TRY if state.handler is None:
                raise BadRequest(f"Try state {index} is missing a Handler link")
        if state.next is None and index != fsm.exit:
            raise BadRequest(f"State {index} has no Next link and is not the Exit state")

    def _pop(self, machine: Machine, kind: str, index: int) -> Frame:
        if not machine.stack or kind not in machine.stack[-1]:
            raise BadRequest(f"State {index} expected a {kind} frame on the stack")
        return machine.stack.pop()

    def _bindings(self, state: State, index: int) -> dict[str, Any] | None:
        fields = state.fields
        if fields.get("Mask"):
            return None
        if "Bindings" in fields:
            if not isinstance(fields["Bindings"], dict):
                raise BadRequest(f"State {index} has malformed bindings")
            return deep_copy(fields["Bindings"])
        if not isinstance(fields.get("Symbol"), str) or "Value" not in fields:
            raise BadRequest(f"State {index} is missing a symbol or a value")
        return {fields["Symbol"]: deep_copy(fields["Value"])}

    def _local_task(self, machine: Machine, state: State, index: int) -> None:
        if "Function" in state.fields:
            machine.params = self._call(machine, state, index)
        elif "Value" in state.fields:
            machine.params = deep_copy(state.fields["Value"])
        else:
            raise BadRequest(f"State {index} is a task without a body")
        inspect_params(machine)

    def _call(self, machine: Machine, state: State, index: int) -> Any:
        frames = visible_frames(machine.stack)
        env = environment(frames)
        try:
            result, env = self._executor.evaluate(state.fields["Function"], machine.params, env)
        except Exception:
            logger.exception(
                "Function task raised", extra={"state": index, "path": state.path}
            )
            return {"error": f"An exception was caught at state {index} (see log for details)"}
        finally:
            write_back(frames, env)

        if callable(result):
            return {"error": f"State {index} evaluated to a function"}
        if result is None:
            return machine.params
        try:
            return deep_copy(result)
        except TypeError as exc:
            return {"error": f"State {index} produced a value that is not JSON: {exc}"}
