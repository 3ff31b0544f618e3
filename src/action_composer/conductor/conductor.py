"""The conductor action.

Each activation runs one turn of a session: it loads or creates the session,
steps the interpreter until the composition needs an external action (or
ends), persists the continuation and dispatches the call.

Wire fields recognized in the parameters (and stripped before the
composition sees them):

- ``$invoke``: state machine to start (or the compiled wrapper holding it)
- ``$sessionId`` / ``$result``: resume a session with the result of its action
- ``$activationId``: id of this activation, used as the id of new sessions
- ``$blocking``: wait for the final result instead of returning a handle
- ``$config``: per-invocation overrides (``redis``, ``notify``, ``expiration``)
- ``$callee``: ``{sessionId, action}`` of a caller waiting on this composition
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

import redis
from pydantic import ValidationError

from action_composer.compiler.fsm import Fsm
from action_composer.conductor.executor import PythonTaskExecutor, TaskExecutor
from action_composer.conductor.fanout import FanOutDispatcher, SessionFanOut
from action_composer.conductor.interpreter import Completed, Interpreter, Machine
from action_composer.config import ComposerSettings, SessionConfig
from action_composer.errors import (
    BadRequest,
    ConductorError,
    InternalError,
    InvocationError,
    NameValidationError,
    SessionGone,
    SessionKilledError,
    SessionNotFound,
    SessionNotFoundError,
    SessionStoreError,
)
from action_composer.fqn import qualify
from action_composer.invoker.base import ActionInvoker, Recipient
from action_composer.logging import SessionLogAdapter
from action_composer.sessions.models import Callee, LiveState
from action_composer.sessions.store import SessionStore
from action_composer.values import JsonObject, as_object, deep_copy, is_object

logger = logging.getLogger(__name__)

WIRE_FIELDS: tuple[str, ...] = (
    "$config",
    "$invoke",
    "$sessionId",
    "$result",
    "$activationId",
    "$blocking",
    "$callee",
)


def strip_wire_fields(params: JsonObject) -> JsonObject:
    return {key: value for key, value in params.items() if key not in WIRE_FIELDS}


@dataclass(slots=True)
class Turn:
    """Everything one activation knows about the session it works on."""

    session_id: str
    activation_id: str
    machine: Machine
    fsm_json: JsonObject
    store: SessionStore
    notify: bool
    config: JsonObject | None
    callee: Callee | None
    log: SessionLogAdapter

    def live_state(self) -> LiveState:
        return LiveState(
            fsm=self.fsm_json,
            current_state=self.machine.state,
            stack=self.machine.stack,
            callee=self.callee,
        )


class Conductor:
    """Run compositions one turn per activation.

    Args:
        store: Session persistence.
        invoker: Used to call actions and to notify callers.
        settings: Defaults for notification mode, names and timeouts.
        executor: Evaluates inline function tasks.
        composition: A state machine baked into this conductor; activations
            without ``$invoke`` start it.
        fanout: Runs ``async``, ``parallel`` and ``map`` tasks.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        invoker: ActionInvoker,
        settings: ComposerSettings | None = None,
        executor: TaskExecutor | None = None,
        composition: JsonObject | None = None,
        fanout: FanOutDispatcher | None = None,
    ) -> None:
        self.settings = settings or ComposerSettings()
        self.store = store
        self.invoker = invoker
        self.name = qualify(self.settings.conductor_action)
        self.composition = composition
        self._interpreter = Interpreter(executor or PythonTaskExecutor())
        self._fanout = fanout or SessionFanOut(self)
        self._stores: dict[tuple[str, int], SessionStore] = {}

    def __call__(self, params: JsonObject) -> JsonObject:
        """Action entry point: errors come back as ``{code, error}``."""

        try:
            return self.handle(params)
        except ConductorError as exc:
            return exc.to_json()

    def handle(self, params: JsonObject) -> JsonObject:
        """Run one activation.

        Returns the final result, a session handle ``{"$session": id}``, or in
        platform mode a continuation ``{action, params, state}``.

        Raises:
            ConductorError: With the code to report to the caller.
        """

        if not is_object(params):
            raise BadRequest("Parameters must be a JSON object")
        try:
            turn = self._open(params)
        except redis.RedisError as exc:
            logger.exception("Session store unavailable")
            raise InternalError(f"Session store unavailable: {exc}") from exc

        try:
            result = self._run(turn)
        except ConductorError as exc:
            self._abort(turn, exc)
            raise
        except Exception as exc:
            turn.log.exception("Conductor turn failed")
            error = InternalError(f"Internal error: {exc}")
            self._abort(turn, error)
            raise error from exc

        if params.get("$blocking") and result == {"$session": turn.session_id}:
            return self._wait(turn)
        return result

    # Sessions

    def _session_config(self, params: JsonObject) -> SessionConfig:
        try:
            return SessionConfig.model_validate(params.get("$config") or {})
        except ValidationError as exc:
            raise BadRequest(f"Invalid $config: {exc.errors()[0]['msg']}") from exc

    def _store_for(self, config: SessionConfig) -> SessionStore:
        expiration = config.expiration or self.store.expiration
        if config.redis is None or config.redis == self.settings.redis_url:
            if expiration == self.store.expiration:
                return self.store
            return self.store.with_expiration(expiration)
        key = (config.redis, expiration)
        if key not in self._stores:
            self._stores[key] = SessionStore.from_url(
                config.redis, namespace=self.store.namespace, expiration=expiration
            )
        return self._stores[key]

    def _open(self, params: JsonObject) -> Turn:
        config = self._session_config(params)
        store = self._store_for(config)
        notify = self.settings.notify if config.notify is None else config.notify
        activation_id = params.get("$activationId") or uuid.uuid4().hex
        raw_config = params.get("$config")

        session_id = params.get("$sessionId")
        if session_id is not None:
            if not isinstance(session_id, str):
                raise BadRequest("$sessionId must be a string")
            try:
                live = store.load(session_id)
            except SessionStoreError as exc:
                raise BadRequest(str(exc)) from exc
            if live is None:
                raise SessionNotFoundError(f"Cannot find live session {session_id}")
            machine = Machine(fsm=Fsm.from_json(live.fsm), state=live.current_state, stack=live.stack)
            self._interpreter.resume(
                machine, params["$result"] if "$result" in params else strip_wire_fields(params)
            )
            store.add_trace(session_id, activation_id)
            log = SessionLogAdapter(logger, {"session_id": session_id})
            log.info("Resuming session", extra={"activation_id": activation_id})
            return Turn(
                session_id, activation_id, machine, live.fsm, store, notify, raw_config, live.callee, log
            )

        invoke = params.get("$invoke", self.composition)
        if invoke is None:
            raise BadRequest("Missing $sessionId or $invoke parameter")
        if is_object(invoke) and "composition" in invoke:
            invoke = invoke["composition"]
        fsm = Fsm.from_json(invoke)
        callee = None
        if "$callee" in params:
            try:
                callee = Callee.model_validate(params["$callee"])
            except ValidationError as exc:
                raise BadRequest("Invalid $callee parameter") from exc

        machine = Machine(fsm=fsm, state=fsm.entry, params=as_object(deep_copy(strip_wire_fields(params))))
        session_id = activation_id
        log = SessionLogAdapter(logger, {"session_id": session_id})
        turn = Turn(session_id, activation_id, machine, invoke, store, notify, raw_config, callee, log)
        if not store.register(session_id, turn.live_state()):
            raise BadRequest(f"Session {session_id} already exists")
        store.add_trace(session_id, activation_id)
        log.info("Started session", extra={"activation_id": activation_id})
        return turn

    def _persist(self, turn: Turn) -> None:
        try:
            turn.store.save(turn.session_id, turn.live_state())
        except SessionGone as exc:
            raise SessionKilledError(f"Session {turn.session_id} has been killed") from exc

    def _abort(self, turn: Turn, error: ConductorError) -> None:
        """Record a failed turn as the session result when the session is still live."""

        if error.code not in (400, 500):
            return
        try:
            self._complete(turn, error.to_json())
        except (SessionKilledError, SessionStoreError, redis.RedisError):
            turn.log.warning("Could not record failure", extra={"code": error.code})

    def _complete(self, turn: Turn, result: JsonObject) -> JsonObject:
        try:
            turn.store.complete(turn.session_id, result)
        except SessionGone as exc:
            raise SessionKilledError(f"Session {turn.session_id} has been killed") from exc

        if turn.callee is not None:
            try:
                self.invoker.invoke(
                    turn.callee.action,
                    self._with_config(turn, {"$sessionId": turn.callee.session_id, "$result": result}),
                    cause=turn.activation_id,
                )
            except InvocationError:
                turn.log.exception("Failed to notify caller", extra={"caller": turn.callee.session_id})
        return result

    def _wait(self, turn: Turn) -> JsonObject:
        try:
            return turn.store.wait(
                turn.session_id,
                timeout=self.settings.blocking_timeout_seconds,
                poll_interval=self.settings.poll_interval_seconds,
            )
        except SessionNotFound:
            return {"$session": turn.session_id}

    def _with_config(self, turn: Turn, params: JsonObject) -> JsonObject:
        if turn.config is not None:
            params["$config"] = turn.config
        return params

    # Turn

    def _run(self, turn: Turn) -> JsonObject:
        machine = turn.machine
        while True:
            outcome = self._interpreter.run(machine)
            if isinstance(outcome, Completed):
                return self._complete(turn, outcome.params)

            turn.log.debug("Suspended on task", extra={"state": outcome.index, "task": outcome.kind})
            fields = outcome.task.fields
            match outcome.kind:
                case "Action":
                    response = self._call(turn, fields["Action"], bool(fields.get("Composition")))
                    if response is not None:
                        return response
                case "Dynamic":
                    request = machine.params
                    try:
                        name = qualify(request.get("name")) if request.get("type") == "action" else None
                    except NameValidationError as exc:
                        name, reason = None, str(exc)
                    else:
                        reason = "Dynamic task expects {type: 'action', name, params}"
                    if name is None:
                        self._interpreter.resume(machine, {"error": reason})
                        continue
                    machine.params = as_object(request.get("params", {}))
                    response = self._call(turn, name, False)
                    if response is not None:
                        return response
                case kind:
                    result = self._fanout.dispatch(kind, fields[kind], machine.params, turn)
                    self._interpreter.resume(machine, result)

    def _call(self, turn: Turn, name: str, composition: bool) -> JsonObject | None:
        """Persist and dispatch an action call.

        Returns the activation response, or None when the call failed and the
        failure was fed back into the machine.
        """

        self._persist(turn)
        params = turn.machine.params
        if not turn.notify:
            state = self._with_config(turn, {"$sessionId": turn.session_id})
            return {"action": name, "params": params, "state": state}

        try:
            if composition:
                callee = {"sessionId": turn.session_id, "action": self.name}
                self.invoker.invoke(
                    name,
                    self._with_config(turn, {**params, "$callee": callee}),
                    cause=turn.activation_id,
                )
            else:
                recipient = Recipient(self.name, self._with_config(turn, {"$sessionId": turn.session_id}))
                self.invoker.invoke(name, params, notify=recipient, cause=turn.activation_id)
        except InvocationError as exc:
            turn.log.warning("Invocation failed", extra={"action": name, "code": exc.code})
            self._interpreter.resume(turn.machine, {"error": str(exc)})
            return None
        return {"$session": turn.session_id}

