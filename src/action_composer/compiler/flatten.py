"""Flatten a lowered composition tree into a state list.

Each primitive expands to a fixed fragment of states. While fragments are
assembled, links are offsets relative to the state holding them and the last
state of a fragment has no ``next``; :func:`flatten` resolves offsets to
absolute indices once the whole list is known.
"""

from __future__ import annotations

from typing import Any

from action_composer.compiler.fsm import Fsm, State, StateType
from action_composer.composition.combinators import Composition, Kind
from action_composer.errors import CompilationError

Fragment = list[State]


def _chain(fragments: list[Fragment], path: str) -> Fragment:
    if not fragments:
        return [State(StateType.PASS, path)]
    states: Fragment = []
    for fragment in fragments:
        if states:
            states[-1].next = 1
        states.extend(fragment)
    return states


def _task(node: Composition, **fields: Any) -> Fragment:
    return [State(StateType.TASK, node.path, fields=fields)]


def _let(node: Composition, **fields: Any) -> Fragment:
    body = _chain([fragment(c) for c in node.components], node.path)
    head = State(StateType.LET, node.path, next=1, fields=fields)
    body[-1].next = 1
    return [head, *body, State(StateType.END, node.path)]


def fragment(node: Composition) -> Fragment:
    """Expand one lowered node into its states (relative offsets)."""

    path = node.path
    match node.type:
        case Kind.SEQUENCE:
            return _chain([fragment(c) for c in node.components], path)

        case Kind.ACTION:
            return _task(node, Action=node["name"])

        case Kind.COMPOSITION:
            return _task(node, Action=node["name"], Composition=True)

        case Kind.FUNCTION:
            return _task(node, Function=node["function"])

        case Kind.DYNAMIC:
            return _task(node, Dynamic=True)

        case Kind.ASYNC:
            return _task(node, Async=_machine(node.components, path))

        case Kind.MAP:
            return _task(node, Map=_machine(node.components, path))

        case Kind.PARALLEL:
            return _task(node, Parallel=[_machine((c,), c.path) for c in node.components])

        case Kind.LET:
            declarations: dict[str, Any] = node["declarations"]
            if len(declarations) == 1:
                [(symbol, value)] = declarations.items()
                return _let(node, Symbol=symbol, Value=value)
            return _let(node, Bindings=declarations)

        case Kind.MASK:
            return _let(node, Mask=True)

        case Kind.TRY:
            body = fragment(node["body"])
            handler = _chain([fragment(node["handler"]), [State(StateType.PASS, path)]], path)
            body[-1].next = 1
            head = State(StateType.TRY, path, next=1, handler=len(body) + 2)
            catch = State(StateType.CATCH, path, next=len(handler))
            return [head, *body, catch, *handler]

        case Kind.FINALLY:
            body = fragment(node["body"])
            finalizer = fragment(node["finalizer"])
            body[-1].next = 1
            head = State(StateType.TRY, path, next=1, handler=len(body) + 2)
            catch = State(StateType.CATCH, path, next=1)
            return [head, *body, catch, *finalizer]

        case Kind.IF_NOSAVE:
            test = fragment(node["test"])
            consequent = fragment(node["consequent"])
            alternate = fragment(node["alternate"])
            test[-1].next = 1
            consequent[-1].next = len(alternate) + 1
            alternate[-1].next = 1
            push = State(StateType.PUSH, path, next=1)
            choice = State(StateType.CHOICE, path, then=1, else_=len(consequent) + 1)
            return [push, *test, choice, *consequent, *alternate, State(StateType.PASS, path)]

        case Kind.WHILE_NOSAVE:
            test = fragment(node["test"])
            body = fragment(node["body"])
            test[-1].next = 1
            body[-1].next = -(len(test) + len(body) + 1)
            push = State(StateType.PUSH, path, next=1)
            choice = State(StateType.CHOICE, path, then=1, else_=len(body) + 1)
            return [push, *test, choice, *body, State(StateType.PASS, path)]

        case Kind.DOWHILE_NOSAVE:
            body = fragment(node["body"])
            test = fragment(node["test"])
            body[-1].next = 1
            test[-1].next = 1
            push = State(StateType.PUSH, path, next=1)
            choice = State(StateType.CHOICE, path, then=-(len(body) + len(test) + 1), else_=1)
            return [*body, push, *test, choice, State(StateType.PASS, path)]

        case _:
            raise CompilationError(
                f"Cannot compile combinator '{node.type.value}' at path '{path}'; lower it first"
            )


def _machine(components: tuple[Composition, ...], path: str) -> dict[str, Any]:
    states = _chain([fragment(c) for c in components], path)
    return _resolve(states).to_json()


def _resolve(states: Fragment) -> Fsm:
    for index, state in enumerate(states):
        for attr in ("next", "then", "else_", "handler"):
            offset = getattr(state, attr)
            if offset is not None:
                setattr(state, attr, index + offset)
    return Fsm(states=states, entry=0, exit=len(states) - 1)


def flatten(node: Composition) -> Fsm:
    """Compile a fully lowered tree into a machine with absolute links."""

    return _resolve(fragment(node))
