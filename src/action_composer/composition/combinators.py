"""Composition algebra.

A composition is an immutable tree of :class:`Composition` nodes. Every node
kind is declared once in :data:`COMBINATORS` with its argument schema; the
:class:`Composer` builder validates arguments against that schema.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from action_composer.composition.functions import capture
from action_composer.errors import ArgumentError, NameValidationError
from action_composer.fqn import qualify
from action_composer.values import deep_copy, is_object


class Kind(str, Enum):
    EMPTY = "empty"
    SEQ = "seq"
    SEQUENCE = "sequence"
    IF = "if"
    IF_NOSAVE = "if_nosave"
    WHILE = "while"
    WHILE_NOSAVE = "while_nosave"
    DOWHILE = "dowhile"
    DOWHILE_NOSAVE = "dowhile_nosave"
    TRY = "try"
    FINALLY = "finally"
    RETAIN = "retain"
    RETAIN_CATCH = "retain_catch"
    LET = "let"
    MASK = "mask"
    ACTION = "action"
    COMPOSITION = "composition"
    REPEAT = "repeat"
    RETRY = "retry"
    VALUE = "value"
    LITERAL = "literal"
    FUNCTION = "function"
    ASYNC = "async"
    PARALLEL = "parallel"
    PAR = "par"
    MAP = "map"
    DYNAMIC = "dynamic"
    MERGE = "merge"
    ASSIGN = "assign"


class ArgType(str, Enum):
    CHILD = "child"
    NAME = "name"
    VALUE = "value"
    OBJECT = "object"
    NUMBER = "number"
    FUNCTION = "function"
    FIELD = "field"
    BOOLEAN = "boolean"


@dataclass(frozen=True, slots=True)
class ArgSpec:
    name: str
    type: ArgType = ArgType.CHILD
    optional: bool = False


@dataclass(frozen=True, slots=True)
class CombinatorSpec:
    args: tuple[ArgSpec, ...] = ()
    components: bool = False
    primitive: bool = False


COMBINATORS: dict[Kind, CombinatorSpec] = {
    Kind.EMPTY: CombinatorSpec(),
    Kind.SEQ: CombinatorSpec(components=True),
    Kind.SEQUENCE: CombinatorSpec(components=True, primitive=True),
    Kind.IF: CombinatorSpec(
        args=(ArgSpec("test"), ArgSpec("consequent"), ArgSpec("alternate", optional=True))
    ),
    Kind.IF_NOSAVE: CombinatorSpec(
        args=(ArgSpec("test"), ArgSpec("consequent"), ArgSpec("alternate", optional=True)),
        primitive=True,
    ),
    Kind.WHILE: CombinatorSpec(args=(ArgSpec("test"), ArgSpec("body"))),
    Kind.WHILE_NOSAVE: CombinatorSpec(args=(ArgSpec("test"), ArgSpec("body")), primitive=True),
    Kind.DOWHILE: CombinatorSpec(args=(ArgSpec("body"), ArgSpec("test"))),
    Kind.DOWHILE_NOSAVE: CombinatorSpec(args=(ArgSpec("body"), ArgSpec("test")), primitive=True),
    Kind.TRY: CombinatorSpec(args=(ArgSpec("body"), ArgSpec("handler")), primitive=True),
    Kind.FINALLY: CombinatorSpec(args=(ArgSpec("body"), ArgSpec("finalizer")), primitive=True),
    Kind.RETAIN: CombinatorSpec(components=True),
    Kind.RETAIN_CATCH: CombinatorSpec(components=True),
    Kind.LET: CombinatorSpec(
        args=(ArgSpec("declarations", ArgType.OBJECT),), components=True, primitive=True
    ),
    Kind.MASK: CombinatorSpec(components=True, primitive=True),
    Kind.ACTION: CombinatorSpec(
        args=(ArgSpec("name", ArgType.NAME), ArgSpec("action", ArgType.OBJECT, optional=True)),
        primitive=True,
    ),
    Kind.COMPOSITION: CombinatorSpec(
        args=(ArgSpec("name", ArgType.NAME), ArgSpec("composition")), primitive=True
    ),
    Kind.REPEAT: CombinatorSpec(args=(ArgSpec("count", ArgType.NUMBER),), components=True),
    Kind.RETRY: CombinatorSpec(args=(ArgSpec("count", ArgType.NUMBER),), components=True),
    Kind.VALUE: CombinatorSpec(args=(ArgSpec("value", ArgType.VALUE),)),
    Kind.LITERAL: CombinatorSpec(args=(ArgSpec("value", ArgType.VALUE),)),
    Kind.FUNCTION: CombinatorSpec(args=(ArgSpec("function", ArgType.FUNCTION),), primitive=True),
    Kind.ASYNC: CombinatorSpec(components=True, primitive=True),
    Kind.PARALLEL: CombinatorSpec(components=True, primitive=True),
    Kind.PAR: CombinatorSpec(components=True),
    Kind.MAP: CombinatorSpec(components=True, primitive=True),
    Kind.DYNAMIC: CombinatorSpec(primitive=True),
    Kind.MERGE: CombinatorSpec(components=True),
    Kind.ASSIGN: CombinatorSpec(
        args=(
            ArgSpec("dest", ArgType.FIELD),
            ArgSpec("body"),
            ArgSpec("source", ArgType.FIELD, optional=True),
            ArgSpec("catch", ArgType.BOOLEAN, optional=True),
        )
    ),
}

PRIMITIVES: frozenset[Kind] = frozenset(kind for kind, spec in COMBINATORS.items() if spec.primitive)


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


_MISSING: Any = _Missing()


@dataclass(frozen=True, slots=True)
class Composition:
    """One node of a composition tree.

    ``args`` holds the schema arguments by name (child arguments are nodes
    themselves); ``components`` holds the trailing child list. ``path`` is
    assigned during lowering and locates the node from the root, e.g.
    ``[1].consequent[0]``.
    """

    type: Kind
    args: dict[str, Any] = field(default_factory=dict)
    components: tuple[Composition, ...] = ()
    path: str = ""

    @property
    def spec(self) -> CombinatorSpec:
        return COMBINATORS[self.type]

    def __getitem__(self, name: str) -> Any:
        return self.args[name]

    def children(self) -> Iterator[tuple[str, Composition]]:
        """Yield ``(path suffix, child)`` for every child node."""

        for arg in self.spec.args:
            if arg.type is ArgType.CHILD:
                yield f".{arg.name}", self.args[arg.name]
        for index, component in enumerate(self.components):
            yield f"[{index}]", component

    def map_children(self, fn: Callable[[str, Composition], Composition]) -> Composition:
        args = dict(self.args)
        for arg in self.spec.args:
            if arg.type is ArgType.CHILD:
                args[arg.name] = fn(f".{arg.name}", args[arg.name])
        components = tuple(fn(f"[{i}]", c) for i, c in enumerate(self.components))
        return replace(self, args=args, components=components)

    def to_json(self) -> dict[str, Any]:
        """Serialize to the JSON AST accepted by :meth:`Composer.parse`."""

        out: dict[str, Any] = {"type": self.type.value}
        for arg in self.spec.args:
            if arg.name not in self.args:
                continue
            value = self.args[arg.name]
            out[arg.name] = value.to_json() if isinstance(value, Composition) else deep_copy(value)
        if self.spec.components:
            out["components"] = [c.to_json() for c in self.components]
        return out


class Composer:
    """Validating builder for composition trees.

    Method names follow the combinator names; ``if``, ``while``, ``try``,
    ``finally`` and ``async`` carry a trailing underscore.
    """

    def build(self, kind: Kind | str, *args: Any) -> Composition:
        try:
            kind = Kind(kind)
        except ValueError as exc:
            raise ArgumentError(f"Invalid argument: unknown combinator '{kind}'", argument=kind) from exc

        spec = COMBINATORS[kind]
        if not spec.components and len(args) > len(spec.args):
            raise ArgumentError(
                f"Too many arguments in '{kind.value}' combinator", combinator=kind.value
            )

        values: dict[str, Any] = {}
        for index, arg in enumerate(spec.args):
            value = args[index] if index < len(args) else _MISSING
            if value is _MISSING and arg.optional and arg.type is not ArgType.CHILD:
                continue
            values[arg.name] = self._check(kind, arg, value)

        components: tuple[Composition, ...] = ()
        if spec.components:
            components = tuple(self.task(c) for c in args[len(spec.args) :])

        return Composition(kind, values, components)

    def _check(self, kind: Kind, arg: ArgSpec, value: Any) -> Any:
        match arg.type:
            case ArgType.CHILD:
                if value is _MISSING and arg.optional:
                    value = None
                try:
                    return self.task(value)
                except ArgumentError as exc:
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator",
                        combinator=kind.value,
                        argument=value,
                    ) from exc
            case ArgType.NAME:
                try:
                    return qualify(None if value is _MISSING else value)
                except NameValidationError as exc:
                    raise NameValidationError(
                        f"{exc} in '{kind.value}' combinator", exc.name
                    ) from exc
            case ArgType.VALUE:
                if value is _MISSING:
                    return {}
                if callable(value):
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator: functions are not values",
                        combinator=kind.value,
                        argument=value,
                    )
                return self._json(kind, arg, value)
            case ArgType.OBJECT:
                if not is_object(value):
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator: expected an object",
                        combinator=kind.value,
                        argument=value,
                    )
                if kind is Kind.ACTION:
                    return self._action_options(value)
                return self._json(kind, arg, value)
            case ArgType.NUMBER:
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator: expected a number",
                        combinator=kind.value,
                        argument=value,
                    )
                return value
            case ArgType.FIELD:
                if value is None and arg.optional:
                    return None
                if not isinstance(value, str) or not value:
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator: expected a field name",
                        combinator=kind.value,
                        argument=value,
                    )
                return value
            case ArgType.BOOLEAN:
                if not isinstance(value, bool):
                    raise ArgumentError(
                        f"Invalid argument '{arg.name}' in '{kind.value}' combinator: expected a boolean",
                        combinator=kind.value,
                        argument=value,
                    )
                return value
            case ArgType.FUNCTION:
                return {"exec": capture(value, combinator=kind.value)}

    def _json(self, kind: Kind, arg: ArgSpec, value: Any) -> Any:
        try:
            return deep_copy(value)
        except TypeError as exc:
            raise ArgumentError(
                f"Invalid argument '{arg.name}' in '{kind.value}' combinator: {exc}",
                combinator=kind.value,
                argument=value,
            ) from exc

    def _action_options(self, options: dict[str, Any]) -> dict[str, Any]:
        normalized = dict(options)
        if "action" in normalized:
            normalized["action"] = {"exec": capture(normalized["action"], combinator="action")}
        return normalized

    def task(self, task: Any, options: dict[str, Any] | None = None) -> Composition:
        """Coerce a task to a node: nodes pass through, ``None`` is the identity,
        callables become inline functions and strings name actions.

        ``options`` may redirect the task: ``{"output": dest, "input": source}``
        wraps it in :meth:`assign`, ``{"merge": True}`` in :meth:`merge`.
        """

        if options:
            if not is_object(options):
                raise ArgumentError("Invalid argument: task options must be an object", argument=options)
            if options.get("output"):
                return self.assign(options["output"], task, options.get("input"))
            if options.get("merge"):
                return self.merge(task)
        if isinstance(task, Composition):
            return task
        if task is None:
            return self.empty()
        if isinstance(task, str):
            return self.action(task)
        if callable(task):
            return self.function(task)
        raise ArgumentError("Invalid argument", argument=task)

    def parse(self, ast: Any) -> Composition:
        """Rebuild a validated tree from its JSON AST."""

        if isinstance(ast, Composition):
            return ast
        if not is_object(ast) or not isinstance(ast.get("type"), str):
            raise ArgumentError("Invalid argument: expected a composition object", argument=ast)
        try:
            kind = Kind(ast["type"])
        except ValueError as exc:
            raise ArgumentError(
                f"Invalid argument: unknown combinator '{ast['type']}'", argument=ast
            ) from exc

        spec = COMBINATORS[kind]
        args: list[Any] = []
        for arg in spec.args:
            if arg.name not in ast:
                args.append(_MISSING)
                continue
            value = ast[arg.name]
            args.append(self.parse(value) if arg.type is ArgType.CHILD else value)

        if spec.components:
            components = ast.get("components", [])
            if not isinstance(components, list):
                raise ArgumentError(
                    f"Invalid argument: components of '{kind.value}' must be a list", argument=ast
                )
            args.extend(self.parse(c) for c in components)

        return self.build(kind, *args)

    deserialize = parse

    # Primitive and derived combinators.

    def empty(self, *args: Any) -> Composition:
        return self.build(Kind.EMPTY, *args)

    def seq(self, *components: Any) -> Composition:
        return self.build(Kind.SEQ, *components)

    def sequence(self, *components: Any) -> Composition:
        return self.build(Kind.SEQUENCE, *components)

    def if_(self, *args: Any) -> Composition:
        """``if_(test, consequent, alternate=None)``: run ``consequent`` when
        ``test`` yields ``{"value": True}``, both branches seeing the input of
        the test."""

        return self.build(Kind.IF, *args)

    def if_nosave(self, *args: Any) -> Composition:
        """Like :meth:`if_` but branches see the output of the test."""

        return self.build(Kind.IF_NOSAVE, *args)

    def while_(self, *args: Any) -> Composition:
        """``while_(test, body)``"""

        return self.build(Kind.WHILE, *args)

    def while_nosave(self, *args: Any) -> Composition:
        return self.build(Kind.WHILE_NOSAVE, *args)

    def dowhile(self, *args: Any) -> Composition:
        """``dowhile(body, test)``"""

        return self.build(Kind.DOWHILE, *args)

    def dowhile_nosave(self, *args: Any) -> Composition:
        return self.build(Kind.DOWHILE_NOSAVE, *args)

    def try_(self, *args: Any) -> Composition:
        """``try_(body, handler)``: ``handler`` receives ``{"error": ...}``."""

        return self.build(Kind.TRY, *args)

    def finally_(self, *args: Any) -> Composition:
        """``finally_(body, finalizer)``: ``finalizer`` always runs."""

        return self.build(Kind.FINALLY, *args)

    def retain(self, *components: Any) -> Composition:
        return self.build(Kind.RETAIN, *components)

    def retain_catch(self, *components: Any) -> Composition:
        return self.build(Kind.RETAIN_CATCH, *components)

    def let(self, *args: Any) -> Composition:
        """``let(declarations, *components)``"""

        return self.build(Kind.LET, *args)

    def mask(self, *components: Any) -> Composition:
        return self.build(Kind.MASK, *components)

    def action(self, *args: Any) -> Composition:
        """``action(name, options=None)``; ``options["action"]`` may embed the
        action's code for deployment alongside the composition."""

        return self.build(Kind.ACTION, *args)

    def composition(self, *args: Any) -> Composition:
        """``composition(name, body)``: a nested composition deployed as ``name``."""

        return self.build(Kind.COMPOSITION, *args)

    def repeat(self, *args: Any) -> Composition:
        """``repeat(count, *components)``"""

        return self.build(Kind.REPEAT, *args)

    def retry(self, *args: Any) -> Composition:
        """``retry(count, *components)``: at most ``count + 1`` attempts."""

        return self.build(Kind.RETRY, *args)

    def value(self, *args: Any) -> Composition:
        return self.build(Kind.VALUE, *args)

    def literal(self, *args: Any) -> Composition:
        return self.build(Kind.LITERAL, *args)

    def function(self, *args: Any) -> Composition:
        return self.build(Kind.FUNCTION, *args)

    def async_(self, *components: Any) -> Composition:
        return self.build(Kind.ASYNC, *components)

    def parallel(self, *components: Any) -> Composition:
        return self.build(Kind.PARALLEL, *components)

    def par(self, *components: Any) -> Composition:
        return self.build(Kind.PAR, *components)

    def map(self, *components: Any) -> Composition:
        return self.build(Kind.MAP, *components)

    def dynamic(self, *args: Any) -> Composition:
        return self.build(Kind.DYNAMIC, *args)

    def merge(self, *components: Any) -> Composition:
        return self.build(Kind.MERGE, *components)

    def assign(self, *args: Any) -> Composition:
        """``assign(dest, body, source=None, catch=False)``: run ``body`` and
        store its result in field ``dest`` of the input.

        ``body`` receives ``params[source]`` when ``source`` is given, the
        whole input otherwise. With ``catch``, an error result is stored in
        ``dest`` instead of failing the composition.
        """

        return self.build(Kind.ASSIGN, *args)


composer = Composer()
