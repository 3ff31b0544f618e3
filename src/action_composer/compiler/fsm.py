"""Flat state machine produced by the compiler and run by the conductor.

In memory, states live in a list and refer to each other by index. On the
wire, the machine is ``{"Entry", "Exit", "States": {name: record}}`` with
records referring to each other by name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from action_composer.errors import BadRequest
from action_composer.values import is_object


class StateType(str, Enum):
    CHOICE = "Choice"
    TRY = "Try"
    CATCH = "Catch"
    PUSH = "Push"
    POP = "Pop"
    LET = "Let"
    END = "End"
    TASK = "Task"
    PASS = "Pass"


# Kind-specific record fields carried as-is between the wire and memory.
PAYLOAD_FIELDS: tuple[str, ...] = (
    "Symbol",
    "Value",
    "Bindings",
    "Mask",
    "Action",
    "Composition",
    "Function",
    "Dynamic",
    "Async",
    "Parallel",
    "Map",
)

# Task payloads that suspend the interpreter and are handled by the conductor.
EXTERNAL_TASKS: tuple[str, ...] = ("Action", "Dynamic", "Async", "Parallel", "Map")

_LINKS: tuple[tuple[str, str], ...] = (
    ("next", "Next"),
    ("then", "Then"),
    ("else_", "Else"),
    ("handler", "Handler"),
)


@dataclass(slots=True)
class State:
    type: StateType
    path: str = ""
    next: int | None = None
    then: int | None = None
    else_: int | None = None
    handler: int | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def name(self, index: int) -> str:
        return f"{self.type.value.lower()}_{index}"


@dataclass(slots=True)
class Fsm:
    states: list[State]
    entry: int = 0
    exit: int = 0

    def __len__(self) -> int:
        return len(self.states)

    def to_json(self) -> dict[str, Any]:
        names = [state.name(i) for i, state in enumerate(self.states)]
        records: dict[str, Any] = {}
        for name, state in zip(names, self.states):
            record: dict[str, Any] = {"Type": state.type.value, "Path": state.path}
            for attr, key in _LINKS:
                target = getattr(state, attr)
                if target is not None:
                    record[key] = names[target]
            record.update(state.fields)
            records[name] = record
        return {"Entry": names[self.entry], "Exit": names[self.exit], "States": records}

    @classmethod
    def from_json(cls, data: Any) -> Fsm:
        """Parse a wire-format machine.

        Raises:
            BadRequest: If the machine is malformed or refers to unknown states.
        """

        if not is_object(data) or not is_object(data.get("States")) or not data["States"]:
            raise BadRequest("The composition is not a valid state machine")

        records: dict[str, Any] = data["States"]
        index = {name: i for i, name in enumerate(records)}

        def resolve(name: Any, what: str) -> int:
            if not isinstance(name, str) or name not in index:
                raise BadRequest(f"The composition refers to an unknown state {name!r} in {what}")
            return index[name]

        states: list[State] = []
        for name, record in records.items():
            if not is_object(record):
                raise BadRequest(f"State {name} is not an object")
            try:
                kind = StateType(record.get("Type"))
            except ValueError as exc:
                raise BadRequest(f"State {name} has an unknown type {record.get('Type')!r}") from exc

            state = State(type=kind, path=str(record.get("Path", "")))
            for attr, key in _LINKS:
                if key in record:
                    setattr(state, attr, resolve(record[key], f"{key} of state {name}"))
            state.fields = {key: record[key] for key in PAYLOAD_FIELDS if key in record}
            states.append(state)

        entry = resolve(data.get("Entry", next(iter(records))), "Entry")
        exit_ = resolve(data.get("Exit"), "Exit")
        return cls(states=states, entry=entry, exit=exit_)
