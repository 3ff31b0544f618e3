"""Unit tests for the step interpreter."""

from typing import Any

import pytest

from action_composer.compiler.flatten import flatten
from action_composer.compiler.fsm import Fsm, State, StateType
from action_composer.composition.combinators import Composer, Composition
from action_composer.composition.lowering import lower
from action_composer.conductor.executor import PythonTaskExecutor
from action_composer.conductor.interpreter import (
    Completed,
    Interpreter,
    Machine,
    Suspended,
    environment,
    inspect_params,
    visible_frames,
)
from action_composer.errors import BadRequest

c = Composer()


@pytest.fixture
def interpreter() -> Interpreter:
    return Interpreter(PythonTaskExecutor())


def _machine(node: Composition, params: dict[str, Any] | None = None) -> Machine:
    fsm = flatten(lower(node))
    return Machine(fsm=fsm, state=fsm.entry, params=params or {})


def _run(interpreter: Interpreter, node: Composition, params: dict[str, Any] | None = None) -> Any:
    outcome = interpreter.run(_machine(node, params))
    assert isinstance(outcome, Completed)
    return outcome.params


def test_function_chain(interpreter: Interpreter) -> None:
    node = c.seq(
        lambda params: {"n": params["n"] + 1},
        lambda params: {"n": params["n"] * 2},
    )

    assert _run(interpreter, node, {"n": 1}) == {"n": 4}


def test_non_object_results_are_wrapped(interpreter: Interpreter) -> None:
    assert _run(interpreter, c.function(lambda: 3)) == {"value": 3}


def test_none_keeps_params(interpreter: Interpreter) -> None:
    assert _run(interpreter, c.function(lambda params: None), {"a": 1}) == {"a": 1}


def test_exceptions_become_errors(interpreter: Interpreter) -> None:
    result = _run(interpreter, c.function(lambda params: params["missing"]))

    assert result == {"error": "An exception was caught at state 0 (see log for details)"}


def test_function_results_are_rejected(interpreter: Interpreter) -> None:
    result = _run(interpreter, c.function(lambda params: len))

    assert result == {"error": "State 0 evaluated to a function"}


def test_errors_skip_to_the_handler(interpreter: Interpreter) -> None:
    node = c.try_(
        c.seq(lambda: {"error": "foo", "extra": 1}, lambda: {"unreachable": True}),
        lambda params: {"message": params["error"], "keys": sorted(params)},
    )

    assert _run(interpreter, node) == {"message": "foo", "keys": ["error"]}


def test_uncaught_errors_end_the_composition(interpreter: Interpreter) -> None:
    machine = _machine(c.let({"x": 1}, c.seq(lambda: {"error": "boom"}, lambda: 1)))

    outcome = interpreter.run(machine)

    assert outcome == Completed({"error": "boom"})
    assert machine.stack == []
    assert machine.state is None


def test_finally_runs_after_errors(interpreter: Interpreter) -> None:
    node = c.finally_(lambda: {"error": "foo"}, lambda params: {"seen": params})

    assert _run(interpreter, node) == {"seen": {"error": "foo"}}


def test_let_binds_symbols(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, lambda params, env: env["x"])

    assert _run(interpreter, node) == {"value": 42}


def test_inner_let_shadows(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, c.let({"x": 69}, lambda params, env: env["x"]))

    assert _run(interpreter, node) == {"value": 69}


def test_mask_hides_every_enclosing_let(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, c.let({"y": 1}, c.mask(lambda params, env: {"seen": sorted(env)})))

    assert _run(interpreter, node) == {"seen": []}


def test_mask_hides_shadowed_names(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, c.let({"x": 69}, c.mask(lambda params, env: {"x": env.get("x")})))

    assert _run(interpreter, node) == {"x": None}


def test_let_inside_mask_is_visible(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, c.mask(c.let({"x": 69}, lambda params, env: env["x"])))

    assert _run(interpreter, node) == {"value": 69}


def test_innermost_mask_ends_the_lookup(interpreter: Interpreter) -> None:
    node = c.let(
        {"x": 42},
        c.mask(c.let({"y": 1}, c.mask(c.let({"z": 2}, lambda params, env: sorted(env))))),
    )

    assert _run(interpreter, node) == {"value": ["z"]}


def test_mask_through_try(interpreter: Interpreter) -> None:
    node = c.let({"x": 42}, c.try_(c.mask(lambda params, env: {"seen": sorted(env)}), None))

    assert _run(interpreter, node) == {"seen": []}


def test_masked_writes_do_not_reach_outer_bindings(interpreter: Interpreter) -> None:
    node = c.let(
        {"x": 1},
        c.mask(lambda params, env: env.update(x=5)),
        lambda params, env: env["x"],
    )

    assert _run(interpreter, node) == {"value": 1}


def test_bindings_are_written_back(interpreter: Interpreter) -> None:
    node = c.let(
        {"x": 42},
        lambda params, env: env.update(x=env["x"] + 1),
        lambda params, env: env["x"],
    )

    assert _run(interpreter, node) == {"value": 43}


def test_new_names_are_not_bound(interpreter: Interpreter) -> None:
    node = c.let(
        {"x": 42},
        lambda params, env: env.update(y=1),
        lambda params, env: sorted(env),
    )

    assert _run(interpreter, node) == {"value": ["x"]}


def test_retained_params_are_isolated(interpreter: Interpreter) -> None:
    def mutate(params):
        params["n"] = 99

    assert _run(interpreter, c.retain(mutate), {"n": 1}) == {"params": {"n": 1}, "result": {"n": 99}}


def test_suspends_on_actions(interpreter: Interpreter) -> None:
    machine = _machine(c.seq("a", lambda params: {"n": params["n"] + 1}), {"n": 0})

    outcome = interpreter.run(machine)

    assert isinstance(outcome, Suspended)
    assert (outcome.index, outcome.kind) == (0, "Action")
    assert outcome.task.fields["Action"] == "/_/a"
    assert machine.state == 1

    interpreter.resume(machine, {"n": 5})
    assert interpreter.run(machine) == Completed({"n": 6})


def test_resume_with_an_error_unwinds(interpreter: Interpreter) -> None:
    machine = _machine(c.try_("a", lambda params: {"caught": params["error"]}))
    assert isinstance(interpreter.run(machine), Suspended)

    interpreter.resume(machine, {"error": "failed"})

    assert interpreter.run(machine) == Completed({"caught": "failed"})


def test_suspension_kinds(interpreter: Interpreter) -> None:
    for node, kind in (
        (c.dynamic(), "Dynamic"),
        (c.async_("a"), "Async"),
        (c.parallel("a"), "Parallel"),
        (c.map("a"), "Map"),
        (c.composition("child", "a"), "Action"),
    ):
        outcome = interpreter.run(_machine(node))
        assert isinstance(outcome, Suspended)
        assert outcome.kind == kind


@pytest.mark.parametrize("state_type", [StateType.END, StateType.CHOICE, StateType.CATCH, StateType.POP])
def test_stack_violations(interpreter: Interpreter, state_type: StateType) -> None:
    machine = Machine(fsm=Fsm(states=[State(state_type, then=0, else_=0)]), state=0)

    with pytest.raises(BadRequest, match="expected a"):
        interpreter.run(machine)


def test_out_of_range_state(interpreter: Interpreter) -> None:
    with pytest.raises(BadRequest, match="not part of the composition"):
        interpreter.run(Machine(fsm=Fsm(states=[State(StateType.PASS, next=5)]), state=0))


def test_value_tasks_and_pop(interpreter: Interpreter) -> None:
    fsm = Fsm(
        states=[
            State(StateType.PUSH, next=1),
            State(StateType.TASK, next=2, fields={"Value": {"n": 2}}),
            State(StateType.POP),
        ],
        exit=2,
    )

    outcome = interpreter.run(Machine(fsm=fsm, state=0, params={"n": 1}))

    assert outcome == Completed({"result": {"n": 2}, "params": {"n": 1}})


def test_inspect_params_coerces_and_filters() -> None:
    machine = Machine(fsm=Fsm(states=[]), state=3, stack=[{"catch": 7}, {"let": {}}], params=[1])
    inspect_params(machine)
    assert machine.params == {"value": [1]}
    assert machine.state == 3

    machine.params = {"error": "x", "other": 1}
    inspect_params(machine)
    assert machine.params == {"error": "x"}
    assert machine.state == 7
    assert machine.stack == []


def test_visible_frames_and_environment() -> None:
    outer, inner = {"let": {"x": 1, "y": 1}}, {"let": {"x": 2}}
    stack = [outer, {"params": {}}, inner, {"catch": 3}]

    assert visible_frames(stack) == [inner, outer]
    assert environment(visible_frames(stack)) == {"x": 2, "y": 1}
    assert visible_frames([*stack, {"let": None}]) == []
    assert visible_frames([outer, {"let": None}, inner]) == [inner]


def test_missing_next_is_malformed(interpreter: Interpreter) -> None:
    fsm = Fsm(states=[State(StateType.PASS), State(StateType.PASS)], exit=1)

    with pytest.raises(BadRequest, match="no Next link"):
        interpreter.run(Machine(fsm=fsm, state=0, params={"in": 1}))


def test_choice_without_then_is_malformed(interpreter: Interpreter) -> None:
    fsm = Fsm(
        states=[
            State(StateType.PUSH, next=1),
            State(StateType.TASK, next=2, fields={"Value": {"value": True}}),
            State(StateType.CHOICE, else_=3),
            State(StateType.PASS),
        ],
        exit=3,
    )

    with pytest.raises(BadRequest, match="Then or Else"):
        interpreter.run(Machine(fsm=fsm, state=0, params={"in": 1}))


def test_try_without_handler_is_malformed(interpreter: Interpreter) -> None:
    fsm = Fsm(states=[State(StateType.TRY, next=1), State(StateType.PASS)], exit=1)

    with pytest.raises(BadRequest, match="Handler"):
        interpreter.run(Machine(fsm=fsm, state=0))


def test_wire_machine_with_dangling_state_is_malformed(interpreter: Interpreter) -> None:
    fsm = Fsm.from_json(
        {
            "Entry": "pass_0",
            "Exit": "pass_1",
            "States": {"pass_0": {"Type": "Pass"}, "pass_1": {"Type": "Pass"}},
        }
    )

    with pytest.raises(BadRequest, match="no Next link"):
        interpreter.run(Machine(fsm=fsm, state=fsm.entry))


def test_choice_restores_the_pushed_snapshot(interpreter: Interpreter) -> None:
    def flag_and_mutate(params):
        params["n"] = 99
        params["value"] = True

    node = c.if_nosave(flag_and_mutate, lambda params: {"restored": params})

    assert _run(interpreter, node, {"n": 1}) == {"restored": {"n": 1}}


def test_pop_returns_the_pushed_snapshot(interpreter: Interpreter) -> None:
    def mutate(params):
        params["n"] = 99

    fsm = Fsm(
        states=[
            State(StateType.PUSH, next=1),
            State(StateType.TASK, next=2, fields={"Function": c.function(mutate)["function"]}),
            State(StateType.POP),
        ],
        exit=2,
    )

    outcome = interpreter.run(Machine(fsm=fsm, state=0, params={"n": 1}))

    assert outcome == Completed({"result": {"n": 99}, "params": {"n": 1}})
