"""Rewrite derived combinators into primitives.

Each derived kind has one rewrite rule. Rules introduce helper functions that
communicate through ``let`` bindings (``params``, ``count``, ``value``,
``dest``, ``source``) and wrap user code in ``mask``. A mask hides every
binding declared outside it, so helpers that read a binding always run
outside the masks of their own rewrite.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace

from action_composer.composition.combinators import PRIMITIVES, Composer, Composition, Kind
from action_composer.errors import CompilationError

logger = logging.getLogger(__name__)

# Helper function bodies. They receive (params, env) where env holds the
# bindings introduced by the rewrite.
SAVE_PARAMS = "lambda params, env: env.update(params=params)"
RESTORE_PARAMS = "lambda params, env: env['params']"
RETAIN_RESULT = "lambda params, env: {'params': env['params'], 'result': params}"
WRAP_RESULT = "lambda params, env: {'result': params}"
UNWRAP_CAUGHT = "lambda params, env: {'params': params['params'], 'result': params['result']['result']}"
MERGE_RESULT = "lambda params, env: {**params['params'], **params['result']}"
LITERAL_VALUE = (
    "lambda params, env: env['value'] if isinstance(env['value'], dict) else {'value': env['value']}"
)
RETRY_START = "lambda params, env: {'params': params}"
RETRY_ATTEMPT = "lambda params, env: params['params']"
RETRY_RESULT = "lambda params, env: params['result']"
SELECT_SOURCE = "lambda params, env: {} if params.get(env['source']) is None else params[env['source']]"
ASSIGN_RESULT = "lambda params, env: {**env['params'], env['dest']: params}"
ASSIGN_CAUGHT = "lambda params, env: {**env['params'], env['dest']: params['result']}"

REPEAT_TEST = """\
def repeat_test(params, env):
    env["count"] -= 1
    return env["count"] >= 0
"""

RETRY_TEST = """\
def retry_test(params, env):
    if "error" not in params["result"]:
        return False
    env["count"] -= 1
    return env["count"] >= 0
"""


def desugar(node: Composition, composer: Composer) -> Composition:
    """Apply the rewrite rule of a derived node once."""

    c = composer
    fn = composer.function
    match node.type:
        case Kind.EMPTY:
            return c.sequence()
        case Kind.SEQ:
            return c.sequence(*node.components)
        case Kind.PAR:
            return c.parallel(*node.components)
        case Kind.VALUE:
            return c.literal(node["value"])
        case Kind.LITERAL:
            return c.let({"value": node["value"]}, fn(LITERAL_VALUE))
        case Kind.RETAIN:
            return c.let(
                {"params": None},
                fn(SAVE_PARAMS),
                c.mask(*node.components),
                fn(RETAIN_RESULT),
            )
        case Kind.RETAIN_CATCH:
            return c.seq(
                c.retain(c.finally_(c.seq(*node.components), fn(WRAP_RESULT))),
                fn(UNWRAP_CAUGHT),
            )
        case Kind.MERGE:
            return c.seq(c.retain(*node.components), fn(MERGE_RESULT))
        case Kind.IF:
            return c.let(
                {"params": None},
                fn(SAVE_PARAMS),
                c.if_nosave(
                    c.mask(node["test"]),
                    c.seq(fn(RESTORE_PARAMS), c.mask(node["consequent"])),
                    c.seq(fn(RESTORE_PARAMS), c.mask(node["alternate"])),
                ),
            )
        case Kind.WHILE:
            return c.let(
                {"params": None},
                fn(SAVE_PARAMS),
                c.while_nosave(
                    c.mask(node["test"]),
                    c.seq(fn(RESTORE_PARAMS), c.mask(node["body"]), fn(SAVE_PARAMS)),
                ),
                fn(RESTORE_PARAMS),
            )
        case Kind.DOWHILE:
            return c.let(
                {"params": None},
                fn(SAVE_PARAMS),
                c.dowhile_nosave(
                    c.seq(fn(RESTORE_PARAMS), c.mask(node["body"]), fn(SAVE_PARAMS)),
                    c.mask(node["test"]),
                ),
                fn(RESTORE_PARAMS),
            )
        case Kind.REPEAT:
            return c.let(
                {"count": node["count"]},
                c.while_nosave(fn(REPEAT_TEST), c.mask(*node.components)),
            )
        case Kind.RETRY:
            return c.let(
                {"count": node["count"]},
                fn(RETRY_START),
                c.dowhile_nosave(
                    c.seq(fn(RETRY_ATTEMPT), c.retain_catch(*node.components)),
                    fn(RETRY_TEST),
                ),
                fn(RETRY_RESULT),
            )
        case Kind.ASSIGN:
            declarations = {"dest": node["dest"], "params": None}
            steps = [fn(SAVE_PARAMS)]
            if node.args.get("source") is not None:
                declarations["source"] = node["source"]
                steps.append(fn(SELECT_SOURCE))
            if node.args.get("catch"):
                steps += [c.mask(c.finally_(node["body"], fn(WRAP_RESULT))), fn(ASSIGN_CAUGHT)]
            else:
                steps += [c.mask(node["body"]), fn(ASSIGN_RESULT)]
            return c.let(declarations, *steps)
        case _:
            raise CompilationError(f"No lowering rule for combinator '{node.type.value}'")


def lower(
    node: Composition,
    combinators: Iterable[Kind | str] = (),
    *,
    composer: Composer | None = None,
    path: str = "",
) -> Composition:
    """Lower ``node`` until only primitives (plus ``combinators``) remain.

    The root is rewritten to a fixpoint before descending, and every rewritten
    node keeps the path of the node it replaces.
    """

    composer = composer or Composer()
    keep = PRIMITIVES | {Kind(k) for k in combinators}

    while node.type not in keep:
        logger.debug("Lowering combinator", extra={"combinator": node.type.value, "path": path})
        node = desugar(node, composer)

    node = replace(node, path=path)
    return node.map_children(
        lambda suffix, child: lower(child, keep, composer=composer, path=path + suffix)
    )
