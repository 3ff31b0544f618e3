"""Composition compiler: lowering, flattening and the deployable side table."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from action_composer import __version__
from action_composer.compiler.flatten import flatten
from action_composer.composition.combinators import Composer, Composition, Kind
from action_composer.composition.combinators import composer as default_composer
from action_composer.composition.lowering import lower
from action_composer.errors import CompilationError, ComposerError

logger = logging.getLogger(__name__)


class CompiledComposition(BaseModel):
    """Deployable compiler output.

    ``composition`` is the wire-format state machine, ``ast`` the tree as the
    user wrote it, and ``actions`` the embedded action definitions and nested
    compositions to deploy alongside it.
    """

    composition: dict[str, Any]
    ast: dict[str, Any]
    version: str = __version__
    actions: list[dict[str, Any]] = Field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        data = self.model_dump()
        if not self.actions:
            del data["actions"]
        return data


def _side_actions(node: Composition, builder: Composer) -> list[dict[str, Any]]:
    """Collect embedded definitions, depth first, in source order."""

    found: list[dict[str, Any]] = []
    match node.type:
        case Kind.ACTION if "action" in node.args and "action" in node["action"]:
            options = dict(node["action"])
            definition = options.pop("action")
            found.append({"name": node["name"], "action": {**definition, **options}})
        case Kind.COMPOSITION:
            nested = compile_composition(node["composition"], composer=builder)
            found.extend(nested.actions)
            found.append(
                {
                    "name": node["name"],
                    "action": {
                        "exec": {"kind": "composition", "composition": nested.composition},
                        "annotations": [{"key": "conductor", "value": nested.ast}],
                    },
                }
            )
            return found
    for _suffix, child in node.children():
        found.extend(_side_actions(child, builder))
    return found


def _dedupe(actions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_name: dict[str, dict[str, Any]] = {}
    for entry in actions:
        existing = by_name.get(entry["name"])
        if existing is not None and existing != entry:
            raise CompilationError(f"Action {entry['name']} is defined more than once")
        by_name[entry["name"]] = entry
    return list(by_name.values())


def compile_composition(
    source: Composition | dict[str, Any], *, composer: Composer = default_composer
) -> CompiledComposition:
    """Compile a composition tree (or its JSON AST).

    Raises:
        CompilationError: If the tree cannot be parsed, lowered or flattened.
    """

    try:
        node = composer.parse(source)
        lowered = lower(node, composer=composer)
        fsm = flatten(lowered)
        actions = _dedupe(_side_actions(node, composer))
    except CompilationError:
        raise
    except ComposerError as exc:
        raise CompilationError(str(exc)) from exc

    logger.debug(
        "Compiled composition",
        extra={"states": len(fsm), "actions": [a["name"] for a in actions]},
    )
    return CompiledComposition(composition=fsm.to_json(), ast=node.to_json(), actions=actions)
