#!/usr/bin/env python3
"""Run the Collatz composition locally.

This demonstrates using the composer components directly:

* build a composition with the combinators
* compile it to a state machine
* run it with the conductor against Redis, with the actions executed in-process

A Redis server is required (`REDIS_URL`, defaults to `redis://localhost:6379/0`).
"""

from __future__ import annotations

import argparse
import json
from typing import Sequence

from action_composer import ComposerSettings, compile_composition, composer as c
from action_composer.conductor.conductor import Conductor
from action_composer.invoker.local import LocalActionInvoker, deploy
from action_composer.logging import configure_logging
from action_composer.sessions.store import SessionStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Collatz composition (local example).")
    parser.add_argument("n", type=int, help="Starting number")
    parser.add_argument("--show", action="store_true", help="Print the compiled composition first")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = ComposerSettings()
    configure_logging(settings.log_level)

    collatz = c.while_(
        c.action("isNotOne", {"action": "lambda params: {'value': params['n'] != 1}"}),
        c.if_(
            lambda params: params["n"] % 2 == 0,
            c.action("divideByTwo", {"action": "lambda params: {'n': params['n'] // 2}"}),
            c.action("tripleAndIncrement", {"action": "lambda params: {'n': params['n'] * 3 + 1}"}),
        ),
    )
    compiled = compile_composition(collatz)
    if args.show:
        print(json.dumps(compiled.to_json(), indent=2))

    store = SessionStore.from_url(
        settings.redis_url,
        namespace=settings.session_namespace,
        expiration=settings.session_expiration_seconds,
    )
    invoker = LocalActionInvoker()
    conductor = Conductor(store=store, invoker=invoker, settings=settings)
    invoker.register(settings.conductor_action, conductor)
    deploy(
        compiled,
        invoker,
        lambda fsm: Conductor(store=store, invoker=invoker, settings=settings, composition=fsm),
    )

    result = conductor({"$invoke": compiled.composition, "$blocking": True, "n": args.n})
    print(f"Result: {json.dumps(result)}")
    print(f"Actions run: {len(invoker.activations)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
