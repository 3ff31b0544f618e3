"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fakes import FakeRedis

from action_composer.compiler.compiler import compile_composition
from action_composer.composition.combinators import Composition
from action_composer.conductor.conductor import Conductor
from action_composer.config import ComposerSettings
from action_composer.invoker.local import LocalActionInvoker, deploy
from action_composer.sessions.store import SessionStore


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Provide an empty in-memory redis."""
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> SessionStore:
    """Provide a session store over the in-memory redis."""
    return SessionStore(fake_redis, namespace="test", expiration=3600)


@pytest.fixture
def settings() -> ComposerSettings:
    """Provide settings that ignore the environment's .env file."""
    return ComposerSettings(
        _env_file=None,
        redis_url="redis://fake:6379/0",
        session_namespace="test",
        blocking_timeout_seconds=1,
        poll_interval_seconds=0.01,
        api_host="",
        api_key="",
    )


def _divide_by_two(params: dict[str, Any]) -> dict[str, Any]:
    return {"n": params["n"] // 2}


def _triple_and_increment(params: dict[str, Any]) -> dict[str, Any]:
    return {"n": params["n"] * 3 + 1}


def _is_not_one(params: dict[str, Any]) -> dict[str, Any]:
    return {"value": params["n"] != 1}


def _is_even(params: dict[str, Any]) -> dict[str, Any]:
    return {"value": params["n"] % 2 == 0}


@pytest.fixture
def invoker() -> LocalActionInvoker:
    """Provide an in-process invoker with the arithmetic sample actions."""
    return LocalActionInvoker(
        {
            "DivideByTwo": _divide_by_two,
            "TripleAndIncrement": _triple_and_increment,
            "isNotOne": _is_not_one,
            "isEven": _is_even,
        }
    )


@pytest.fixture
def conductor(store: SessionStore, invoker: LocalActionInvoker, settings: ComposerSettings) -> Conductor:
    """Provide the generic conductor, registered with the invoker for notifications."""
    conductor = Conductor(store=store, invoker=invoker, settings=settings)
    invoker.register(settings.conductor_action, conductor)
    return conductor


@pytest.fixture
def run(
    conductor: Conductor,
    store: SessionStore,
    invoker: LocalActionInvoker,
    settings: ComposerSettings,
) -> Callable[..., dict[str, Any]]:
    """Compile, deploy and run a composition to completion."""

    def factory(fsm: dict[str, Any]) -> Conductor:
        return Conductor(store=store, invoker=invoker, settings=settings, composition=fsm)

    def run_composition(composition: Composition, params: dict[str, Any] | None = None) -> dict[str, Any]:
        compiled = compile_composition(composition)
        deploy(compiled, invoker, factory)
        return conductor.handle({**(params or {}), "$invoke": compiled.composition, "$blocking": True})

    return run_composition
