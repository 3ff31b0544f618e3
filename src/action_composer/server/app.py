"""FastAPI app factory.

Endpoints are thin wrappers over the conductor, the compiler and the session
store. Conductor failures are reported with their own status code and a
`{code, error}` body.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from action_composer import __version__
from action_composer.compiler.compiler import compile_composition
from action_composer.conductor.conductor import Conductor
from action_composer.config import ComposerSettings
from action_composer.errors import CompilationError, ConductorError
from action_composer.invoker.base import ActionInvoker
from action_composer.invoker.rest import RestActionInvoker
from action_composer.server.sessions_router import router as sessions_router
from action_composer.sessions.store import SessionStore

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings: ComposerSettings | None = None,
    store: SessionStore | None = None,
    invoker: ActionInvoker | None = None,
) -> FastAPI:
    settings = settings or ComposerSettings()
    store = store or SessionStore.from_url(
        settings.redis_url,
        namespace=settings.session_namespace,
        expiration=settings.session_expiration_seconds,
    )
    invoker = invoker or RestActionInvoker.from_settings(settings)
    conductor = Conductor(store=store, invoker=invoker, settings=settings)

    app = FastAPI(
        title="Action Composer",
        version=__version__,
        description="REST API over the composition compiler, the conductor and its sessions.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings
    app.state.store = store
    app.state.conductor = conductor

    app.include_router(sessions_router, prefix="/api")

    @app.exception_handler(ConductorError)
    def conductor_error(_request: Request, exc: ConductorError) -> JSONResponse:
        return JSONResponse(status_code=exc.code, content=exc.to_json())

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__, "conductor": conductor.name}

    @app.post("/api/conductor")
    def run_conductor(
        params: dict[str, Any] = Body(...),
        activation_id: str | None = Header(default=None, alias="X-Activation-Id"),
    ) -> dict[str, Any]:
        if activation_id and "$activationId" not in params:
            params["$activationId"] = activation_id
        return conductor.handle(params)

    @app.post("/api/compile")
    def compile_endpoint(ast: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            return compile_composition(ast).to_json()
        except CompilationError as exc:
            raise HTTPException(status_code=exc.code, detail=str(exc)) from exc

    return app
