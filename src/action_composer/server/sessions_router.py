"""Session management endpoints, mounted under `/api`."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from action_composer.errors import SessionNotFound, SessionStoreError
from action_composer.sessions.models import SessionListing
from action_composer.sessions.store import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, SessionStore

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "store", None)
    if not isinstance(store, SessionStore):
        raise HTTPException(status_code=500, detail="Session store not configured")
    return store


@router.get("", response_model=SessionListing)
def list_sessions(
    request: Request,
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    skip: int = Query(default=0, ge=0),
) -> SessionListing:
    return _store(request).list(limit=limit, skip=skip)


@router.get("/{session_id}/result")
def session_result(
    session_id: str,
    request: Request,
    timeout: float | None = Query(default=None, gt=0, le=300),
) -> dict[str, Any]:
    try:
        return _store(request).get(session_id, timeout=timeout)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SessionStoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.get("/{session_id}/trace")
def session_trace(session_id: str, request: Request) -> dict[str, Any]:
    try:
        return {"trace": _store(request).trace(session_id)}
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/{session_id}")
def kill_session(session_id: str, request: Request) -> dict[str, str]:
    try:
        _store(request).kill(session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "OK"}


@router.post("/{session_id}/purge")
def purge_session(session_id: str, request: Request) -> dict[str, str]:
    try:
        _store(request).purge(session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "OK"}
