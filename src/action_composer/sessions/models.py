"""Persisted session records."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Callee(BaseModel):
    """The caller session to notify when a sub-composition completes."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    action: str


class LiveState(BaseModel):
    """Continuation of a suspended session."""

    model_config = ConfigDict(populate_by_name=True)

    fsm: dict[str, Any]
    current_state: int | None = Field(alias="currentState")
    stack: list[dict[str, Any]] = Field(default_factory=list)
    callee: Callee | None = None


class SessionEntry(BaseModel):
    session: str
    time: int
    live: bool


class SessionListing(BaseModel):
    live: list[str] = Field(default_factory=list)
    done: list[str] = Field(default_factory=list)
    next: int = 0
