"""FastAPI adapter for the conductor and the session store.

Design intent:
- Keep workflow semantics in `action_composer.conductor` and `action_composer.sessions`
- Keep HTTP concerns (routing, status codes) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from action_composer.server.app import create_app
