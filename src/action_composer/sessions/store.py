"""Redis-backed session store.

Key schema (``{ns}`` is the configured namespace):
    {ns}:session:live:{id} - one-element list holding the live state JSON
    {ns}:session:done:{id} - one-element list holding the final result JSON
    {ns}:list:{id} - trace, the activation ids that worked on the session
    {ns}:all - sorted set of session ids scored by ``2 * epoch_ms + done``

Every key expires after the configured expiration; the directory is also
trimmed lazily whenever sessions are listed.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any

import redis
from pydantic import ValidationError

from action_composer.errors import SessionGone, SessionNotFound, SessionStoreError
from action_composer.sessions.models import LiveState, SessionEntry, SessionListing

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION = 86400 * 7
DEFAULT_LIST_LIMIT = 30
MAX_LIST_LIMIT = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionStore:
    """Session persistence over a synchronous redis client.

    Args:
        client: A redis client created with ``decode_responses=True``.
        namespace: Prefix of every key.
        expiration: Seconds before session keys expire.
    """

    client: redis.Redis
    namespace: str = "composer"
    expiration: int = DEFAULT_EXPIRATION

    @classmethod
    def from_url(
        cls, url: str, *, namespace: str = "composer", expiration: int = DEFAULT_EXPIRATION
    ) -> SessionStore:
        return cls(redis.from_url(url, decode_responses=True), namespace, expiration)

    def with_expiration(self, expiration: int) -> SessionStore:
        return replace(self, expiration=expiration)

    # Keys

    def _live(self, session_id: str) -> str:
        return f"{self.namespace}:session:live:{session_id}"

    def _done(self, session_id: str) -> str:
        return f"{self.namespace}:session:done:{session_id}"

    def _trace(self, session_id: str) -> str:
        return f"{self.namespace}:list:{session_id}"

    @property
    def _directory(self) -> str:
        return f"{self.namespace}:all"

    # Live state

    def register(self, session_id: str, live: LiveState) -> bool:
        """Create the live record of a new session.

        Returns False, leaving existing records untouched, when the session
        already exists or has already completed.
        """

        key = self._live(session_id)
        pipe = self.client.pipeline()
        pipe.lpush(key, live.model_dump_json(by_alias=True))
        pipe.ltrim(key, -1, -1)
        pipe.expire(key, self.expiration)
        length, *_ = pipe.execute()

        if self.client.exists(self._done(session_id)):
            self.client.delete(key)
            return False
        if length != 1:
            return False

        pipe = self.client.pipeline()
        pipe.zadd(self._directory, {session_id: _now_ms() * 2})
        pipe.expire(self._directory, self.expiration)
        pipe.execute()
        return True

    def save(self, session_id: str, live: LiveState) -> None:
        """Overwrite the live record, only if it still exists.

        Raises:
            SessionGone: If the session was killed or has completed.
        """

        key = self._live(session_id)
        try:
            self.client.lset(key, 0, live.model_dump_json(by_alias=True))
        except redis.ResponseError as exc:
            if "no such key" in str(exc).lower():
                raise SessionGone(f"Session {session_id} is gone") from exc
            raise
        self.client.expire(key, self.expiration)

    def load(self, session_id: str) -> LiveState | None:
        raw = self.client.lindex(self._live(session_id), 0)
        if raw is None:
            return None
        try:
            return LiveState.model_validate_json(raw)
        except ValidationError as exc:
            raise SessionStoreError(f"Live state of session {session_id} is malformed") from exc

    def complete(self, session_id: str, result: dict[str, Any]) -> None:
        """Record the final result and retire the live record.

        Raises:
            SessionGone: If the live record no longer exists.
        """

        live, done = self._live(session_id), self._done(session_id)
        if not self.client.exists(live):
            raise SessionGone(f"Session {session_id} is gone")

        pipe = self.client.pipeline()
        pipe.rpush(done, json.dumps(result))
        pipe.ltrim(done, -1, -1)
        pipe.expire(done, self.expiration)
        pipe.delete(live)
        pipe.expire(self._trace(session_id), self.expiration)
        pipe.zadd(self._directory, {session_id: _now_ms() * 2 + 1})
        pipe.expire(self._directory, self.expiration)
        pipe.execute()
        logger.info("Session completed", extra={"session_id": session_id})

    # Results

    def _parse_result(self, session_id: str, raw: str | None) -> dict[str, Any]:
        if raw is None:
            raise SessionNotFound(f"Cannot find result of session {session_id}")
        result = json.loads(raw)
        if not isinstance(result, dict):
            raise SessionStoreError(f"Result of session {session_id} is not a JSON object")
        return result

    def get(
        self, session_id: str, timeout: float | None = None, block: bool = False
    ) -> dict[str, Any]:
        """Return the result of a session.

        Without ``timeout`` this only looks once. With ``timeout`` it waits on
        the done record with a blocking pop-and-requeue; unless ``block`` is
        set, a session that is neither live nor done fails straight away.

        Raises:
            SessionNotFound: If there is no result (yet).
        """

        done = self._done(session_id)
        raw = self.client.lindex(done, 0)
        if raw is None and timeout is not None:
            if not block and not self.client.exists(self._live(session_id), done):
                raise SessionNotFound(f"Cannot find session {session_id}")
            raw = self.client.brpoplpush(done, done, max(1, math.ceil(timeout)))
        return self._parse_result(session_id, raw)

    def wait(self, session_id: str, timeout: float, poll_interval: float = 0.5) -> dict[str, Any]:
        """Poll for the result until ``timeout`` expires.

        Raises:
            SessionNotFound: If the session disappears or the wait times out.
        """

        deadline = time.monotonic() + timeout
        live, done = self._live(session_id), self._done(session_id)
        while True:
            raw = self.client.lindex(done, 0)
            if raw is not None:
                return self._parse_result(session_id, raw)
            if not self.client.exists(live):
                raise SessionNotFound(f"Cannot find session {session_id}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SessionNotFound(f"Cannot find result of session {session_id}")
            time.sleep(min(poll_interval, remaining))

    # Trace

    def add_trace(self, session_id: str, activation_id: str) -> None:
        key = self._trace(session_id)
        pipe = self.client.pipeline()
        pipe.rpush(key, activation_id)
        pipe.expire(key, self.expiration)
        pipe.execute()

    def trace(self, session_id: str) -> list[str]:
        activations = self.client.lrange(self._trace(session_id), 0, -1)
        if not activations:
            raise SessionNotFound(f"Cannot find trace for session {session_id}")
        return activations

    # Management

    def kill(self, session_id: str) -> None:
        """Delete a live session; in-flight steps will fail with ``SessionGone``."""

        if self.client.delete(self._live(session_id)) != 1:
            raise SessionNotFound(f"Cannot find live session {session_id}")
        self.client.delete(self._trace(session_id))
        self.client.zrem(self._directory, session_id)
        logger.info("Session killed", extra={"session_id": session_id})

    def purge(self, session_id: str) -> None:
        """Delete every record of a session."""

        deleted = self.client.delete(
            self._live(session_id), self._done(session_id), self._trace(session_id)
        )
        if not deleted:
            raise SessionNotFound(f"Cannot find session {session_id}")
        self.client.zrem(self._directory, session_id)

    def flush(self) -> int:
        """Delete every key of the namespace and return how many were removed."""

        keys = list(self.client.scan_iter(match=f"{self.namespace}:*"))
        if not keys:
            return 0
        return self.client.delete(*keys)

    def last(self, limit: int = DEFAULT_LIST_LIMIT, skip: int = 0) -> list[SessionEntry]:
        """Most recent sessions first, after dropping stale directory entries."""

        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        skip = max(skip, 0)

        top = self.client.zrevrange(self._directory, 0, 0, withscores=True)
        if not top:
            return []
        # Entries more than twice the expiration older than the newest go.
        cutoff = int(top[0][1]) - 2 * (2 * self.expiration * 1000)
        self.client.zremrangebyscore(self._directory, "-inf", f"({cutoff}")

        rows = self.client.zrevrangebyscore(
            self._directory, "+inf", "-inf", start=skip, num=limit, withscores=True
        )
        entries = []
        for session_id, score in rows:
            score = int(score)
            entries.append(SessionEntry(session=session_id, time=score // 2, live=not score & 1))
        return entries

    def list(self, limit: int = DEFAULT_LIST_LIMIT, skip: int = 0) -> SessionListing:
        entries = self.last(limit, skip)
        listing = SessionListing(
            live=[e.session for e in entries if e.live],
            done=[e.session for e in entries if not e.live],
        )
        if len(entries) == min(max(limit, 1), MAX_LIST_LIMIT):
            listing.next = max(skip, 0) + len(entries)
        return listing
