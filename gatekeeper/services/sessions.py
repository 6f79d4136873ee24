"""Gaming session tracking.

A session is keyed by ``(user id, session id)``. It becomes active on its
first tagged request and closes after an idle timeout; a closed session is
never revived, the client has to start a new session id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gatekeeper.core.clock import Clock
from gatekeeper.utils.lru import BoundedLRU

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


@dataclass
class GamingSession:
    user_id: str
    session_id: str
    started_at_ms: int
    last_seen_ms: int
    request_count: int = 0
    rate_limit_hits: int = 0
    tournament_ids: set[str] = field(default_factory=set)
    competitive: bool = False
    closed: bool = False

    def to_record(self) -> dict:
        return {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "startTime": self.started_at_ms,
            "lastActivity": self.last_seen_ms,
            "requestCount": self.request_count,
            "rateLimitHits": self.rate_limit_hits,
            "tournamentIds": sorted(self.tournament_ids),
            "competitive": self.competitive,
            "closed": self.closed,
        }


@dataclass(frozen=True)
class SessionTouch:
    session: GamingSession
    created: bool


class GamingSessionTracker:
    def __init__(self, clock: Clock, *, idle_ttl_ms: int = 300_000, capacity: int = 10_000) -> None:
        self._clock = clock
        self._idle_ttl_ms = idle_ttl_ms
        self._sessions: BoundedLRU[tuple[str, str], GamingSession] = BoundedLRU(capacity)

    def touch(
        self,
        user_id: str | None,
        session_id: str,
        *,
        rate_limited: bool = False,
        tournament_id: str | None = None,
        competitive: bool = False,
    ) -> SessionTouch | None:
        """Record one request against a session.

        Returns None when the session is closed.
        """
        now = self._clock.now_ms()
        key = (user_id or ANONYMOUS_USER, session_id)
        session = self._sessions.get(key)
        created = False

        if session is not None and not session.closed and now - session.last_seen_ms > self._idle_ttl_ms:
            session.closed = True
        if session is not None and session.closed:
            logger.debug("gaming_session.closed_touch", extra={"session_id": session_id})
            return None

        if session is None:
            session = GamingSession(
                user_id=key[0], session_id=session_id, started_at_ms=now, last_seen_ms=now
            )
            self._sessions.set(key, session)
            created = True

        session.last_seen_ms = now
        session.request_count += 1
        if rate_limited:
            session.rate_limit_hits += 1
        if tournament_id:
            session.tournament_ids.add(tournament_id)
        if competitive:
            session.competitive = True
        return SessionTouch(session=session, created=created)

    def get(self, user_id: str | None, session_id: str) -> GamingSession | None:
        return self._sessions.get((user_id or ANONYMOUS_USER, session_id))

    def active_count(self) -> int:
        now = self._clock.now_ms()
        return sum(
            1
            for s in self._sessions.values()
            if not s.closed and now - s.last_seen_ms <= self._idle_ttl_ms
        )

    def expire_idle(self) -> list[GamingSession]:
        """Close idle sessions and forget ones closed for a full idle period."""
        now = self._clock.now_ms()
        newly_closed: list[GamingSession] = []
        for _, session in self._sessions.items():
            if not session.closed and now - session.last_seen_ms > self._idle_ttl_ms:
                session.closed = True
                newly_closed.append(session)
        self._sessions.prune(
            lambda s: s.closed and now - s.last_seen_ms > 2 * self._idle_ttl_ms
        )
        if newly_closed:
            logger.info("gaming_session.expired", extra={"count": len(newly_closed)})
        return newly_closed
