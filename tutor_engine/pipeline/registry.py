"""SessionRegistry: the one shared table of live sessions.

Created in the app lifespan and injected into every connection handler, so
no module-level singleton exists.  All operations are synchronous: under a
single event loop a mutation can never be interleaved with another.
"""

from __future__ import annotations

import logging
from typing import Iterator

from ..languages import DEFAULT_LANGUAGE_CODE
from .session_context import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session id → ``Session``."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def create(self, session_id: str, *, language_code: str = DEFAULT_LANGUAGE_CODE) -> Session:
        if session_id in self._sessions:
            raise KeyError(f"Session {session_id} is already registered.")
        session = Session(session_id=session_id, language_code=language_code)
        self._sessions[session_id] = session
        logger.info("[Registry] Session %s registered. Active: %d", session_id, len(self._sessions))
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        """Delete *session_id*; returns False if it was already gone."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info("[Registry] Session %s removed. Active: %d", session_id, len(self._sessions))
        return True

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
