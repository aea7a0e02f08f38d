"""
Session persistence.

SessionStore is the abstract contract the signing service depends on;
InMemorySessionStore is the process-local implementation. A durable
backend only has to satisfy the Protocol.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from signgate.app.schemas.session import SigningSession, SigningStatus

logger = logging.getLogger("signgate.session_store")


class SessionStore(Protocol):
    """
    Key-value store of signing sessions keyed by session id.

    Implementations must:
    - keep session ids unique (save of an existing id is rejected)
    - return sessions of one user in insertion order
    - support concurrent access to different keys
    """

    async def save(self, session: SigningSession) -> None:
        ...

    async def find(self, session_id: str) -> Optional[SigningSession]:
        ...

    async def find_by_user(self, user_id: str) -> list[SigningSession]:
        ...

    async def update(
        self,
        session: SigningSession,
        *,
        expected_status: Optional[SigningStatus] = None,
    ) -> bool:
        ...

    async def delete(self, session_id: str) -> bool:
        ...


class DuplicateSession(ValueError):
    """Raised when saving a session id that is already stored."""


class InMemorySessionStore:
    """
    Process-local store backed by an insertion-ordered dict.

    Sessions are immutable snapshots, so handing them out directly is
    safe; mutations always go through save/update.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SigningSession] = {}
        self._lock = asyncio.Lock()

    async def save(self, session: SigningSession) -> None:
        async with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateSession(session.session_id)
            self._sessions[session.session_id] = session

        logger.debug(
            "session_saved",
            extra={"session_id": session.session_id},
        )

    async def find(self, session_id: str) -> Optional[SigningSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def find_by_user(self, user_id: str) -> list[SigningSession]:
        async with self._lock:
            return [
                s for s in self._sessions.values() if s.user_id == user_id
            ]

    async def update(
        self,
        session: SigningSession,
        *,
        expected_status: Optional[SigningStatus] = None,
    ) -> bool:
        """
        Replace the stored snapshot.

        With ``expected_status`` the write only happens if the stored
        session is still in that status (update-if-unchanged). Returns
        False when the session is absent or the precondition fails.
        """
        async with self._lock:
            current = self._sessions.get(session.session_id)
            if current is None:
                logger.warning(
                    "session_update_missing",
                    extra={"session_id": session.session_id},
                )
                return False

            if expected_status is not None and current.status != expected_status:
                logger.warning(
                    "session_update_conflict",
                    extra={
                        "session_id": session.session_id,
                        "expected_status": expected_status.value,
                        "actual_status": current.status.value,
                    },
                )
                return False

            self._sessions[session.session_id] = session
            return True

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
