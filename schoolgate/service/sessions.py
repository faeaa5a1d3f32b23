from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Protocol

from schoolgate.durations import is_expired, utcnow
from schoolgate.logging import get_logger
from schoolgate.service.errors import AuthenticationError
from schoolgate.storage.models import Session

logger = get_logger(__name__)

MAX_SESSIONS_PER_USER = 5


@dataclass(frozen=True)
class RequestMetadata:
    """Best-effort client details captured by the HTTP layer."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class SessionBackend(Protocol):
    def transaction(self) -> AbstractContextManager[Any]: ...

    def lock_user_sessions(self, user_id: str) -> None: ...

    def create_refresh_token(self, session: Session) -> Session: ...

    def get_refresh_token(self, token: str) -> Optional[Session]: ...

    def count_refresh_tokens(self, user_id: str) -> int: ...

    def list_refresh_tokens(self, user_id: str) -> List[Session]: ...

    def delete_refresh_token(self, session_id: str) -> bool: ...

    def delete_refresh_tokens(self, session_ids: Iterable[str]) -> int: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


class SessionStore:
    """Refresh-token sessions with a per-user cap.

    Creating a session when the user already holds ``max_sessions`` evicts the
    oldest ones first. Count, evict and insert run in one store transaction
    with the user's session set locked, so concurrent logins cannot push the
    user over the cap.
    """

    def __init__(self, backend: SessionBackend, *, max_sessions: int = MAX_SESSIONS_PER_USER) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.backend = backend
        self.max_sessions = max_sessions

    def _evict_and_insert(self, session: Session) -> Session:
        self.backend.lock_user_sessions(session.user_id)
        count = self.backend.count_refresh_tokens(session.user_id)
        if count >= self.max_sessions:
            overflow = count - self.max_sessions + 1
            oldest = self.backend.list_refresh_tokens(session.user_id)[:overflow]
            removed = self.backend.delete_refresh_tokens(s.id for s in oldest)
            logger.info(
                "session_evicted",
                user_id=session.user_id,
                evicted=removed,
                live_before=count,
            )
        return self.backend.create_refresh_token(session)

    def create(
        self,
        user_id: str,
        token: str,
        ttl: timedelta,
        meta: Optional[RequestMetadata] = None,
    ) -> Session:
        meta = meta or RequestMetadata()
        session = Session.new(
            user_id, token, ttl, user_agent=meta.user_agent, ip_address=meta.ip_address
        )
        with self.backend.transaction():
            return self._evict_and_insert(session)

    def rotate(
        self,
        old_session: Session,
        new_token: str,
        ttl: timedelta,
        meta: Optional[RequestMetadata] = None,
    ) -> Session:
        """Replace ``old_session`` with a new one in a single transaction.

        Only one caller can delete the old row; every other concurrent
        rotation of the same session fails with AuthenticationError.
        """
        meta = meta or RequestMetadata()
        replacement = Session.new(
            old_session.user_id,
            new_token,
            ttl,
            user_agent=meta.user_agent,
            ip_address=meta.ip_address,
        )
        with self.backend.transaction():
            self.backend.lock_user_sessions(old_session.user_id)
            if not self.backend.delete_refresh_token(old_session.id):
                logger.warning(
                    "session_rotation_lost", user_id=old_session.user_id, session_id=old_session.id
                )
                raise AuthenticationError("invalid refresh token")
            return self._evict_and_insert(replacement)

    def find_by_token(self, token: str) -> Optional[Session]:
        if not token:
            return None
        session = self.backend.get_refresh_token(token)
        if session is None:
            return None
        if self.is_expired(session):
            self.backend.delete_refresh_token(session.id)
            logger.info("session_expired_removed", user_id=session.user_id, session_id=session.id)
            return None
        return session

    def delete_by_token(self, token: str) -> bool:
        session = self.backend.get_refresh_token(token) if token else None
        if session is None:
            return False
        return self.backend.delete_refresh_token(session.id)

    def delete_all_for_user(self, user_id: str) -> int:
        return self.backend.delete_user_refresh_tokens(user_id)

    def is_expired(self, session: Session) -> bool:
        return is_expired(session.expires_at)

    def purge_expired(self) -> int:
        removed = self.backend.delete_expired_refresh_tokens(utcnow())
        if removed:
            logger.info("expired_sessions_purged", removed=removed)
        return removed
