"""
auth/sessions.py -- Server-side session lifecycle.

SessionManager issues opaque bearer tokens, resolves them back to users and
revokes them. The raw token leaves this module once (in IssuedSession, for
the cookie) and is never stored; everything persistent is keyed by
hash_token(raw).

resolve() deliberately collapses "absent", "unknown", "expired" and
"revoked" into a single None so the caller cannot tell them apart.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.errors import StorageUnavailable
from auth.models import RequestMeta, Session, User
from auth.store import AuthStore, to_iso
from auth.tokens import hash_token, random_token

logger = logging.getLogger("tutorauth.sessions")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedSession:
    raw_token: str
    expires_at: datetime
    max_age: int  # seconds, for the cookie


@dataclass(frozen=True)
class SessionInfo:
    id: int
    created_at: str
    expires_at: str
    ip: str | None
    user_agent: str | None
    is_current: bool


class SessionManager:
    """Issue, resolve, list and revoke sessions.

    Args:
        store:       AuthStore used for all persistence.
        ttl_minutes: Session lifetime applied at issuance.
        clock:       Returns the current aware UTC datetime. Injected so
                     expiry boundaries can be tested exactly.
        read_retries: Extra attempts for resolve() after StorageUnavailable.
                     Only reads are retried.
    """

    def __init__(
        self,
        store: AuthStore,
        ttl_minutes: int,
        clock: Callable[[], datetime] = utc_now,
        read_retries: int = 1,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.clock = clock
        self.read_retries = read_retries

    def issue(self, user_id: int, meta: RequestMeta) -> IssuedSession:
        """Create a session for user_id and return the raw token for the cookie."""
        now = self.clock()
        raw_token = random_token(32)
        expires_at = now + timedelta(minutes=self.ttl_minutes)
        session_id = self.store.create_session(
            Session(
                user_id=user_id,
                token_hash=hash_token(raw_token),
                expires_at=to_iso(expires_at),
                ip=meta.ip or None,
                user_agent=meta.user_agent or None,
            ),
            now,
        )
        logger.info("Session issued (user_id=%s session_id=%s)", user_id, session_id)
        return IssuedSession(raw_token=raw_token, expires_at=expires_at, max_age=self.ttl_minutes * 60)

    def resolve(self, raw_token: str | None) -> User | None:
        """Return the user owning a valid session for raw_token, else None."""
        if not raw_token:
            return None
        token_hash = hash_token(raw_token)
        attempts = self.read_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.store.get_active_session_user(token_hash, self.clock())
            except StorageUnavailable:
                if attempt == attempts:
                    raise
                logger.warning("Session lookup failed, retrying (attempt %d/%d)", attempt, attempts)
        return None

    def revoke(self, raw_token: str | None) -> None:
        """Revoke the session behind raw_token. No-op for unknown or already revoked tokens."""
        if not raw_token:
            return
        revoked = self.store.revoke_session_by_hash(hash_token(raw_token), self.clock())
        if revoked:
            logger.info("Session revoked")

    def revoke_all(self, user_id: int, except_raw_token: str | None = None) -> int:
        """Revoke every live session of user_id except the one behind except_raw_token."""
        except_hash = hash_token(except_raw_token) if except_raw_token else None
        count = self.store.revoke_user_sessions(user_id, self.clock(), except_token_hash=except_hash)
        logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
        return count

    def revoke_by_id(self, user_id: int, session_id: int) -> bool:
        """Revoke one of the user's own sessions by id. False if not found or not owned."""
        return self.store.revoke_session_by_id(session_id, user_id, self.clock())

    def list_active(self, user_id: int, current_raw_token: str | None = None) -> list[SessionInfo]:
        """List the user's live sessions, newest first, flagging the caller's own."""
        current_hash = hash_token(current_raw_token) if current_raw_token else None
        return [
            SessionInfo(
                id=s.id,
                created_at=s.created_at,
                expires_at=s.expires_at,
                ip=s.ip,
                user_agent=s.user_agent,
                is_current=current_hash is not None and s.token_hash == current_hash,
            )
            for s in self.store.list_active_sessions(user_id, self.clock())
        ]
