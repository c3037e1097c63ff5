"""
auth/login.py -- Telegram Mini App login: signed assertion in, session out.

Order of checks (each short-circuits; nothing is written until all pass):
  1. signature        verify_init_data()         -> signature_invalid
  2. shape            parse_identity()           -> malformed_payload
  3. freshness        now - auth_date > ttl      -> auth_date_expired
                      auth_date > now + skew     -> auth_date_expired
  4. replay           auth_date + skew < user.last_auth_date -> replay_detected
Then, in order: upsert the user (profile refresh, last_auth_date advanced),
issue a session.

The replay rule relies on the platform only minting a newer auth_date on a
genuine re-authentication. skew absorbs clock jitter between the platform's
signing servers. A future auth_date beyond skew is refused, so
last_auth_date never runs more than skew ahead of the server clock.

Rate limiting happens before step 1, in the route, keyed by client IP.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import AuthErrorCode, Rejected
from auth.models import RequestMeta, User
from auth.sessions import IssuedSession, SessionManager
from auth.signature import parse_identity, verify_init_data
from auth.store import AuthStore

logger = logging.getLogger("tutorauth.login")


@dataclass(frozen=True)
class LoginResult:
    user: User
    session: IssuedSession
    is_new_user: bool


class PlatformLoginService:
    """Compose signature verification, freshness and replay checks, and session issue."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        bot_token: str,
        init_data_ttl_sec: int,
        replay_skew_sec: int,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.bot_token = bot_token
        self.init_data_ttl_sec = init_data_ttl_sec
        self.replay_skew_sec = replay_skew_sec

    def login(self, init_data: str, meta: RequestMeta) -> LoginResult | Rejected:
        verified = verify_init_data(init_data, self.bot_token)
        if isinstance(verified, Rejected):
            logger.info("Login rejected: %s", verified.code.value)
            return verified

        identity = parse_identity(verified)
        if isinstance(identity, Rejected):
            logger.info("Login rejected: %s", identity.code.value)
            return identity

        now = self.sessions.clock()
        now_sec = int(now.timestamp())
        if now_sec - identity.auth_date > self.init_data_ttl_sec:
            logger.info("Login rejected: auth_date_expired (age=%ds)", now_sec - identity.auth_date)
            return Rejected(AuthErrorCode.auth_date_expired)
        if identity.auth_date > now_sec + self.replay_skew_sec:
            logger.warning("Login rejected: auth_date_expired (ahead by %ds)", identity.auth_date - now_sec)
            return Rejected(AuthErrorCode.auth_date_expired)

        existing = self.store.get_user_by_telegram_id(identity.user.id)
        if existing is not None and existing.last_auth_date:
            if identity.auth_date + self.replay_skew_sec < existing.last_auth_date:
                logger.warning(
                    "Login rejected: replay_detected (user_id=%s auth_date=%d last=%d)",
                    existing.id,
                    identity.auth_date,
                    existing.last_auth_date,
                )
                return Rejected(AuthErrorCode.replay_detected)

        profile = User(
            telegram_user_id=identity.user.id,
            username=identity.user.username,
            first_name=identity.user.first_name,
            last_name=identity.user.last_name,
            photo_url=identity.user.photo_url,
        )
        user, is_new_user = self.store.upsert_platform_user(profile, identity.auth_date, now)
        session = self.sessions.issue(user.id, meta)
        logger.info("Telegram login ok (user_id=%s new=%s)", user.id, is_new_user)
        return LoginResult(user=user, session=session, is_new_user=is_new_user)
