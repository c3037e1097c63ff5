"""
auth/transfer.py -- One-time cross-device login tokens.

Flow:
  device A (signed in)  -> mint()    -> raw token embedded in a /transfer?t=... URL
  device B (anonymous)  -> consume() -> owner's user_id -> SessionManager.issue()

State machine per token:
  MINTED --consume wins--> CONSUMED   (terminal)
  MINTED --expires_at----> EXPIRED    (terminal)

consume() is the concurrency-critical path. It reads the row to classify the
obvious failures, then claims it with a conditional UPDATE (see
AuthStore.claim_transfer_token). Only the caller whose UPDATE matched a row
may go on to issue a session, so a token can be spent at most once no matter
how many devices race for it. The row stays in place marked used so later
attempts keep getting token_expired_or_used; purge_spent() removes it.

consume() is never retried. A StorageUnavailable during the claim leaves the
outcome unknown, and retrying the same token could double-spend it. The
caller surfaces a retryable error and the user mints a fresh link.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.errors import AuthErrorCode, Rejected
from auth.models import RequestMeta, TransferToken
from auth.sessions import utc_now
from auth.store import AuthStore, from_iso, to_iso
from auth.tokens import hash_token, random_token

logger = logging.getLogger("tutorauth.transfer")


def clamp(value: int, minimum: int, maximum: int) -> int:
    return min(max(value, minimum), maximum)


@dataclass(frozen=True)
class MintedTransferToken:
    raw_token: str
    expires_at: datetime
    ttl_seconds: int


@dataclass(frozen=True)
class ConsumedTransferToken:
    user_id: int


class TransferTokenService:
    """Mint and atomically consume single-use transfer tokens."""

    def __init__(
        self,
        store: AuthStore,
        default_ttl_seconds: int,
        min_ttl_seconds: int,
        max_ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.default_ttl_seconds = default_ttl_seconds
        self.min_ttl_seconds = min_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self.clock = clock

    def mint(self, user_id: int, meta: RequestMeta, ttl_seconds: int | None = None) -> MintedTransferToken:
        """Persist a new token for user_id and return the raw value once.

        ttl_seconds (or the configured default) is clamped into the
        [min, max] band so no caller can mint a long-lived hand-off credential.
        """
        requested = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        ttl = clamp(requested, self.min_ttl_seconds, self.max_ttl_seconds)
        now = self.clock()
        raw_token = random_token(32)
        expires_at = now + timedelta(seconds=ttl)
        self.store.create_transfer_token(
            TransferToken(
                user_id=user_id,
                token_hash=hash_token(raw_token),
                expires_at=to_iso(expires_at),
                created_ip=meta.ip or None,
                created_user_agent=meta.user_agent or None,
            ),
            now,
        )
        logger.info("Transfer token minted (user_id=%s ttl=%ds)", user_id, ttl)
        return MintedTransferToken(raw_token=raw_token, expires_at=expires_at, ttl_seconds=ttl)

    def consume(self, raw_token: str) -> ConsumedTransferToken | Rejected:
        """Spend raw_token. Exactly one concurrent caller per token can succeed.

        Returns ConsumedTransferToken(user_id) for the winner,
        Rejected(invalid_token) for an unknown hash, and
        Rejected(token_expired_or_used) for an expired, already used, or
        concurrently claimed token.
        """
        token_hash = hash_token(raw_token)
        record = self.store.get_transfer_token_by_hash(token_hash)
        if record is None:
            logger.info("Transfer consume rejected: unknown token (hash=%s...)", token_hash[:8])
            return Rejected(AuthErrorCode.invalid_token)

        now = self.clock()
        if record.used_at is not None or from_iso(record.expires_at) < now:
            logger.info("Transfer consume rejected: token spent or expired (id=%s)", record.id)
            return Rejected(AuthErrorCode.token_expired_or_used)

        if not self.store.claim_transfer_token(record.id, now):
            logger.info("Transfer consume lost race (id=%s)", record.id)
            return Rejected(AuthErrorCode.token_expired_or_used)

        logger.info("Transfer token consumed (id=%s user_id=%s)", record.id, record.user_id)
        return ConsumedTransferToken(user_id=record.user_id)

    def purge_spent(self) -> int:
        """Delete used and expired tokens. Returns the number removed."""
        removed = self.store.purge_spent_transfer_tokens(self.clock())
        if removed:
            logger.info("Purged %d spent transfer token(s)", removed)
        return removed
