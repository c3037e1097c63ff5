"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the domain shape. Timestamps are fixed-width ISO-8601
UTC strings, the same representation the store persists.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A Telegram identity known to the service.

    telegram_user_id is the platform's stable id and the upsert key.
    last_auth_date is the auth_date (epoch seconds) of the most recent
    accepted assertion; the platform only advances it on a genuine
    re-authentication, so an older assertion is treated as a replay.
    """

    telegram_user_id: int
    id: int | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    photo_url: str | None = None
    last_auth_date: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A server-side login.

    Valid iff revoked_at is None and expires_at > now. Rows are never deleted
    so the user can review where they are signed in. token_hash is
    SHA-256(raw_token); the raw value only ever lives in the client cookie.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    revoked_at: str | None = None
    ip: str | None = None
    user_agent: str | None = None


@dataclass
class TransferToken:
    """A single-use, short-lived credential for moving a login to another device.

    Consumable iff used_at is None and expires_at >= now. Once used_at is set
    the record is terminal; the purge job deletes spent rows later.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None
    created_ip: str | None = None
    created_user_agent: str | None = None


@dataclass(frozen=True)
class RequestMeta:
    """Audit metadata captured from the request that triggered a write."""

    ip: str | None = None
    user_agent: str | None = None
