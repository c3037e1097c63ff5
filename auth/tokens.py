"""
auth/tokens.py -- Opaque token primitives and the session cookie helper.

Security design decisions:
  Tokens: secrets.token_urlsafe(32) gives 256 bits of entropy from the OS
       CSPRNG. The raw value is handed to the client exactly once (cookie or
       transfer URL) and never persisted or logged.

  Hashing: the store keeps SHA-256(raw_token) as hex. Tokens are long random
       strings, so a fast deterministic hash is enough -- brute-forcing the
       preimage is infeasible, and determinism allows an O(1) lookup through
       the UNIQUE index on token_hash.

  Comparison: constant_time_equal() wraps hmac.compare_digest. Use it wherever
       an attacker-supplied value meets a secret-derived one.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

_TOKEN_BYTES = 32


def random_token(byte_length: int = _TOKEN_BYTES) -> str:
    """Return a URL-safe token built from byte_length CSPRNG bytes."""
    return secrets.token_urlsafe(byte_length)


def hash_token(token: str) -> str:
    """Return SHA-256(token) as a 64-char hex string (the storage key)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equal(a: bytes, b: bytes) -> bool:
    """Compare two byte strings without short-circuiting on the first mismatch."""
    return hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, name: str, token: str, max_age: int, secure: bool) -> None:
    """Write the raw session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level navigations but not on cross-site POST.
    secure: dropped only for plain-http local development requests.
    path="/": every API route sees the session.
    max_age: matches the session TTL so both expire together.
    """
    response.set_cookie(
        name,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )


def clear_session_cookie(response, name: str, secure: bool) -> None:
    """Expire the session cookie with the same attributes it was set with."""
    response.set_cookie(
        name,
        value="",
        max_age=0,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )
