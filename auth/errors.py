"""
auth/errors.py -- Outcome taxonomy for the auth core.

Expected failures (bad signature, stale assertion, spent transfer token) are
returned as values, not raised. Every fallible operation returns either its
success payload or a Rejected carrying exactly one AuthErrorCode, and callers
branch with isinstance(). Only infrastructure failures raise:
StorageUnavailable is the fatal channel for an unreachable or locked store.

The codes are internal categories. They are logged and mapped to a status
code at the HTTP layer, but the message shown to the caller stays generic so
the error surface does not become an oracle (invalid vs. expired vs. used).

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthErrorCode(str, Enum):
    signature_invalid = "signature_invalid"
    auth_date_expired = "auth_date_expired"
    replay_detected = "replay_detected"
    malformed_payload = "malformed_payload"
    rate_limited = "rate_limited"
    invalid_token = "invalid_token"
    token_expired_or_used = "token_expired_or_used"


@dataclass(frozen=True)
class Rejected:
    """Failure variant of every auth result type."""

    code: AuthErrorCode


class StorageUnavailable(Exception):
    """Raised when the auth store cannot complete an operation.

    Safe to retry only for pure reads. A write whose outcome is unknown (for
    example a timed-out transfer-token consume) must not be retried.
    """

    def __init__(self, message: str = "Auth store unavailable") -> None:
        super().__init__(message)
