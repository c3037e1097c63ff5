"""
auth/signature.py -- Verification of Telegram Mini App initData.

The platform signs the login payload with a key derived from the bot token:

    secret_key = HMAC_SHA256(key="WebAppData", msg=bot_token)           (raw)
    check      = "\\n".join(f"{k}={v}" for k, v in sorted(fields))      (no hash)
    expected   = hex(HMAC_SHA256(key=secret_key, msg=check))

and appends the result as the `hash` field. Any deviation here (key order,
joiner, compare, empty secret) is a full authentication bypass, so the steps
below follow the platform reference exactly and are pinned by fixed vectors in
tests/test_signature.py.

Freshness (auth_date) and replay checks are NOT done here; see auth/login.py.

Boundary rule: the untyped field map never leaves this module except inside
VerifiedInitData. parse_identity() turns it into a typed PlatformIdentity,
and nothing downstream reads raw fields.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode

from pydantic import BaseModel, ConfigDict, ValidationError

from auth.errors import AuthErrorCode, Rejected
from auth.tokens import constant_time_equal

_WEB_APP_DATA_KEY = b"WebAppData"
_HASH_FIELD = "hash"


@dataclass(frozen=True)
class VerifiedInitData:
    """initData whose signature checked out. Fields exclude `hash`."""

    fields: dict[str, str]


class TelegramUser(BaseModel):
    """The `user` JSON object embedded in initData."""

    model_config = ConfigDict(extra="ignore")

    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    photo_url: str | None = None


@dataclass(frozen=True)
class PlatformIdentity:
    """Typed view of a verified assertion: who, and when the platform signed it."""

    user: TelegramUser
    auth_date: int


# ---------------------------------------------------------------------------
# Signing primitives
# ---------------------------------------------------------------------------


def _data_check_string(pairs: list[tuple[str, str]]) -> str:
    # Stable sort on the key only: ordinal comparison, duplicates keep input order.
    ordered = sorted(pairs, key=lambda kv: kv[0])
    return "\n".join(f"{key}={value}" for key, value in ordered)


def _expected_hash(check_string: str, bot_token: str) -> str:
    secret_key = hmac.new(_WEB_APP_DATA_KEY, bot_token.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(secret_key, check_string.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_init_data(fields: Mapping[str, str], bot_token: str) -> str:
    """Return a URL-encoded initData string signed with bot_token.

    Mirrors what the platform produces. Used by tests and the `sign` CLI
    command to build local login payloads.
    """
    pairs = [(k, str(v)) for k, v in fields.items() if k != _HASH_FIELD]
    digest = _expected_hash(_data_check_string(pairs), bot_token)
    return urlencode([*pairs, (_HASH_FIELD, digest)])


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_init_data(raw: str, bot_token: str) -> VerifiedInitData | Rejected:
    """Check the platform signature on raw initData.

    Returns VerifiedInitData on success, Rejected(signature_invalid) on any
    failure. Fails closed when bot_token is empty so a misconfigured
    deployment can never accept an unsigned payload.
    """
    if not bot_token:
        return Rejected(AuthErrorCode.signature_invalid)

    pairs = parse_qsl(raw, keep_blank_values=True)
    supplied_hex = next((value for key, value in pairs if key == _HASH_FIELD), None)
    if not supplied_hex:
        return Rejected(AuthErrorCode.signature_invalid)
    pairs = [(key, value) for key, value in pairs if key != _HASH_FIELD]

    expected = bytes.fromhex(_expected_hash(_data_check_string(pairs), bot_token))
    try:
        supplied = bytes.fromhex(supplied_hex)
    except ValueError:
        return Rejected(AuthErrorCode.signature_invalid)

    # Length check first: the comparator only ever sees equal-length inputs.
    if len(supplied) != len(expected):
        return Rejected(AuthErrorCode.signature_invalid)
    if not constant_time_equal(expected, supplied):
        return Rejected(AuthErrorCode.signature_invalid)

    return VerifiedInitData(fields=dict(pairs))


def parse_identity(verified: VerifiedInitData) -> PlatformIdentity | Rejected:
    """Coerce verified fields into a PlatformIdentity.

    Missing or non-integer auth_date, a missing user field, invalid JSON, or a
    user object without an integer id all yield Rejected(malformed_payload).
    """
    raw_auth_date = verified.fields.get("auth_date", "")
    raw_user = verified.fields.get("user", "")
    if not raw_user:
        return Rejected(AuthErrorCode.malformed_payload)
    try:
        auth_date = int(raw_auth_date)
    except ValueError:
        return Rejected(AuthErrorCode.malformed_payload)
    try:
        user = TelegramUser.model_validate(json.loads(raw_user))
    except (ValueError, ValidationError):
        return Rejected(AuthErrorCode.malformed_payload)
    if not user.id:
        return Rejected(AuthErrorCode.malformed_payload)
    return PlatformIdentity(user=user, auth_date=auth_date)
