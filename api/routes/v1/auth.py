"""
api/routes/v1/auth.py -- Telegram login, session and device-transfer endpoints.

Routes:
  POST /api/v1/auth/telegram/webapp     -- verify initData; sets session cookie
  GET  /api/v1/auth/session             -- current user (401 if none)
  POST /api/v1/auth/logout              -- revoke current session; clears cookie
  POST /api/v1/auth/transfer/create     -- mint a one-time link (requires auth)
  POST /api/v1/auth/transfer/consume    -- spend a link; sets session cookie

Security:
  Every rejection returns a generic message. The error code names the
  category only (signature_invalid, auth_date_expired, invalid_init_data,
  invalid_token, token_expired_or_used, rate_limited); which prior state
  caused a token rejection is logged, not returned.
  Rate limits use the injected app.state.rate_limiter with content-derived
  keys:
      webapp:<ip>
      transfer:create:ip:<ip>, transfer:create:<user_id>
      transfer:consume:ip:<ip>, transfer:consume:token:<token hash>
  Cache-Control: no-store on every response that carries or mints a credential.
  A storage outage during consume surfaces as 503 and is never retried
  server-side; the client must start over with a fresh link.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    CurrentUserResponse,
    LoginResponse,
    SessionExpiry,
    StatusResponse,
    TelegramWebAppLogin,
    TransferConsume,
    TransferConsumedResponse,
    TransferCreate,
    TransferCreatedResponse,
    UserResponse,
)
from auth.dependencies import (
    get_base_url,
    get_client_ip,
    get_current_user,
    get_request_meta,
    get_session_token,
    is_secure_request,
    resolve_session_user,
)
from auth.errors import AuthErrorCode, Rejected
from auth.login import PlatformLoginService
from auth.models import User
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager
from auth.tokens import clear_session_cookie, hash_token, set_session_cookie
from auth.transfer import TransferTokenService
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/telegram/webapp:   public -- this is the login
# - GET  /api/v1/auth/session:           soft auth (resolve_session_user), 401 if none
# - POST /api/v1/auth/logout:            public -- clearing a cookie needs no prior auth
# - POST /api/v1/auth/transfer/create:   requires auth (get_current_user)
# - POST /api/v1/auth/transfer/consume:  public -- the token is the credential
router = APIRouter()

_WINDOW_MS = 60_000

# (status, public code, public message) per internal rejection code.
_REJECTIONS: dict[AuthErrorCode, tuple[int, str, str]] = {
    AuthErrorCode.signature_invalid: (401, "signature_invalid", "Please sign in again."),
    AuthErrorCode.auth_date_expired: (401, "auth_date_expired", "Please sign in again."),
    AuthErrorCode.replay_detected: (400, "invalid_init_data", "Please sign in again."),
    AuthErrorCode.malformed_payload: (400, "invalid_init_data", "Please sign in again."),
    AuthErrorCode.rate_limited: (429, "rate_limited", "Too many requests. Try again in a minute."),
    AuthErrorCode.invalid_token: (400, "invalid_token", "This link has expired. Request a new one."),
    AuthErrorCode.token_expired_or_used: (410, "token_expired_or_used", "This link has expired. Request a new one."),
}


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _rejection(rejected: Rejected) -> JSONResponse:
    status, code, message = _REJECTIONS[rejected.code]
    resp = JSONResponse(status_code=status, content={"error": {"code": code, "message": message}})
    if status == 429:
        resp.headers["Retry-After"] = str(_WINDOW_MS // 1000)
    return _no_store(resp)


def _limited(request: Request, key: str, limit: int) -> bool:
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter.is_rate_limited(key, limit, _WINDOW_MS)


# ---------------------------------------------------------------------------
# Login / session
# ---------------------------------------------------------------------------


@router.post("/auth/telegram/webapp", response_model=LoginResponse)
def telegram_webapp_login(request: Request, body: TelegramWebAppLogin) -> JSONResponse:
    """Exchange signed Telegram initData for a session cookie.

    Check order (see auth/login.py): rate limit, signature, payload shape,
    auth_date freshness, replay against the user's last accepted auth_date.
    Nothing is written before all checks pass.
    """
    settings = get_settings()
    if not body.init_data:
        return _rejection(Rejected(AuthErrorCode.malformed_payload))
    if _limited(request, f"webapp:{get_client_ip(request)}", settings.rate_limit_webapp_per_min):
        return _rejection(Rejected(AuthErrorCode.rate_limited))

    login_service: PlatformLoginService = request.app.state.login_service
    result = login_service.login(body.init_data, get_request_meta(request))
    if isinstance(result, Rejected):
        return _rejection(result)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(result.user),
            session=SessionExpiry(expires_at=result.session.expires_at),
            is_new_user=result.is_new_user,
        ).model_dump(mode="json"),
    )
    set_session_cookie(
        resp,
        settings.session_cookie_name,
        result.session.raw_token,
        max_age=result.session.max_age,
        secure=is_secure_request(request),
    )
    return _no_store(resp)


@router.get("/auth/session", response_model=CurrentUserResponse)
def current_session(request: Request, response: Response) -> CurrentUserResponse:
    """Return the signed-in user, or 401.

    Uses resolve_session_user() so the local development bypass (DEBUG only)
    can sign in a localhost browser; the bypass cookie is written to
    `response`, which FastAPI merges into the returned model response.
    """
    user = resolve_session_user(request, response)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Please sign in again."},
        )
    response.headers["Cache-Control"] = "no-store"
    return CurrentUserResponse(user=UserResponse.from_user(user))


@router.post("/auth/logout", response_model=StatusResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie. Always 200."""
    sessions: SessionManager = request.app.state.session_manager
    sessions.revoke(get_session_token(request))
    resp = JSONResponse(content=StatusResponse().model_dump())
    clear_session_cookie(resp, get_settings().session_cookie_name, secure=is_secure_request(request))
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Cross-device transfer
# ---------------------------------------------------------------------------


@router.post("/auth/transfer/create", response_model=TransferCreatedResponse)
def create_transfer(
    request: Request,
    body: TransferCreate | None = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Mint a single-use link that signs the same user in on another device.

    The requested TTL (or the configured default) is clamped into
    [TRANSFER_TOKEN_MIN_TTL_SEC, TRANSFER_TOKEN_MAX_TTL_SEC].
    """
    settings = get_settings()
    ip = get_client_ip(request)
    if _limited(request, f"transfer:create:ip:{ip}", settings.rate_limit_transfer_create_ip_per_min):
        return _rejection(Rejected(AuthErrorCode.rate_limited))
    if _limited(request, f"transfer:create:{current_user.id}", settings.rate_limit_transfer_create_per_min):
        return _rejection(Rejected(AuthErrorCode.rate_limited))

    transfers: TransferTokenService = request.app.state.transfer_service
    minted = transfers.mint(
        current_user.id,
        get_request_meta(request),
        ttl_seconds=body.ttl_seconds if body is not None else None,
    )
    url = f"{get_base_url(request)}/transfer?t={minted.raw_token}"
    resp = JSONResponse(content=TransferCreatedResponse(url=url, expires_in=minted.ttl_seconds).model_dump())
    return _no_store(resp)


@router.post("/auth/transfer/consume", response_model=TransferConsumedResponse)
def consume_transfer(request: Request, body: TransferConsume) -> JSONResponse:
    """Spend a transfer token and sign this device in as its owner.

    At most one request per token can succeed; concurrent and later attempts
    get 410 token_expired_or_used.
    """
    settings = get_settings()
    if not body.token:
        return _rejection(Rejected(AuthErrorCode.invalid_token))

    ip = get_client_ip(request)
    if _limited(request, f"transfer:consume:ip:{ip}", settings.rate_limit_transfer_consume_ip_per_min):
        return _rejection(Rejected(AuthErrorCode.rate_limited))
    token_key = f"transfer:consume:token:{hash_token(body.token)}"
    if _limited(request, token_key, settings.rate_limit_transfer_consume_token_per_min):
        return _rejection(Rejected(AuthErrorCode.rate_limited))

    transfers: TransferTokenService = request.app.state.transfer_service
    result = transfers.consume(body.token)
    if isinstance(result, Rejected):
        return _rejection(result)

    sessions: SessionManager = request.app.state.session_manager
    issued = sessions.issue(result.user_id, get_request_meta(request))
    resp = JSONResponse(
        content=TransferConsumedResponse(
            redirect_url=settings.transfer_redirect_url,
            session=SessionExpiry(expires_at=issued.expires_at),
        ).model_dump(mode="json"),
    )
    set_session_cookie(
        resp,
        settings.session_cookie_name,
        issued.raw_token,
        max_age=issued.max_age,
        secure=is_secure_request(request),
    )
    return _no_store(resp)
