"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session is carried in a single httpOnly cookie (name from
SESSION_COOKIE_NAME). There is no bearer-header or API-key path: the client
is a Telegram Mini App or the browser it handed off to.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

The request helpers here (client IP, local/secure detection) live next to the
cookie logic because the cookie's Secure flag depends on them.

Layer rule: no imports from web/. auth/dependencies.py may import from
fastapi and core.config because it is part of the FastAPI dependency
injection system.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import HTTPException, Request, Response

from auth.models import RequestMeta, User
from auth.sessions import SessionManager
from auth.tokens import set_session_cookie
from core.config import get_settings

logger = logging.getLogger("tutorauth.auth")


# ---------------------------------------------------------------------------
# Request inspection
# ---------------------------------------------------------------------------


def _first_header_value(request: Request, name: str) -> str:
    return request.headers.get(name, "").split(",")[0].strip()


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop if present, else the socket peer address."""
    forwarded = _first_header_value(request, "x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else ""


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip=get_client_ip(request) or None,
        user_agent=request.headers.get("user-agent") or None,
    )


_LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})


def _request_host(request: Request) -> str:
    return _first_header_value(request, "x-forwarded-host") or request.headers.get("host", "")


def _hostname(host: str) -> str:
    """Strip the port (and IPv6 brackets) from a Host header value."""
    host = host.strip().lower()
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


def is_local_request(request: Request) -> bool:
    """True when the request targets localhost, 127.0.0.1 or ::1 (local development)."""
    return _hostname(_request_host(request)) in _LOCAL_HOSTNAMES



def is_secure_request(request: Request) -> bool:
    """Whether the session cookie should carry the Secure flag.

    Local development over plain http is the only exception. Behind a proxy,
    X-Forwarded-Proto decides; otherwise assume https.
    """
    if is_local_request(request):
        return False
    forwarded_proto = _first_header_value(request, "x-forwarded-proto")
    if forwarded_proto:
        return forwarded_proto == "https"
    return True


def get_base_url(request: Request) -> str:
    """Public origin for links handed to the user (no trailing slash)."""
    configured = get_settings().app_base_url
    if configured:
        return configured.rstrip("/")
    host = _request_host(request) or request.url.netloc
    if is_local_request(request):
        scheme = "http"
    else:
        scheme = _first_header_value(request, "x-forwarded-proto") or "https"
    return f"{scheme}://{host}"


# ---------------------------------------------------------------------------
# Session resolution
# ---------------------------------------------------------------------------


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(get_settings().session_cookie_name) or None


def try_get_current_user(request: Request) -> User | None:
    """Resolve the session cookie to a User. Returns None on any failure.

    Never raises for an invalid session -- callers that need a hard 401 should
    use get_current_user(). StorageUnavailable does propagate: an outage is
    not the same as being signed out.
    """
    sessions: SessionManager = request.app.state.session_manager
    return sessions.resolve(get_session_token(request))


def resolve_session_user(request: Request, response: Response) -> User | None:
    """try_get_current_user() plus the local development bypass.

    With LOCAL_AUTH_BYPASS=true (only accepted in DEBUG mode) a request to
    localhost without a valid session is signed in as the configured local
    user, and a session cookie is written to the response.
    """
    user = try_get_current_user(request)
    if user is not None:
        return user
    settings = get_settings()
    if not settings.local_auth_bypass or not is_local_request(request):
        return None

    local_user = request.app.state.auth_store.ensure_user(
        User(
            telegram_user_id=settings.local_dev_telegram_id,
            username=settings.local_dev_username,
            first_name=settings.local_dev_first_name,
            last_name=settings.local_dev_last_name,
        ),
        datetime.now(timezone.utc),
    )
    sessions: SessionManager = request.app.state.session_manager
    issued = sessions.issue(local_user.id, get_request_meta(request))
    set_session_cookie(
        response,
        settings.session_cookie_name,
        issued.raw_token,
        max_age=issued.max_age,
        secure=is_secure_request(request),
    )
    logger.warning("Local auth bypass: signed in local user %s", local_user.id)
    return local_user


def get_current_user(request: Request) -> User:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Please sign in again."},
        )
    return user
