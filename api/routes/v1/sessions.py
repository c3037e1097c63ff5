"""
api/routes/v1/sessions.py -- "Where am I signed in" endpoints.

Routes:
  GET  /api/v1/sessions                    -- list live sessions of the current user
  POST /api/v1/sessions/revoke-others      -- revoke all but the caller's session
  POST /api/v1/sessions/{session_id}/revoke -- revoke one owned session

Security:
  IDOR guard: revoke-by-id passes the current user's id to the store; the
  store checks ownership and a foreign id looks exactly like a missing one
  (404).
  Rate-limited per IP with the shared slowapi limiter (RATE_LIMIT_SESSIONS).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import SessionListResponse, SessionRevokedResponse, SessionRow, SessionsRevokedResponse
from auth.dependencies import get_current_user, get_session_token
from auth.models import User
from auth.sessions import SessionManager
from core.config import get_settings

router = APIRouter()

_SESSIONS_LIMIT = get_settings().rate_limit_sessions


@limiter.limit(_SESSIONS_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionListResponse:
    """List the caller's unrevoked, unexpired sessions, newest first."""
    sessions: SessionManager = request.app.state.session_manager
    rows = sessions.list_active(current_user.id, get_session_token(request))
    return SessionListResponse(
        sessions=[
            SessionRow(
                id=s.id,
                created_at=s.created_at,
                expires_at=s.expires_at,
                ip=s.ip,
                user_agent=s.user_agent,
                is_current=s.is_current,
            )
            for s in rows
        ]
    )


@limiter.limit(_SESSIONS_LIMIT)
@router.post("/sessions/revoke-others", response_model=SessionsRevokedResponse)
def revoke_other_sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionsRevokedResponse:
    """Sign out everywhere except this device."""
    sessions: SessionManager = request.app.state.session_manager
    count = sessions.revoke_all(current_user.id, except_raw_token=get_session_token(request))
    return SessionsRevokedResponse(revoked=count)


@limiter.limit(_SESSIONS_LIMIT)
@router.post("/sessions/{session_id}/revoke", response_model=SessionRevokedResponse)
def revoke_session(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> SessionRevokedResponse:
    """Revoke one of the caller's sessions. 404 if it does not exist or is not theirs."""
    sessions: SessionManager = request.app.state.session_manager
    if not sessions.revoke_by_id(current_user.id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return SessionRevokedResponse(session_id=session_id)
