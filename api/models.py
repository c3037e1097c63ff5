"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TelegramWebAppLogin(BaseModel):
    """Request body for POST /api/v1/auth/telegram/webapp.

    initData is the raw query string Telegram hands the Mini App
    (window.Telegram.WebApp.initData), forwarded untouched. Empty is allowed
    here so the route can answer with the domain error code instead of 422.
    """

    model_config = ConfigDict(populate_by_name=True)

    init_data: str = Field(default="", alias="initData", max_length=8192)


class TransferCreate(BaseModel):
    """Optional body for POST /api/v1/auth/transfer/create."""

    ttl_seconds: Optional[int] = Field(default=None, ge=1)


class TransferConsume(BaseModel):
    """Request body for POST /api/v1/auth/transfer/consume."""

    token: str = Field(default="", max_length=512)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public user profile. telegram_user_id is serialized as a plain int."""

    id: int
    telegram_user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    photo_url: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            telegram_user_id=user.telegram_user_id,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            photo_url=user.photo_url,
        )


class SessionExpiry(BaseModel):
    expires_at: datetime


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/telegram/webapp."""

    user: UserResponse
    session: SessionExpiry
    is_new_user: bool


class CurrentUserResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    user: UserResponse


class TransferCreatedResponse(BaseModel):
    """Response for POST /api/v1/auth/transfer/create.

    url carries the raw token. It is shown once and never stored.
    """

    url: str
    expires_in: int


class TransferConsumedResponse(BaseModel):
    """Response for POST /api/v1/auth/transfer/consume."""

    redirect_url: str
    session: SessionExpiry


class StatusResponse(BaseModel):
    status: str = "ok"


class SessionRow(BaseModel):
    """One row of GET /api/v1/sessions."""

    id: int
    created_at: str
    expires_at: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_current: bool


class SessionListResponse(BaseModel):
    sessions: list[SessionRow]


class SessionRevokedResponse(BaseModel):
    status: str = "ok"
    session_id: int


class SessionsRevokedResponse(BaseModel):
    status: str = "ok"
    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
