"""
API request and response models for tokenward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PasswordlessLogin, RefreshToken, TokenPair, UserProfile

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password policy (upper, lower, digit) is enforced in auth/passwords.py so
    the CLI and the API apply the same rules; only length bounds live here.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=72)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=72)


class EmailRequest(BaseModel):
    """Request body for the magic-link and OTP request endpoints."""

    email: str = Field(min_length=1, max_length=320)


class MagicLinkVerifyRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class OtpVerifyRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    # A string, never an int: "045123" must keep its leading zero.
    code: str = Field(min_length=1, max_length=12)


class RefreshRequest(BaseModel):
    """Optional body for refresh and logout. Browsers send the cookie instead."""

    refresh_token: Optional[str] = Field(default=None, max_length=256)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """User projection. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            role=profile.role,
            email_verified=profile.email_verified,
            first_name=profile.first_name,
            last_name=profile.last_name,
        )


class TokenResponse(BaseModel):
    """Token pair, also set as httpOnly cookies for browser clients."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in)


class AuthResponse(BaseModel):
    """Response for every endpoint that signs the user in."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tokens: TokenResponse
    is_new_user: bool = False

    @classmethod
    def from_login(cls, login: PasswordlessLogin) -> "AuthResponse":
        return cls(
            user=UserResponse.from_profile(login.user),
            tokens=TokenResponse.from_pair(login.tokens),
            is_new_user=login.is_new_user,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class SessionResponse(BaseModel):
    """One active refresh token, as shown on GET /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_record(cls, record: RefreshToken) -> "SessionResponse":
        return cls(
            id=record.id,
            device_info=record.device_info,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses.

    security_alert is set only when refresh-token reuse was detected and every
    session of the user has been revoked.
    """

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail
    security_alert: Optional[bool] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = {}
