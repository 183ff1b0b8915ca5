"""
API request and response models for the Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import ChallengePurpose, Role, Session, User

# ---------------------------------------------------------------------------
# Enums
#
# Roles and code purposes are the domain enums from auth.models; only the
# narrower verify-endpoint choice is defined here, from the same values.
# ---------------------------------------------------------------------------


class VerifyPurposeEnum(str, Enum):
    """Purposes that end in a session. Password reset has its own endpoint."""

    sign_in = ChallengePurpose.sign_in.value
    email_verification = ChallengePurpose.email_verification.value


# ---------------------------------------------------------------------------
# Request models -- auth
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-up."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., max_length=100)
    image: Optional[str] = Field(None, max_length=2048)


class PasswordSignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in/password."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class OtpSendRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp/send."""

    email: EmailStr
    purpose: ChallengePurpose = ChallengePurpose.sign_in


class OtpVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    code: str = Field(..., min_length=1, max_length=16)
    purpose: VerifyPurposeEnum = VerifyPurposeEnum.sign_in


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp/reset-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    code: str = Field(..., min_length=1, max_length=16)
    new_password: str = Field(..., min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Request models -- admin
# ---------------------------------------------------------------------------


class AdminUserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users.

    password may be omitted for users who will sign in through OAuth or a
    one-time code.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(..., max_length=100)
    password: Optional[str] = Field(None, min_length=8, max_length=128)
    role: Role = Role.user


class SetRoleRequest(BaseModel):
    role: Role


class BanRequest(BaseModel):
    """Request body for POST /api/v1/admin/users/{id}/ban.

    Omitting expires_in_seconds bans permanently; omitting reason uses the
    configured default reason.
    """

    reason: Optional[str] = Field(None, max_length=500)
    expires_in_seconds: Optional[int] = Field(None, gt=0)


class PermissionCheckRequest(BaseModel):
    resource: str = Field(..., min_length=1, max_length=64)
    action: str = Field(..., min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    image: Optional[str] = None
    role: str
    email_verified: bool
    banned: bool
    ban_reason: Optional[str] = None
    ban_expires: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            role=user.role.value,
            email_verified=user.email_verified,
            banned=user.banned,
            ban_reason=user.ban_reason,
            ban_expires=user.ban_expires,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    impersonated_by: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            expires_at=session.expires_at,
            created_at=session.created_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            impersonated_by=session.impersonated_by,
        )


class SignInResponse(BaseModel):
    """Returned by every endpoint that opens a session.

    The token is also set as the session_token cookie.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime
    user: UserResponse
    is_new_user: bool = False


class SessionInfoResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    model_config = ConfigDict(frozen=True)

    session: SessionResponse
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class StopImpersonatingResponse(BaseModel):
    """admin_session_restored is true when the admin cookie was swapped back in."""

    model_config = ConfigDict(frozen=True)

    admin_id: str
    admin_session_restored: bool = False


class RevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider, for rendering sign-in buttons."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


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
    """Response for GET /api/v1/health.

    status is "healthy" when every component reports "ok", else "degraded".
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
