"""
API request and response models for LibraryAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
UserResponse deliberately has no password_hash field.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuthSession, User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    staff = "staff"


class ThemeEnum(str, Enum):
    light = "light"
    dark = "dark"
    system = "system"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only a minimal shape check on email ("something@something"); the stored
    value is normalized by the auth layer. Password policy (length) is
    enforced by SessionManager so it surfaces as weak_password, not as a
    generic validation error.

    Passwords are taken verbatim; only email and display_name are trimmed.
    """

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email", "display_name", mode="before")
    @classmethod
    def strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. The password is not trimmed."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh and POST /auth/logout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=255)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/profile.

    display_name alone renames; new_password requires current_password.
    """

    display_name: Optional[str] = Field(default=None, max_length=255)
    current_password: Optional[str] = Field(default=None, max_length=255)
    new_password: Optional[str] = Field(default=None, max_length=255)


class ThemeUpdate(BaseModel):
    theme: ThemeEnum


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id} (admin only).

    Only fields present in the JSON body are applied (model_fields_set), so
    {"branch_id": null} clears the branch while omitting it leaves it alone.
    """

    role: Optional[RoleEnum] = None
    branch_id: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("role", "is_active")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user record."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    branch_id: Optional[int]
    display_name: Optional[str]
    theme_preference: str
    is_active: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method: the domain -> transport mapping lives with the model."""
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            branch_id=user.branch_id,
            display_name=user.display_name,
            theme_preference=user.theme_preference,
            is_active=user.is_active,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class UserEnvelope(BaseModel):
    """{"user": {...}} -- returned by the profile and admin user routes."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse


class SessionResponse(BaseModel):
    """Returned by register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    access_expires_at: str
    refresh_token: str
    refresh_expires_at: str

    @classmethod
    def from_session(cls, session: AuthSession) -> "SessionResponse":
        return cls(
            user=UserResponse.from_user(session.user),
            access_token=session.access_token,
            access_expires_at=session.access_expires_at,
            refresh_token=session.refresh_token,
            refresh_expires_at=session.refresh_expires_at,
        )


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
