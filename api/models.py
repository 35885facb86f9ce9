"""
API request and response models for the marketplace auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator

from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MIN_PASSWORD_LENGTH = 6

# Surrounding whitespace is dropped before the length check, so "   " is rejected.
DisplayName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]


def _check_password_bytes(value: str) -> str:
    """bcrypt reads at most 72 bytes; reject longer input instead of truncating."""
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserTypeEnum(str, Enum):
    buyer = "buyer"
    seller = "seller"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    name: DisplayName
    email: EmailStr
    password: str = Field(min_length=_MIN_PASSWORD_LENGTH)
    userType: UserTypeEnum = UserTypeEnum.buyer

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=255, description="Token from the password reset email.")
    password: str = Field(min_length=_MIN_PASSWORD_LENGTH)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthUserResponse(BaseModel):
    """Public view of an account. Built from AuthService.build_user_response()."""

    model_config = ConfigDict(frozen=True)

    email: str
    name: str
    userType: UserTypeEnum


class AuthResponse(BaseModel):
    """Body for register/login/me. The session id travels only in the cookie."""

    model_config = ConfigDict(frozen=True)

    user: AuthUserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class SellerProfileResponse(BaseModel):
    """Response for GET /api/v1/auth/seller-profile."""

    model_config = ConfigDict(frozen=True)

    store_name: str
    store_slug: str


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
    components: dict[str, str] = Field(default_factory=dict)
