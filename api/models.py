"""
API request and response models for KeyWarden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Pydantic only checks shape and bounds here (types, lengths, enum membership).
The credential rules -- password policy, email format, token validity -- are
enforced by AuthenticationService so every caller gets the same behaviour.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
No response model has a password hash or token-at-rest field.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# Emails are whitespace-stripped at the boundary; passwords never are --
# whitespace is a legitimate password character.
_Email = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
_Password = Annotated[str, StringConstraints(min_length=1, max_length=255)]

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    client = "client"
    sales_rep = "sales_rep"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: _Email
    password: _Password
    role: RoleEnum


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: _Email
    password: _Password


class EmailRequest(BaseModel):
    """Request body for POST /auth/forgot-password and /auth/resend-verification."""

    email: _Email


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    password: _Password


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public identity of a user."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register."""

    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- the claims of the caller's session token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    role: str
    issued_at: str
    expires_at: str


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
