"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register              -- create account; sends verification link
  POST /api/v1/auth/login                 -- password login; sets JWT cookie
  POST /api/v1/auth/logout                -- clears cookie; 200
  GET  /api/v1/auth/verify-email?token=   -- consume a verification token
  POST /api/v1/auth/resend-verification   -- issue a fresh verification token
  POST /api/v1/auth/forgot-password       -- issue a reset token (generic reply)
  POST /api/v1/auth/reset-password        -- consume a reset token, set password
  GET  /api/v1/auth/me                    -- claims of the caller's session (requires auth)
  GET  /api/v1/auth/admin/users/{id}      -- public user record (admin only)

Handlers are thin: they call AuthenticationService and map its result onto a
response model. CredentialErrors are not caught here -- api/main.py turns
them into the uniform error envelope with the right status code.

Handlers that hash (register, login, reset-password) are plain `def` so
FastAPI runs them in its thread pool; bcrypt itself runs on the hasher's own
executor, bounded by the per-request Deadline.

Security:
  [C1] login/forgot-password never reveal whether an email has an account.
  [M5] Cache-Control: no-store on responses that carry credentials.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    UserResponse,
)
from auth.dependencies import get_current_claims, get_service, request_deadline, require_role
from auth.models import PublicUser, SessionClaims
from auth.service import AuthenticationService
from core.deadline import Deadline

# Auth policy:
# - POST /auth/register, /auth/login, /auth/logout:          public
# - GET  /auth/verify-email, POST /auth/resend-verification: public (token/email is the credential)
# - POST /auth/forgot-password, /auth/reset-password:        public
# - GET  /auth/me:                                            requires session (get_current_claims)
# - GET  /auth/admin/users/{id}:                              requires admin (require_role("admin"))
router = APIRouter()


# ---------------------------------------------------------------------------
# Registration / session
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    body: RegisterRequest,
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> JSONResponse:
    """Create an unverified account and email its verification link."""
    registration = service.register(body.email, body.password, body.role.value, deadline=deadline)
    resp = JSONResponse(
        status_code=201,
        content=RegisterResponse(
            message="User registered successfully. Please check your email for verification.",
            user=_user_to_response(registration.user),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    body: LoginRequest,
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> JSONResponse:
    """Authenticate with email and password; return and set the session token.

    Wrong email and wrong password produce the same 401 "invalid_credentials".
    A correct password on an unverified account produces 403
    "account_not_verified".
    """
    result = service.login(body.email, body.password, deadline=deadline)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            user=_user_to_response(result.user),
        ).model_dump(),
    )
    _set_auth_cookie(resp, result.access_token, result.expires_in, request.app.state.settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie. Issued tokens stay valid until they expire."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: SessionClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity asserted by the caller's session token."""
    return MeResponse(
        user_id=claims.user_id,
        email=claims.email,
        role=claims.role,
        issued_at=claims.issued_at.isoformat(),
        expires_at=claims.expires_at.isoformat(),
    )


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    token: str = Query(min_length=1, max_length=128),
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> MessageResponse:
    """Consume a verification token. A second use of the same token is 400 invalid_token."""
    service.verify_email(token, deadline=deadline)
    return MessageResponse(message="Email verified successfully. You can now log in.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(
    body: EmailRequest,
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> MessageResponse:
    """Replace the outstanding verification token and email the new link."""
    service.resend_verification(body.email, deadline=deadline)
    return MessageResponse(message="Verification email resent successfully.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    body: EmailRequest,
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> MessageResponse:
    """Always 200 with the same message, whether or not the email exists [C1]."""
    return MessageResponse(message=service.request_password_reset(body.email, deadline=deadline))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    body: ResetPasswordRequest,
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> MessageResponse:
    """Consume a reset token and set the new password."""
    service.reset_password(body.token, body.password, deadline=deadline)
    return MessageResponse(
        message="Password has been reset successfully. You can now log in with your new password."
    )


# ---------------------------------------------------------------------------
# User lookup (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/admin/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: int,
    claims: SessionClaims = Depends(require_role("admin")),
    service: AuthenticationService = Depends(get_service),
    deadline: Deadline = Depends(request_deadline),
) -> UserResponse:
    """Return the public record of any user. Admin only."""
    return _user_to_response(service.get_user(user_id, deadline=deadline))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: PublicUser) -> UserResponse:
    return UserResponse(id=user.id, email=user.email, role=user.role)


def _set_auth_cookie(response, token: str, max_age: int, secure: bool) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )
