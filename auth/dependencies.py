"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two places a session token can arrive, checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

get_current_claims() verifies the token with the app's TokenIssuer and maps
the three failure kinds onto 401 responses with distinct codes, so a client
can tell "session expired, log in again" from "token rejected".
require_role() wraps it and raises 403 when the role is not allowed.

get_service() / request_deadline() hand route handlers the wired
AuthenticationService and a per-request Deadline.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import SessionClaims
from auth.service import AuthenticationService
from core.deadline import Deadline
from core.errors import TokenError, TokenExpired


def get_service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def request_deadline(request: Request) -> Deadline:
    """A fresh Deadline per request, sized by Settings.request_timeout_seconds."""
    return Deadline.after(request.app.state.settings.request_timeout_seconds)


def _extract_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_claims(request: Request) -> SessionClaims:
    """Require a valid session token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: SessionClaims = Depends(get_current_claims)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    service: AuthenticationService = request.app.state.auth_service
    try:
        return service.issuer.verify(token)
    except TokenExpired as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": "Session expired. Log in again."},
        ) from exc
    except TokenError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": "Invalid session token."},
        ) from exc


def require_role(*roles: str) -> Callable[..., SessionClaims]:
    """Build a dependency that admits only the given roles (403 otherwise).

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        async def route(claims: SessionClaims = Depends(require_role("admin"))): ...
    """

    def dependency(claims: SessionClaims = Depends(get_current_claims)) -> SessionClaims:
        if claims.role not in roles:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return claims

    return dependency
