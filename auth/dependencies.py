"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session token arrives in one of two places, checked in priority order:
  1. The HTTP-only session cookie -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients that copied the
     cookie value.

Both converge on AuthService.authenticate(). The AuthService instance lives
on app.state (built in the lifespan), never in a module global.

get_session_token() returns the raw credential or None without checking it.
try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import Unauthenticated
from auth.models import Account
from auth.service import AuthService
from core.config import get_settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_session_token(request: Request) -> str | None:
    """Return the presented session token, cookie first, or None."""
    token: str | None = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request. Never raises Unauthenticated -- returns None instead."""
    token = get_session_token(request)
    if token is None:
        return None
    try:
        return get_auth_service(request).authenticate(token)
    except Unauthenticated:
        return None


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(status_code=401, detail=Unauthenticated.message)
    return account
