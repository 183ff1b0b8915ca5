"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session token is read from two places, in priority order:
  1. Authorization: Bearer <token> header -- API clients. An explicit header
     wins over whatever cookie the client happens to carry.
  2. Cookie ("session_token") -- set by the sign-in endpoints.

Both converge on AuthService.get_session(), which re-reads the session row and
the user on every request. Failures raise the AuthError subclasses untouched;
the exception handler in api/main.py renders them.

Cookie helpers live here as well: attaching the token to a response is a
transport concern and stays out of the service.

Layer rule: auth/dependencies.py is the only module in auth/ that imports
fastapi, because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request, Response

from auth.models import ClientInfo, SessionContext
from auth.service import AuthService

SESSION_COOKIE = "session_token"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_session_token(request: Request) -> str | None:
    """Return the raw session token from the Bearer header or the cookie."""
    token: str | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get(SESSION_COOKIE)
    return token or None


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def get_session_context(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> SessionContext:
    """Require a live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: SessionContext = Depends(get_session_context)): ...
    """
    return auth.get_session(get_session_token(request))


def set_session_cookie(
    response: Response,
    token: str,
    max_age: int,
    secure: bool = False,
    name: str = SESSION_COOKIE,
) -> None:
    """Write the session token as an httpOnly cookie.

    samesite="lax" keeps the cookie off cross-site POSTs; max_age follows the
    session's own expiry so both end together.
    """
    response.set_cookie(
        name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max(0, max_age),
    )


def clear_session_cookie(response: Response, name: str = SESSION_COOKIE) -> None:
    response.delete_cookie(name)
