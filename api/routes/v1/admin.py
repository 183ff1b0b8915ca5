"""
api/routes/v1/admin.py -- Administrative REST endpoints.

Routes:
  GET    /api/v1/admin/users                      -- list users, newest first
  POST   /api/v1/admin/users                      -- create a user
  POST   /api/v1/admin/users/{id}/role            -- change role
  POST   /api/v1/admin/users/{id}/ban             -- ban (optional reason / expiry)
  POST   /api/v1/admin/users/{id}/unban           -- lift a ban
  DELETE /api/v1/admin/users/{id}                 -- delete user, sessions, accounts
  GET    /api/v1/admin/users/{id}/sessions        -- list live sessions
  DELETE /api/v1/admin/users/{id}/sessions        -- revoke all sessions
  DELETE /api/v1/admin/sessions/{id}              -- revoke one session
  POST   /api/v1/admin/users/{id}/impersonate     -- start impersonating
  POST   /api/v1/admin/stop-impersonating         -- end impersonation
  POST   /api/v1/admin/has-permission             -- permission check for the caller

Authorization is not decided here. Every handler resolves the caller's
SessionContext and hands it to auth.admin.AdminOperations, which applies the
role gate, the permission map and the target rules, and raises Forbidden or
NotFound as needed.

Impersonation swaps cookies: the admin's own token is parked in the
admin_session_token cookie while the impersonation token becomes the session
cookie, and stop-impersonating swaps it back.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    AdminUserCreate,
    BanRequest,
    PermissionCheckRequest,
    PermissionResponse,
    RevokedResponse,
    SessionResponse,
    SetRoleRequest,
    StopImpersonatingResponse,
    UserResponse,
)
from api.routes.v1.auth import signed_in_response
from auth.dependencies import (
    clear_session_cookie,
    get_auth_service,
    get_client_info,
    get_session_context,
    get_session_token,
    set_session_cookie,
)
from auth.errors import AuthError, SessionExpired, SessionRevoked, UserBanned
from auth.models import ClientInfo, IssuedSession, SessionContext
from auth.service import AuthService

ADMIN_SESSION_COOKIE = "admin_session_token"

router = APIRouter()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in auth.admin.list_users(ctx)]


@router.post("/admin/users", response_model=UserResponse, status_code=201)
def create_user(
    body: AdminUserCreate,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Create an account directly. Admins cannot create users above their own role."""
    user = auth.admin.create_user(ctx, body.email, body.name, password=body.password, role=body.role.value)
    return UserResponse.from_user(user)


@router.post("/admin/users/{user_id}/role", response_model=UserResponse)
def set_role(
    user_id: str,
    body: SetRoleRequest,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    return UserResponse.from_user(auth.admin.set_role(ctx, user_id, body.role.value))


@router.post("/admin/users/{user_id}/ban", response_model=UserResponse)
def ban_user(
    user_id: str,
    body: BanRequest,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Ban a user. Their existing sessions stop working on the next request."""
    user = auth.admin.ban_user(ctx, user_id, reason=body.reason, expires_in_seconds=body.expires_in_seconds)
    return UserResponse.from_user(user)


@router.post("/admin/users/{user_id}/unban", response_model=UserResponse)
def unban_user(
    user_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    return UserResponse.from_user(auth.admin.unban_user(ctx, user_id))


@router.delete("/admin/users/{user_id}", status_code=204)
def remove_user(
    user_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> Response:
    auth.admin.remove_user(ctx, user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/admin/users/{user_id}/sessions", response_model=list[SessionResponse])
def list_user_sessions(
    user_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in auth.admin.list_user_sessions(ctx, user_id)]


@router.delete("/admin/users/{user_id}/sessions", response_model=RevokedResponse)
def revoke_user_sessions(
    user_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> RevokedResponse:
    return RevokedResponse(revoked=auth.admin.revoke_all_sessions(ctx, user_id))


@router.delete("/admin/sessions/{session_id}", status_code=204)
def revoke_session(
    session_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> Response:
    auth.admin.revoke_session(ctx, session_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Impersonation
# ---------------------------------------------------------------------------


@router.post("/admin/users/{user_id}/impersonate")
def impersonate_user(
    request: Request,
    user_id: str,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> JSONResponse:
    """Open a short-lived session as the target user.

    The response body carries the impersonation token for API clients; browser
    clients get it as their session cookie.
    """
    session, token = auth.admin.impersonate_user(ctx, user_id, client)
    target = auth.store.get_user(session.user_id)
    resp = signed_in_response(request, IssuedSession(token=token, session=session, user=target))
    admin_token = get_session_token(request)
    if admin_token:
        set_session_cookie(
            resp,
            admin_token,
            max_age=int((ctx.session.expires_at - session.created_at).total_seconds()),
            secure=request.app.state.settings.secure_cookies,
            name=ADMIN_SESSION_COOKIE,
        )
    return resp


@router.post("/admin/stop-impersonating", response_model=StopImpersonatingResponse)
def stop_impersonating(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the impersonation session and restore the admin's own cookie.

    Also works once the impersonation session has stopped validating (expired,
    or a ban or demotion in between); otherwise the parked admin cookie could
    never be swapped back.
    """
    token = get_session_token(request)
    try:
        ctx = auth.get_session(token)
    except (SessionExpired, SessionRevoked, UserBanned):
        admin_id = auth.admin.abandon_impersonation(token)
        if admin_id is None:
            raise
    else:
        admin_id = auth.admin.stop_impersonating(ctx)

    restored = False
    admin_token = request.cookies.get(ADMIN_SESSION_COOKIE)
    if admin_token:
        try:
            admin_ctx = auth.get_session(admin_token)
        except AuthError:
            admin_ctx = None
        restored = admin_ctx is not None and admin_ctx.user.id == admin_id

    resp = JSONResponse(
        content=StopImpersonatingResponse(admin_id=admin_id, admin_session_restored=restored).model_dump()
    )
    if restored:
        set_session_cookie(
            resp,
            admin_token,
            max_age=int((admin_ctx.session.expires_at - auth.sessions.clock()).total_seconds()),
            secure=request.app.state.settings.secure_cookies,
        )
    else:
        clear_session_cookie(resp)
    clear_session_cookie(resp, ADMIN_SESSION_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.post("/admin/has-permission", response_model=PermissionResponse)
def has_permission(
    body: PermissionCheckRequest,
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> PermissionResponse:
    """Answer for the caller's own role. Open to every signed-in user."""
    return PermissionResponse(allowed=auth.admin.has_permission(ctx, body.resource, body.action))
