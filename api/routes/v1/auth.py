"""
api/routes/v1/auth.py -- Sign-up, sign-in and session REST endpoints.

Routes:
  POST /api/v1/auth/sign-up                   -- email + password registration
  POST /api/v1/auth/sign-in/password          -- password sign-in; sets cookie
  POST /api/v1/auth/otp/send                  -- email a one-time code
  POST /api/v1/auth/otp/verify                -- sign in / verify email with a code
  POST /api/v1/auth/otp/reset-password        -- set a new password with a code
  GET  /api/v1/auth/oauth/{provider}          -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback -- provider callback; sets cookie
  GET  /api/v1/auth/session                   -- current session and live user
  POST /api/v1/auth/sign-out                  -- revoke session, clear cookie
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers

Every sign-in response carries the token in the body and in the httpOnly
session_token cookie, with Cache-Control: no-store [M5].

Errors are raised as auth.errors.AuthError subclasses and rendered by the
handler in api/main.py; no route builds an error body by hand.

Security:
  [H2] Password sign-in and code requests are rate-limited per IP.
  [C1] Sign-in failures share one message regardless of cause.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    MessageResponse,
    OAuthProviderInfo,
    OtpSendRequest,
    OtpVerifyRequest,
    PasswordResetRequest,
    PasswordSignInRequest,
    SessionInfoResponse,
    SessionResponse,
    SignInResponse,
    SignUpRequest,
    UserResponse,
)
from auth.dependencies import (
    SESSION_COOKIE,
    clear_session_cookie,
    get_auth_service,
    get_client_info,
    get_session_context,
    get_session_token,
    set_session_cookie,
)
from auth.errors import NotFound
from auth.models import ClientInfo, IssuedSession, SessionContext
from auth.oauth import exchange_code, get_enabled_providers, start_authorization
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - sign-up, sign-in, otp/*, oauth/*, providers:  public
# - sign-out:                                     public -- revoking needs no live session
# - session:                                      requires a live session
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _otp_limit() -> str:
    return get_settings().otp_rate_limit


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _seconds_until(expires_at: datetime) -> int:
    return int((expires_at - datetime.now(timezone.utc)).total_seconds())


def signed_in_response(request: Request, issued: IssuedSession, status_code: int = 200) -> JSONResponse:
    """Serialise an IssuedSession and attach its token as the session cookie."""
    body = SignInResponse(
        token=issued.token,
        expires_at=issued.session.expires_at,
        user=UserResponse.from_user(issued.user),
        is_new_user=issued.is_new_user,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    set_session_cookie(
        resp,
        issued.token,
        max_age=_seconds_until(issued.session.expires_at),
        secure=request.app.state.settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


@router.post("/auth/sign-up", response_model=SignInResponse, status_code=201)
def sign_up(
    request: Request,
    body: SignUpRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
):
    """Register a new account.

    Returns 201 with a session, or 202 without one when email verification is
    required; in that case a verification code has been emailed.
    """
    issued = auth.sign_up(body.email, body.password, body.name, image=body.image, client=client)
    if issued is None:
        return JSONResponse(
            status_code=202,
            content=MessageResponse(message="Check your email for a verification code.").model_dump(),
        )
    return signed_in_response(request, issued, status_code=201)


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/sign-in/password", response_model=SignInResponse)
def sign_in_password(
    request: Request,
    body: PasswordSignInRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> JSONResponse:
    issued = auth.sign_in_password(body.email, body.password, client)
    return signed_in_response(request, issued)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


@limiter.limit(_otp_limit)  # [H2]
@router.post("/auth/otp/send", response_model=MessageResponse)
def send_otp(
    request: Request,
    body: OtpSendRequest,
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Email a code. The reply is identical whether or not the address has an account."""
    auth.send_otp(body.email, body.purpose.value)
    return MessageResponse(message="If the address can receive codes, a code has been sent.")


@router.post("/auth/otp/verify", response_model=SignInResponse)
def verify_otp(
    request: Request,
    body: OtpVerifyRequest,
    auth: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> JSONResponse:
    issued = auth.verify_otp(body.email, body.code, body.purpose.value, client)
    return signed_in_response(request, issued)


@router.post("/auth/otp/reset-password", response_model=MessageResponse)
def reset_password(
    body: PasswordResetRequest,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Set a new password. Every existing session of the account is revoked."""
    auth.reset_password(body.email, body.code, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Password updated. Please sign in again.").model_dump())
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# OAuth
#
# Registration order: /auth/oauth/{provider}/callback is a distinct path from
# /auth/oauth/{provider}, so the two do not shadow each other.
# ---------------------------------------------------------------------------


def _oauth_client(request: Request, provider: str):
    enabled = {p["name"] for p in get_enabled_providers(request.app.state.settings)}
    client = request.app.state.oauth.create_client(provider) if provider in enabled else None
    if client is None:
        raise NotFound("Unknown OAuth provider.")
    return client


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's consent screen.

    The callback URL is built from BASE_URL, the address registered with the
    provider, not from the request host, which differs behind a proxy.
    """
    client = _oauth_client(request, provider)
    callback_path = request.app.url_path_for("oauth_callback", provider=provider)
    redirect_uri = request.app.state.settings.base_url.rstrip("/") + callback_path
    return await start_authorization(client, request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback", response_model=SignInResponse)
async def oauth_callback(
    request: Request,
    provider: str,
    auth: AuthService = Depends(get_auth_service),
    client_info: ClientInfo = Depends(get_client_info),
) -> JSONResponse:
    """Finish the authorization-code exchange and open a session."""
    client = _oauth_client(request, provider)
    credential = await exchange_code(client, provider, request)
    issued = await run_in_threadpool(auth.oauth_sign_in, credential, client_info)
    return signed_in_response(request, issued)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionInfoResponse)
def get_session(
    request: Request,
    ctx: SessionContext = Depends(get_session_context),
) -> JSONResponse:
    """Return the session and the owning user as they are right now.

    The cookie is refreshed only when it carried the validated token; a
    request authenticated by a Bearer header leaves the cookie alone.
    """
    body = SessionInfoResponse(
        session=SessionResponse.from_session(ctx.session),
        user=UserResponse.from_user(ctx.user),
    )
    resp = JSONResponse(content=body.model_dump(mode="json"))
    token = request.cookies.get(SESSION_COOKIE)
    if token and token == get_session_token(request):
        set_session_cookie(
            resp,
            token,
            max_age=_seconds_until(ctx.session.expires_at),
            secure=request.app.state.settings.secure_cookies,
        )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/sign-out", response_model=MessageResponse)
def sign_out(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the current session and clear the cookie. Always 200."""
    auth.sign_out(get_session_token(request))
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_session_cookie(resp)
    return resp
