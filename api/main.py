"""
api/main.py -- FastAPI application entry point for Warden.

Exposes the identity core (auth/) over HTTP: sign-up, password, one-time-code
and OAuth sign-in, session reads, and the admin surface.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware  -- authlib keeps OAuth state here between redirect
                           and callback

Lifespan builds every collaborator from Settings exactly once (store, delivery
channel, OAuth registry, AuthService) and tears them down symmetrically. The
identity core never reads Settings itself; it gets an AuthConfig.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.config import AuthConfig
from auth.delivery import DeliveryChannel, HttpEmailChannel, LogEmailChannel
from auth.dependencies import get_auth_service, get_session_context
from auth.errors import AuthError, Forbidden, RateLimited
from auth.models import Role, SessionContext
from auth.oauth import build_oauth_registry
from auth.service import AuthService
from auth.store import CredentialStore
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions and challenges every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed sweep is logged
    and retried on the next tick; the rows it missed are still dead to
    validation.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            await run_in_threadpool(app.state.auth.purge_expired)
        except Exception:
            logger.exception("Housekeeping sweep failed")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_delivery_channel(settings: Settings) -> DeliveryChannel:
    if settings.email_api_key:
        return HttpEmailChannel(settings.email_api_url, settings.email_api_key, settings.email_from)
    logger.warning("EMAIL_API_KEY not set -- one-time codes will be written to the log")
    return LogEmailChannel()


def build_auth_service(settings: Settings, store: CredentialStore) -> AuthService:
    return AuthService.build(store, AuthConfig.from_settings(settings), build_delivery_channel(settings))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- everything else reads and writes through it.
      2. AuthService second -- composed around the store.
      3. Purge task last -- references app.state.auth.
    """
    logger.info("Warden API starting up")
    app.state.settings = _settings
    app.state.store = CredentialStore(db_url=_settings.database_url)
    app.state.auth = build_auth_service(_settings, app.state.store)
    app.state.oauth = build_oauth_registry(_settings)
    logger.info("Auth initialized (%d users)", app.state.store.count_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Warden API",
    description="Authentication, sessions and role-based administration.",
    version=VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value here between the authorization redirect
# and the callback, and verifies it on return.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation (admins only)
# ---------------------------------------------------------------------------


def _require_admin(
    ctx: SessionContext = Depends(get_session_context),
    auth: AuthService = Depends(get_auth_service),
) -> SessionContext:
    if not auth.policy.has_role(ctx, Role.admin):
        raise Forbidden("Admin access required.")
    return ctx


@app.get("/docs", include_in_schema=False)
async def docs(ctx: SessionContext = Depends(_require_admin)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Warden API")


@app.get("/redoc", include_in_schema=False)
async def redoc(ctx: SessionContext = Depends(_require_admin)):
    return get_redoc_html(openapi_url="/openapi.json", title="Warden API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the API in the same ErrorResponse envelope, so a client
# parses one schema whatever the status code.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any identity-core error with its own status code and message."""
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        headers["Cache-Control"] = "no-store"
    return _error(exc.status_code, exc.code, exc.message, exc.detail, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Route-level limit from slowapi (sign-in and code requests per IP)."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    return _error(429, "rate_limited", "Too many requests.", str(exc.detail), {"Retry-After": "60"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework-raised errors: unknown routes (404), wrong methods (405)."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """The raw exception goes to the log only, never to the response body."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
#
# Registered on the app rather than a router and never rate limited, so load
# balancers can always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok" if request.app.state.store.ping() else "error"
    components = {"app": "ok", "database": database}
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
