"""
auth/oauth.py -- Authlib OAuth provider registry and token exchange.

The registry is built from explicit settings by build_oauth_registry(), once,
in the API lifespan. Only providers with both client id and secret configured
get registered.

Authorization requests always carry:
  access_type=offline     -- so the provider issues a refresh token
  prompt=select_account   -- so a browser signed into one provider account
                             cannot silently complete sign-in as that account

OAuth state (CSRF protection) is handled by authlib through Starlette's
SessionMiddleware between the redirect and the callback.

Supported providers:
  google -- OIDC discovery; claims come from the id_token userinfo.
  github -- static endpoints; the email comes from GET /user/emails.

Every failure in the exchange or profile fetch surfaces as
UpstreamProviderError; the resolved claims go to auth.verifiers.OAuthVerifier.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.starlette_client import OAuth

from auth.errors import UpstreamProviderError
from auth.models import OAuthProfile, OAuthTokens
from auth.verifiers import OAuthCredential

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("warden.auth.oauth")

AUTHORIZE_PARAMS: dict[str, str] = {
    "access_type": "offline",
    "prompt": "select_account",
}

_LABELS: dict[str, str] = {"google": "Google", "github": "GitHub"}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    oauth = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every configured provider."""
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _LABELS["google"]})
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": _LABELS["github"]})
    return providers


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


async def start_authorization(client, request, redirect_uri: str):
    """Return the redirect response that sends the browser to the provider."""
    return await client.authorize_redirect(request, redirect_uri, **AUTHORIZE_PARAMS)


async def exchange_code(client, provider: str, request) -> OAuthCredential:
    """Exchange the callback's authorization code and normalise the profile."""
    try:
        token = await client.authorize_access_token(request)
    except (AuthlibBaseError, httpx.HTTPError) as exc:
        logger.warning("OAuth token exchange failed for %r: %s", provider, exc)
        raise UpstreamProviderError() from exc

    try:
        profile = await get_oauth_profile(client, provider, token)
    except (httpx.HTTPError, KeyError, ValueError) as exc:
        logger.warning("OAuth profile lookup failed for %r: %s", provider, exc)
        raise UpstreamProviderError() from exc

    return OAuthCredential(profile=profile, tokens=tokens_from_response(token))


def tokens_from_response(token: dict) -> OAuthTokens:
    expires_at = token.get("expires_at")
    return OAuthTokens(
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        id_token=token.get("id_token"),
        expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        scope=token.get("scope"),
    )


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalise provider claims into an OAuthProfile.

    Raises ValueError if the provider does not return a subject and an email.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider == "google":
        return _get_oidc_profile(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two calls: GET /user for the id, GET /user/emails for the email.

    The primary address is used; its verified flag is carried through so the
    verifier can refuse to link an unverified address to an existing account.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    user = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    primary = next((e for e in emails_resp.json() if e.get("primary")), None)
    if primary is None or not primary.get("email"):
        raise ValueError("GitHub OAuth: no primary email on the account")

    return OAuthProfile(
        provider="github",
        subject=str(user["id"]),
        email=primary["email"],
        email_verified=bool(primary.get("verified")),
        name=user.get("name") or user.get("login") or "",
        image=user.get("avatar_url"),
    )


def _get_oidc_profile(token: dict, provider: str) -> OAuthProfile:
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthProfile(
        provider=provider,
        subject=str(subject),
        email=email,
        email_verified=bool(userinfo.get("email_verified", False)),
        name=userinfo.get("name") or "",
        image=userinfo.get("picture"),
    )
