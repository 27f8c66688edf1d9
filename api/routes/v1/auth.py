"""
api/routes/v1/auth.py -- Owner authentication REST endpoints.

Routes:
  POST /api/v1/auth/sign-up                   -- email + password registration
  POST /api/v1/auth/sign-in                   -- password sign-in
  POST /api/v1/auth/verify-email              -- redeem the sign-up verification link
  POST /api/v1/auth/verify-email/resend       -- email a fresh verification link
  POST /api/v1/auth/magic-link                -- email a single-use sign-in link
  POST /api/v1/auth/magic-link/verify         -- exchange the link token
  POST /api/v1/auth/2fa/verify                -- exchange a 2FA token + TOTP code
  POST /api/v1/auth/2fa/setup                 -- start TOTP enrolment (auth)
  POST /api/v1/auth/2fa/enable                -- confirm enrolment (auth)
  POST /api/v1/auth/2fa/disable               -- turn TOTP off (auth)
  GET  /api/v1/auth/me                        -- current user + rooms_count (auth)
  GET  /api/v1/auth/providers                 -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}          -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback -- finish OAuth, redirect to frontend

Security:
  Sign-in, sign-up, verification and 2FA routes use the "sensitive" limit; the
  magic-link request and the verification resend use the "magic_link" limit,
  applied by the service so it is counted only for well-formed addresses.
  Everything else gets "general" from the middleware in api/main.py.
  The magic-link and resend responses are identical for known and unknown
  addresses.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.deps import get_app_settings, get_auth_service, get_current_user, get_room_service
from api.limiter import get_client_key, rate_limit
from api.models import (
    AuthResponse,
    EmailVerifyRequest,
    MagicLinkRequest,
    MagicLinkResponse,
    MagicLinkVerifyRequest,
    MeResponse,
    OAuthProviderInfo,
    SecondFactorVerifyRequest,
    SignInRequest,
    SignUpRequest,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserResponse,
)
from auth.models import User
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.service import AuthService
from core.config import Settings
from core.errors import ValidationError, ZoremError
from core.ratelimit import LimitClass
from rooms.service import RoomService

logger = logging.getLogger("zorem.api.auth")

router = APIRouter()

_sensitive = [Depends(rate_limit(LimitClass.sensitive))]

MAGIC_LINK_MESSAGE = "If the email is valid, a sign-in link has been sent."
VERIFICATION_MESSAGE = "If the account exists and is unverified, a verification link has been sent."


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


@router.post("/auth/sign-up", response_model=AuthResponse, status_code=201, dependencies=_sensitive)
def sign_up(
    body: SignUpRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    auth: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Register and email a verification link.

    Outside debug mode no session is issued until the link is redeemed.
    """
    result = auth.sign_up(body.email, body.password, schedule=background_tasks.add_task)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/sign-in", response_model=AuthResponse, dependencies=_sensitive)
def sign_in(
    body: SignInRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Password sign-in. Wrong email and wrong password look identical."""
    result = auth.sign_in(body.email, body.password)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/verify-email", response_model=AuthResponse, dependencies=_sensitive)
def verify_email(
    body: EmailVerifyRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    result = auth.verify_email(body.token)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/verify-email/resend", response_model=MagicLinkResponse)
def resend_verification(
    request: Request,
    body: MagicLinkRequest,
    background_tasks: BackgroundTasks,
    auth: AuthService = Depends(get_auth_service),
) -> MagicLinkResponse:
    """Re-send the verification link. Same answer for every address."""
    auth.resend_verification(body.email, client_key=get_client_key(request), schedule=background_tasks.add_task)
    return MagicLinkResponse(message=VERIFICATION_MESSAGE)


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@router.post("/auth/magic-link", response_model=MagicLinkResponse)
def request_magic_link(
    request: Request,
    body: MagicLinkRequest,
    background_tasks: BackgroundTasks,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_app_settings),
) -> MagicLinkResponse:
    """Email a sign-in link. The email is sent after the response goes out."""
    issued = auth.request_magic_link(
        body.email,
        client_key=get_client_key(request),
        schedule=background_tasks.add_task,
    )
    if settings.debug:
        return MagicLinkResponse(message=MAGIC_LINK_MESSAGE, magic_link=issued.link)
    return MagicLinkResponse(message=MAGIC_LINK_MESSAGE)


@router.post("/auth/magic-link/verify", response_model=AuthResponse, dependencies=_sensitive)
def verify_magic_link(
    body: MagicLinkVerifyRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    result = auth.verify_magic_link(body.token)
    _no_store(response)
    return AuthResponse.from_result(result)


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/verify", response_model=AuthResponse, dependencies=_sensitive)
def verify_second_factor(
    body: SecondFactorVerifyRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    result = auth.complete_second_factor(body.token, body.code)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def setup_second_factor(
    response: Response,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> TwoFactorSetupResponse:
    """Return a fresh TOTP secret. Not active until /2fa/enable confirms a code."""
    setup = auth.begin_two_factor_setup(current_user)
    _no_store(response)
    return TwoFactorSetupResponse.from_setup(setup)


@router.post("/auth/2fa/enable", response_model=TwoFactorStatusResponse, dependencies=_sensitive)
def enable_second_factor(
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> TwoFactorStatusResponse:
    user = auth.enable_two_factor(current_user, body.code)
    return TwoFactorStatusResponse(two_factor_enabled=user.two_factor_enabled)


@router.post("/auth/2fa/disable", response_model=TwoFactorStatusResponse, dependencies=_sensitive)
def disable_second_factor(
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> TwoFactorStatusResponse:
    user = auth.disable_two_factor(current_user, body.code)
    return TwoFactorStatusResponse(two_factor_enabled=user.two_factor_enabled)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> MeResponse:
    base = UserResponse.from_user(current_user)
    return MeResponse(**base.model_dump(), rooms_count=rooms.count_owner_rooms(current_user.id))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(settings: Settings = Depends(get_app_settings)) -> list[OAuthProviderInfo]:
    """Configured OAuth providers. Empty when no client credentials are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(settings)]


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _frontend_redirect(settings: Settings, **params: str) -> RedirectResponse:
    response = RedirectResponse(f"{settings.frontend_url}/auth?{urlencode(params)}", status_code=302)
    _no_store(response)
    return response


@router.get("/auth/oauth/{provider}")
async def oauth_start(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot reach create_client().
    """
    settings: Settings = request.app.state.settings
    enabled = {p["name"] for p in get_enabled_providers(settings)}
    if provider not in enabled:
        raise ValidationError("Unknown or disabled OAuth provider.")
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the provider flow and hand the outcome to the frontend.

    Success:          {FRONTEND_URL}/auth?oauth_token=<session jwt>
    Second factor:    {FRONTEND_URL}/auth?two_factor_token=<temp token>
    Any failure:      {FRONTEND_URL}/auth?oauth_error=<code>
    """
    settings: Settings = request.app.state.settings
    enabled = {p["name"] for p in get_enabled_providers(settings)}
    if provider not in enabled:
        return _frontend_redirect(settings, oauth_error="oauth_not_configured")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.warning("OAuth token exchange failed for provider %r", provider, exc_info=True)
        return _frontend_redirect(settings, oauth_error="token_exchange_failed")

    try:
        email, subject = await get_oauth_user_info(client, provider, token)
    except (ValueError, httpx.HTTPError):
        logger.warning("OAuth sign-in rejected: unverified or missing email from %r", provider)
        return _frontend_redirect(settings, oauth_error="email_not_verified")

    auth: AuthService = request.app.state.auth_service
    try:
        result = await run_in_threadpool(auth.oauth_sign_in, provider, email, subject)
    except ZoremError as exc:
        logger.warning("OAuth sign-in failed for provider %r: %s", provider, exc.code)
        return _frontend_redirect(settings, oauth_error="oauth_failed")

    if result.requires_second_factor:
        return _frontend_redirect(settings, two_factor_token=result.second_factor_token)
    return _frontend_redirect(settings, oauth_token=result.session_token)
