"""
auth/oauth.py -- Authlib OAuth provider registry for Google and GitHub.

build_oauth(settings) registers only the providers whose client id AND secret
are both configured; get_enabled_providers() reports the same set so the
frontend renders buttons only for providers that will work.

Security notes:
  Email verification is mandatory. get_oauth_user_info() raises ValueError if
  the provider does not confirm the email is verified. An unverified GitHub
  email could be a victim's address an attacker added without confirming it,
  and AuthService.oauth_sign_in() links by email.

  The OAuth state parameter (CSRF protection) is handled by authlib via
  Starlette SessionMiddleware: state is kept in the signed session cookie
  between the authorization redirect and the callback.

Layer rule: no imports from api/, rooms/, or media/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.auth.oauth")

_PROVIDER_LABELS = {"google": "Google", "github": "GitHub"}

# Provider HTTP calls must not hang a worker thread.
_HTTP_TIMEOUT = 10.0


def _google_enabled(settings: Settings) -> bool:
    return bool(settings.google_client_id and settings.google_client_secret)


def _github_enabled(settings: Settings) -> bool:
    return bool(settings.github_client_id and settings.github_client_secret)


def build_oauth(settings: Settings) -> OAuth:
    oauth = OAuth()

    # Google -- OIDC discovery
    if _google_enabled(settings):
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile", "timeout": _HTTP_TIMEOUT},
        )
        logger.info("Google OAuth provider registered")

    # GitHub -- static endpoints (no OIDC discovery document)
    if _github_enabled(settings):
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email", "timeout": _HTTP_TIMEOUT},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every configured provider."""
    providers: list[dict] = []
    if _google_enabled(settings):
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    if _github_enabled(settings):
        providers.append({"name": "github", "label": _PROVIDER_LABELS["github"]})
    return providers


# ---------------------------------------------------------------------------
# Email / subject extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> tuple[str, str]:
    """Extract (email, subject_id) from a provider token response.

    Raises:
        ValueError: if a verified email cannot be confirmed. The caller
            treats this as an authentication failure.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    if provider == "google":
        return _get_google_user_info(token)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> tuple[str, str]:
    """GitHub needs two calls: /user for the numeric id, /user/emails for the
    primary verified address. Only primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    subject_id = str(resp.json()["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified") and entry.get("email"):
            return entry["email"], subject_id

    raise ValueError(
        "GitHub OAuth: no primary verified email found. "
        "The user must verify their email address on GitHub before signing in."
    )


def _get_google_user_info(token: dict) -> tuple[str, str]:
    """Google returns an id_token; authlib parses its claims into token["userinfo"].

    A missing email_verified claim is treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise ValueError("google OAuth: email is not verified.")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")
    return email, subject_id
