"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work.

Layer rule: no imports from api/, rooms/, or media/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

# MagicLink.purpose values. A token only redeems through the flow it was minted for.
LINK_SIGN_IN = "sign_in"
LINK_VERIFY_EMAIL = "verify_email"


@dataclass
class User:
    """A room owner account.

    email is stored lower-cased and is the login identifier for every path.
    password_hash is None for accounts created by magic link or OAuth; those
    users cannot use sign_in until they set one.

    two_factor_secret is written at setup time, but two_factor_enabled only
    flips once the user proves possession with a valid code.
    """

    email: str
    id: str = ""
    password_hash: str | None = None
    oauth_provider: str | None = None  # "google", "github"
    oauth_subject: str | None = None  # provider's stable user ID
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class MagicLink:
    """A single-use emailed token record. The raw token is never stored."""

    token_hash: str  # HMAC-SHA256(SECRET_KEY, raw token)
    email: str
    created_at: datetime
    expires_at: datetime
    used_at: datetime | None = None
    purpose: str = LINK_SIGN_IN


@dataclass
class SecondFactorChallenge:
    """Server-side record behind the temporary token of the 2FA step."""

    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed_at: datetime | None = None


@dataclass
class AuthResult:
    """Outcome of any sign-in path.

    At most one of session_token / second_factor_token is set:
      SessionIssued         -> session_token
      AwaitingSecondFactor  -> second_factor_token
      AwaitingVerification  -> neither; the account exists but its address
                               has not been confirmed yet (sign-up outside
                               debug mode)

    verification_link is only filled in debug mode, where the API echoes it.
    """

    user: User
    session_token: str | None = None
    second_factor_token: str | None = None
    expires_in: int = 0
    verification_link: str | None = None

    @property
    def requires_verification(self) -> bool:
        return self.session_token is None and self.second_factor_token is None

    @property
    def requires_second_factor(self) -> bool:
        return self.second_factor_token is not None


@dataclass
class MagicLinkIssued:
    link: str
    expires_at: datetime


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_data: str | None
