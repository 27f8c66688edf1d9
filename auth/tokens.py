"""
auth/tokens.py -- Session JWTs, password hashing, token HMACs, and TOTP.

Security design decisions:
  JWT: python-jose with HS256. Session tokens carry sub (user id), iat, exp
       and typ="session". Verification returns None on any failure; the auth
       service turns that into Unauthenticated. exp is checked by jose against
       the real wall clock, not the injected service clock.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthService.sign_in() so response time
       does not reveal whether an email is registered.

  Magic-link and challenge tokens: secrets.token_hex(32) gives 256 bits of
       entropy, so bcrypt's slowness buys nothing. We store
       HMAC-SHA256(SECRET_KEY, raw) so lookup is a primary-key hit and a
       leaked DB alone does not yield usable tokens.

  TOTP: pyotp, RFC 6238 defaults (SHA-1, 6 digits, 30 s step), accepting one
       step either side for clock drift.

SECRET_KEY comes from the Settings instance passed to TokenService. Nothing in
this module reads configuration on its own.

Layer rule: no imports from api/, rooms/, or media/.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
import pyotp
from jose import JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"
_SESSION_TYPE = "session"
_TOTP_ISSUER = "Zorem"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters; anything past byte 72 does not affect the hash.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Computed once at import so the first sign-in is not measurably slower than
# the rest. sign_in() checks against it when the email is unknown.
_DUMMY_HASH: str = hash_password("zorem_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification's worth of time and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Everything keyed on SECRET_KEY.

    Usage:
        tokens = TokenService(settings)
        jwt_str = tokens.create_session_token(user.id)
        tokens.decode_session_token(jwt_str)  # -> user.id or None
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.secret_key
        self.session_expire_seconds = settings.session_expire_seconds

    # -- session JWT ----------------------------------------------------

    def create_session_token(self, user_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.session_expire_seconds),
            "typ": _SESSION_TYPE,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def decode_session_token(self, token: str) -> str | None:
        """Return the user id for a valid session token, None on any failure."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("typ") != _SESSION_TYPE:
            return None
        sub = payload.get("sub")
        return sub if isinstance(sub, str) and sub else None

    # -- opaque token storage -------------------------------------------

    def hash_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as hex."""
        return hmac.new(self._secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


def new_totp_secret() -> str:
    return pyotp.random_base32()


def totp_provisioning_uri(secret: str, email: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=_TOTP_ISSUER)


def verify_totp(secret: str, code: str, now: datetime) -> bool:
    code = code.strip().replace(" ", "")
    if not code.isdigit() or len(code) != 6:
        return False
    return pyotp.TOTP(secret).verify(code, for_time=now, valid_window=1)
