"""
auth/service.py -- Identity and authentication flow.

Every sign-in path converges on one of these outcomes:

  SessionIssued         AuthResult.session_token is a signed session JWT.
  AwaitingSecondFactor  AuthResult.second_factor_token is a short-lived opaque
                        token; complete_second_factor() exchanges it plus a
                        TOTP code for a session.
  AwaitingVerification  neither token; sign_up outside debug mode, until the
                        emailed link is redeemed by verify_email().

Paths:
  sign_up / sign_in         email + password (bcrypt); sign-up emails a
                            verification link and, outside debug mode,
                            sign-in requires a verified address
  request / verify magic    single-use emailed link; the account is created on
                            first successful verification
  oauth_sign_in             Google / GitHub verified email, linked by subject
                            first and email second

Anti-enumeration:
  request_magic_link() behaves identically for known and unknown addresses and
  the route answers with a constant message. sign_in() always runs one bcrypt
  check and reports every credential failure as InvalidCredentials.
  EmailNotVerified is only raised after the password matched.

Single use:
  Magic links and second-factor challenges are consumed by one conditional
  UPDATE in UserStore; only the request that flips the row proceeds. The
  losers are classified after the fact (already used / expired / invalid).
  Sign-in links and verification links share the table and are told apart
  by purpose; a token never redeems through the other flow.

Unverified accounts:
  The first magic-link or OAuth sign-in on an account whose address was never
  verified drops its password and two-factor secret. Whoever signed it up
  did not prove they own the mailbox.

Layer rule: imports from core/ and auth/ only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from auth.models import (
    LINK_SIGN_IN,
    LINK_VERIFY_EMAIL,
    AuthResult,
    MagicLink,
    MagicLinkIssued,
    SecondFactorChallenge,
    TwoFactorSetup,
    User,
)
from auth.store import UserStore
from auth.tokens import (
    TokenService,
    burn_password_check,
    hash_password,
    new_totp_secret,
    totp_provisioning_uri,
    verify_password,
    verify_totp,
)
from core.clock import Clock, utcnow
from core.codes import generate_opaque_token
from core.errors import (
    EmailAlreadyRegistered,
    EmailNotVerified,
    InvalidCredentials,
    TokenAlreadyUsed,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
    ValidationError,
)
from core.mailer import Mailer
from core.qr import svg_data_url
from core.ratelimit import LimitClass, RateLimiter

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.auth")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

# Longest raw token we bother hashing; real ones are 64 hex chars.
_MAX_TOKEN_LENGTH = 256

# Schedules a deferred call, e.g. BackgroundTasks.add_task.
Scheduler = Callable[..., None]


def normalize_email(raw: object) -> str:
    """Return the lower-cased, syntax-checked address or raise ValidationError."""
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Email is required.")
    try:
        info = validate_email(raw.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Invalid email address.", detail=str(exc)) from exc
    return info.normalized.lower()


def _canonical_email(raw: object) -> str | None:
    """normalize_email() for lookups: None instead of raising on junk input."""
    try:
        return normalize_email(raw)
    except ValidationError:
        return None


class AuthService:
    """Owns every transition from "anonymous" to "holds a session token".

    Usage:
        auth = AuthService(UserStore(engine), TokenService(settings), settings, mailer=Mailer.from_settings(settings))
        result = auth.sign_in("a@b.com", "hunter22")
        if result.requires_second_factor:
            result = auth.complete_second_factor(result.second_factor_token, "123456")
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        settings: Settings,
        mailer: Mailer | None = None,
        limiter: RateLimiter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.mailer = mailer
        self.limiter = limiter
        self.clock = clock

    # ---------------------------------------------------------------------------
    # Password
    # ---------------------------------------------------------------------------

    def sign_up(self, email: object, password: object, schedule: Scheduler | None = None) -> AuthResult:
        """Create an unverified password account and email it a verification link.

        In debug mode the caller is signed in straight away and the link is
        echoed on the result. Otherwise no session is issued until the link
        is redeemed through verify_email().
        """
        address = normalize_email(email)
        if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
        if len(password) > PASSWORD_MAX_LENGTH:
            raise ValidationError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters.")
        if self.store.get_by_email(address) is not None:
            raise EmailAlreadyRegistered()
        try:
            user = self.store.create_user(
                User(email=address, password_hash=hash_password(password), created_at=self.clock())
            )
        except IntegrityError as exc:
            raise EmailAlreadyRegistered() from exc
        logger.info("User registered id=%s", user.id)

        link = self._send_verification(address, schedule)
        if not self.settings.debug:
            return AuthResult(user=user)
        result = self._complete_sign_in(user)
        result.verification_link = link
        return result

    def sign_in(self, email: object, password: object) -> AuthResult:
        """Password sign-in. Always runs exactly one bcrypt check."""
        plain = password if isinstance(password, str) else ""
        address = _canonical_email(email)
        user = self.store.get_by_email(address) if address else None
        if user is None or user.password_hash is None:
            burn_password_check(plain)
            logger.info("Sign-in failed (unknown account or no password)")
            raise InvalidCredentials()
        if not verify_password(plain, user.password_hash):
            logger.info("Sign-in failed for id=%s", user.id)
            raise InvalidCredentials()
        if not user.email_verified and not self.settings.debug:
            logger.info("Sign-in refused for unverified id=%s", user.id)
            raise EmailNotVerified()
        return self._complete_sign_in(user)

    # ---------------------------------------------------------------------------
    # Email verification
    # ---------------------------------------------------------------------------

    def verify_email(self, token: object) -> AuthResult:
        """Redeem a sign-up verification link and sign the account in."""
        link = self._consume_link(token, LINK_VERIFY_EMAIL)
        user = self.store.get_by_email(link.email)
        if user is None:
            raise TokenInvalid()
        if not user.email_verified:
            self.store.update_user(user.id, email_verified=True)
            user.email_verified = True
        logger.info("Email verified for id=%s", user.id)
        return self._complete_sign_in(user)

    def resend_verification(
        self,
        email: object,
        client_key: str | None = None,
        schedule: Scheduler | None = None,
    ) -> None:
        """Send a fresh verification link if the address belongs to an unverified account.

        Returns nothing either way so the route can answer with a constant message.
        """
        address = normalize_email(email)
        if client_key is not None and self.limiter is not None:
            self.limiter.hit(LimitClass.magic_link, client_key)
        user = self.store.get_by_email(address)
        if user is None or user.email_verified:
            return
        self._send_verification(address, schedule)

    def _send_verification(self, address: str, schedule: Scheduler | None) -> str:
        raw, expires_at = self._mint_link(address, LINK_VERIFY_EMAIL, self.settings.email_verification_expiry_seconds)
        link = f"{self.settings.frontend_url}/auth?verify={raw}"
        logger.info("Verification link issued (expires %s)", expires_at.isoformat())
        if self.mailer is not None:
            if schedule is not None:
                schedule(self.mailer.send_verification_email, address, link)
            else:
                self.mailer.send_verification_email(address, link)
        return link

    # ---------------------------------------------------------------------------
    # Magic link
    # ---------------------------------------------------------------------------

    def request_magic_link(
        self,
        email: object,
        client_key: str | None = None,
        schedule: Scheduler | None = None,
    ) -> MagicLinkIssued:
        """Mint and record a magic link, then hand it to the mailer.

        client_key applies the magic_link rate limit. schedule defers the send
        (the route passes BackgroundTasks.add_task); without it the send runs
        inline. Delivery failures never propagate.
        """
        address = normalize_email(email)
        if client_key is not None and self.limiter is not None:
            self.limiter.hit(LimitClass.magic_link, client_key)

        raw, expires_at = self._mint_link(address, LINK_SIGN_IN, self.settings.magic_link_expiry_seconds)
        link = f"{self.settings.frontend_url}/auth?token={raw}"
        logger.info("Magic link issued (expires %s)", expires_at.isoformat())

        if self.mailer is not None:
            if schedule is not None:
                schedule(self.mailer.send_magic_link, address, link)
            else:
                self.mailer.send_magic_link(address, link)
        return MagicLinkIssued(link=link, expires_at=expires_at)

    def verify_magic_link(self, token: object) -> AuthResult:
        link = self._consume_link(token, LINK_SIGN_IN)
        user = self._get_or_create_verified(link.email)
        logger.info("Magic link verified for id=%s", user.id)
        return self._complete_sign_in(user)

    def _mint_link(self, address: str, purpose: str, ttl_seconds: int) -> tuple[str, datetime]:
        raw = generate_opaque_token(32)
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        self.store.add_magic_link(
            MagicLink(
                token_hash=self.tokens.hash_token(raw),
                email=address,
                created_at=now,
                expires_at=expires_at,
                purpose=purpose,
            )
        )
        return raw, expires_at

    def _consume_link(self, token: object, purpose: str) -> MagicLink:
        """Consume an emailed token minted for `purpose`, or raise why it cannot be."""
        if not isinstance(token, str) or not token or len(token) > _MAX_TOKEN_LENGTH:
            raise TokenInvalid()
        token_hash = self.tokens.hash_token(token)
        now = self.clock()

        if not self.store.consume_magic_link(token_hash, now, purpose):
            link = self.store.get_magic_link(token_hash)
            if link is None or link.purpose != purpose:
                raise TokenInvalid()
            if link.used_at is not None:
                raise TokenAlreadyUsed()
            if link.expires_at <= now:
                raise TokenExpired()
            raise TokenInvalid()
        return self.store.get_magic_link(token_hash)

    def _get_or_create_verified(self, email: str) -> User:
        user = self.store.get_by_email(email)
        if user is None:
            try:
                user = self.store.create_user(User(email=email, email_verified=True, created_at=self.clock()))
                logger.info("User created from magic link id=%s", user.id)
                return user
            except IntegrityError:
                # A concurrent request created it first.
                user = self.store.get_by_email(email)
                if user is None:
                    raise
        if not user.email_verified:
            self._claim_unverified(user)
        return user

    def _claim_unverified(self, user: User) -> None:
        """Mark an unverified account verified on behalf of the mailbox owner.

        Whoever signed the account up never proved control of the address, so
        the credentials they chose are dropped along with the account's
        unverified state.
        """
        if user.password_hash or user.two_factor_secret:
            logger.warning("Dropping credentials of unverified account id=%s on first verified sign-in", user.id)
        self.store.update_user(
            user.id,
            email_verified=True,
            password_hash=None,
            two_factor_enabled=False,
            two_factor_secret=None,
        )
        user.email_verified = True
        user.password_hash = None
        user.two_factor_enabled = False
        user.two_factor_secret = None

    # ---------------------------------------------------------------------------
    # OAuth
    # ---------------------------------------------------------------------------

    def oauth_sign_in(self, provider: str, email: str, subject: str) -> AuthResult:
        """Sign in with a provider-verified email.

        Lookup order: linked (provider, subject), then email (and link it),
        else create a new verified account. Linking to an account whose address
        was never verified drops the credentials it was signed up with.
        """
        address = normalize_email(email)
        user = self.store.get_by_oauth(provider, subject)
        if user is None:
            user = self.store.get_by_email(address)
            if user is not None:
                if not user.email_verified:
                    self._claim_unverified(user)
                self.store.link_oauth(user.id, provider, subject)
                user.oauth_provider, user.oauth_subject, user.email_verified = provider, subject, True
                logger.info("Linked %s identity to id=%s", provider, user.id)
            else:
                try:
                    user = self.store.create_user(
                        User(
                            email=address,
                            oauth_provider=provider,
                            oauth_subject=subject,
                            email_verified=True,
                            created_at=self.clock(),
                        )
                    )
                except IntegrityError:
                    user = self.store.get_by_email(address)
                    if user is None:
                        raise
                    self.store.link_oauth(user.id, provider, subject)
                logger.info("User created from %s id=%s", provider, user.id)
        return self._complete_sign_in(user)

    # ---------------------------------------------------------------------------
    # Second factor
    # ---------------------------------------------------------------------------

    def _complete_sign_in(self, user: User) -> AuthResult:
        """Apply the second-factor gate, then issue a session."""
        if user.two_factor_enabled and user.two_factor_secret:
            raw = generate_opaque_token(32)
            now = self.clock()
            ttl = self.settings.second_factor_ttl_seconds
            self.store.add_challenge(
                SecondFactorChallenge(
                    token_hash=self.tokens.hash_token(raw),
                    user_id=user.id,
                    created_at=now,
                    expires_at=now + timedelta(seconds=ttl),
                )
            )
            return AuthResult(user=user, second_factor_token=raw, expires_in=ttl)
        return self._issue_session(user)

    def _issue_session(self, user: User) -> AuthResult:
        now = self.clock()
        self.store.update_last_login(user.id, now)
        user.last_login = now
        return AuthResult(
            user=user,
            session_token=self.tokens.create_session_token(user.id),
            expires_in=self.settings.session_expire_seconds,
        )

    def complete_second_factor(self, temp_token: object, code: object) -> AuthResult:
        if not isinstance(temp_token, str) or not temp_token or len(temp_token) > _MAX_TOKEN_LENGTH:
            raise TokenInvalid()
        token_hash = self.tokens.hash_token(temp_token)
        now = self.clock()

        challenge = self.store.get_challenge(token_hash)
        if challenge is None:
            raise TokenInvalid()
        if challenge.consumed_at is not None:
            raise TokenAlreadyUsed()
        if challenge.expires_at <= now:
            raise TokenExpired()

        user = self.store.get_by_id(challenge.user_id)
        if user is None or not user.two_factor_secret:
            raise TokenInvalid()

        if not isinstance(code, str) or not verify_totp(user.two_factor_secret, code, now):
            attempts = self.store.record_failed_attempt(
                token_hash, now, self.settings.second_factor_max_attempts
            )
            logger.info(
                "Second factor rejected for id=%s (attempt %d/%d)",
                user.id,
                attempts,
                self.settings.second_factor_max_attempts,
            )
            raise InvalidCredentials("Invalid verification code.")

        if not self.store.consume_challenge(token_hash, now):
            raise TokenAlreadyUsed()
        return self._issue_session(user)

    def begin_two_factor_setup(self, user: User) -> TwoFactorSetup:
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        secret = new_totp_secret()
        self.store.update_user(user.id, two_factor_secret=secret)
        uri = totp_provisioning_uri(secret, user.email)
        return TwoFactorSetup(secret=secret, otpauth_uri=uri, qr_data=svg_data_url(uri))

    def enable_two_factor(self, user: User, code: object) -> User:
        current = self.store.get_by_id(user.id) or user
        if current.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        if not current.two_factor_secret:
            raise ValidationError("Start two-factor setup first.")
        if not isinstance(code, str) or not verify_totp(current.two_factor_secret, code, self.clock()):
            raise InvalidCredentials("Invalid verification code.")
        self.store.update_user(current.id, two_factor_enabled=True)
        current.two_factor_enabled = True
        logger.info("Two-factor enabled for id=%s", current.id)
        return current

    def disable_two_factor(self, user: User, code: object) -> User:
        current = self.store.get_by_id(user.id) or user
        if not current.two_factor_enabled or not current.two_factor_secret:
            raise ValidationError("Two-factor authentication is not enabled.")
        if not isinstance(code, str) or not verify_totp(current.two_factor_secret, code, self.clock()):
            raise InvalidCredentials("Invalid verification code.")
        self.store.update_user(current.id, two_factor_enabled=False, two_factor_secret=None)
        current.two_factor_enabled = False
        current.two_factor_secret = None
        logger.info("Two-factor disabled for id=%s", current.id)
        return current

    # ---------------------------------------------------------------------------
    # Session
    # ---------------------------------------------------------------------------

    def get_current_user(self, session_token: str | None) -> User:
        if not session_token:
            raise Unauthenticated()
        user_id = self.tokens.decode_session_token(session_token)
        if user_id is None:
            raise Unauthenticated()
        user = self.store.get_by_id(user_id)
        if user is None:
            raise Unauthenticated()
        return user

    def purge_expired_tokens(self, retention: timedelta = timedelta(days=1)) -> int:
        """Delete magic links and challenges that expired more than `retention` ago."""
        removed = self.store.purge_expired_tokens(self.clock() - retention)
        if removed:
            logger.info("Purged %d expired auth token(s)", removed)
        return removed
