"""Unit tests for auth/service.py, auth/store.py and auth/tokens.py.

Covers:
- sign_up / sign_in: normalization, password policy, duplicates, one error for
  every credential failure
- email verification: link on sign-up, verified-only sign-in outside debug,
  credentials of squatted sign-ups dropped on the first verified sign-in
- magic links: anti-enumeration, deferred delivery, single use (sequential and
  concurrent), expiry, account creation on first verify
- OAuth sign-in: link by subject, then by email, else create
- second factor: setup -> enable -> challenge -> verify, attempt cap, expiry
- session tokens: round trip, tampering, wrong type
- purge of spent tokens
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pyotp
import pytest
from jose import jwt

from auth.service import AuthService, normalize_email
from auth.store import UserStore
from auth.tokens import TokenService, hash_password, verify_password, verify_totp
from conftest import make_settings
from core.clock import FakeClock
from core.database import create_db_engine
from core.errors import (
    EmailAlreadyRegistered,
    EmailNotVerified,
    InvalidCredentials,
    RateLimited,
    TokenAlreadyUsed,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
    ValidationError,
)

PASSWORD = "correct-horse-1"


def _token_from_link(link: str, param: str = "token") -> str:
    return link.split(f"{param}=", 1)[1]


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


class TestPassword:
    def test_sign_up_issues_session(self, auth_service):
        result = auth_service.sign_up("  Ana@Example.COM ", PASSWORD)
        assert result.session_token
        assert not result.requires_second_factor
        assert result.user.email == "ana@example.com"
        assert result.expires_in == 3600
        assert auth_service.get_current_user(result.session_token).id == result.user.id

    def test_duplicate_email(self, auth_service):
        auth_service.sign_up("ana@example.com", PASSWORD)
        with pytest.raises(EmailAlreadyRegistered):
            auth_service.sign_up("ANA@example.com", PASSWORD)

    @pytest.mark.parametrize("password", ["short", "", "x" * 129, None])
    def test_password_policy(self, auth_service, password):
        with pytest.raises(ValidationError):
            auth_service.sign_up("ana@example.com", password)

    @pytest.mark.parametrize("email", ["not-an-email", "", "a@", None])
    def test_bad_email(self, auth_service, email):
        with pytest.raises(ValidationError):
            auth_service.sign_up(email, PASSWORD)

    def test_sign_in(self, auth_service, clock):
        auth_service.sign_up("ana@example.com", PASSWORD)
        clock.advance(minutes=5)
        result = auth_service.sign_in("Ana@example.com", PASSWORD)
        assert result.session_token
        assert result.user.last_login == clock()

    @pytest.mark.parametrize(
        "email, password",
        [("ana@example.com", "wrong-password"), ("nobody@example.com", PASSWORD), ("", ""), (None, None)],
    )
    def test_sign_in_failures_look_identical(self, auth_service, email, password):
        auth_service.sign_up("ana@example.com", PASSWORD)
        with pytest.raises(InvalidCredentials) as excinfo:
            auth_service.sign_in(email, password)
        assert excinfo.value.message == "Invalid email or password."

    def test_magic_link_account_cannot_password_sign_in(self, auth_service):
        issued = auth_service.request_magic_link("ana@example.com")
        auth_service.verify_magic_link(_token_from_link(issued.link))
        with pytest.raises(InvalidCredentials):
            auth_service.sign_in("ana@example.com", PASSWORD)

    def test_sign_in_matches_sign_up_normalization(self, auth_service):
        decomposed = "jose\u0301@example.com"
        auth_service.sign_up(decomposed, PASSWORD)
        assert auth_service.sign_in(decomposed, PASSWORD).session_token
        assert auth_service.sign_in(" JOSE\u0301@Example.com ", PASSWORD).session_token


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@pytest.fixture
def production_auth(user_store, mailer, limiter, clock):
    settings = make_settings(debug=False)
    return AuthService(user_store, TokenService(settings), settings, mailer=mailer, limiter=limiter, clock=clock)


class TestEmailVerification:
    def test_sign_up_emails_verification_link(self, auth_service, transport):
        result = auth_service.sign_up("ana@example.com", PASSWORD)
        assert result.verification_link.startswith("http://frontend.example.com/auth?verify=")
        [mail] = transport.sent
        assert mail["to"] == "ana@example.com"
        assert mail["subject"] == "Verify your email for Zorem"
        assert result.verification_link in mail["text"]

    def test_production_sign_up_issues_no_session(self, production_auth, transport):
        result = production_auth.sign_up("ana@example.com", PASSWORD)
        assert result.requires_verification
        assert result.session_token is None
        assert result.verification_link is None
        assert len(transport.sent) == 1

    def test_production_sign_in_requires_verified_email(self, production_auth, transport):
        production_auth.sign_up("ana@example.com", PASSWORD)
        with pytest.raises(EmailNotVerified):
            production_auth.sign_in("ana@example.com", PASSWORD)
        # A wrong password still reads as bad credentials.
        with pytest.raises(InvalidCredentials):
            production_auth.sign_in("ana@example.com", "wrong-password")

        link = transport.sent[0]["text"].split(": ", 1)[1]
        result = production_auth.verify_email(_token_from_link(link, "verify"))
        assert result.session_token
        assert result.user.email_verified is True
        assert production_auth.sign_in("ana@example.com", PASSWORD).session_token

    def test_verify_email_is_single_use(self, auth_service):
        token = _token_from_link(auth_service.sign_up("ana@example.com", PASSWORD).verification_link, "verify")
        auth_service.verify_email(token)
        with pytest.raises(TokenAlreadyUsed):
            auth_service.verify_email(token)

    def test_verification_link_lasts_a_day(self, auth_service, clock):
        token = _token_from_link(auth_service.sign_up("ana@example.com", PASSWORD).verification_link, "verify")
        clock.advance(hours=24)
        with pytest.raises(TokenExpired):
            auth_service.verify_email(token)

    def test_tokens_do_not_cross_flows(self, auth_service):
        verify_token = _token_from_link(auth_service.sign_up("ana@example.com", PASSWORD).verification_link, "verify")
        sign_in_token = _token_from_link(auth_service.request_magic_link("bo@example.com").link)

        with pytest.raises(TokenInvalid):
            auth_service.verify_magic_link(verify_token)
        with pytest.raises(TokenInvalid):
            auth_service.verify_email(sign_in_token)
        # Neither attempt spent the token.
        assert auth_service.verify_email(verify_token).user.email == "ana@example.com"
        assert auth_service.verify_magic_link(sign_in_token).user.email == "bo@example.com"

    def test_resend_only_for_unverified_accounts(self, auth_service, transport):
        result = auth_service.sign_up("ana@example.com", PASSWORD)
        auth_service.resend_verification("ana@example.com")
        assert len(transport.sent) == 2

        auth_service.verify_email(_token_from_link(result.verification_link, "verify"))
        auth_service.resend_verification("ana@example.com")
        auth_service.resend_verification("nobody@example.com")
        assert len(transport.sent) == 2

    def test_resend_shares_magic_link_limit(self, auth_service):
        for _ in range(3):
            auth_service.resend_verification("a@b.com", client_key="198.51.100.9")
        with pytest.raises(RateLimited):
            auth_service.request_magic_link("a@b.com", client_key="198.51.100.9")


def test_bcrypt_truncation_and_bad_hash():
    hashed = hash_password("p" * 72 + "tail-a")
    assert verify_password("p" * 72 + "tail-b", hashed)
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_normalize_email_lowercases():
    assert normalize_email("Ana@Example.COM") == "ana@example.com"


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


class TestMagicLink:
    def test_request_sends_email_and_builds_link(self, auth_service, transport):
        issued = auth_service.request_magic_link("ana@example.com")
        assert issued.link.startswith("http://frontend.example.com/auth?token=")
        assert len(_token_from_link(issued.link)) == 64
        [mail] = transport.sent
        assert mail["to"] == "ana@example.com"
        assert issued.link in mail["text"]

    def test_schedule_defers_delivery(self, auth_service, transport):
        scheduled = []
        auth_service.request_magic_link("ana@example.com", schedule=lambda fn, *args: scheduled.append((fn, args)))
        assert transport.sent == []
        fn, args = scheduled[0]
        fn(*args)
        assert transport.sent[0]["to"] == "ana@example.com"

    def test_delivery_failure_is_swallowed(self, auth_service, transport):
        transport.fail = True
        issued = auth_service.request_magic_link("ana@example.com")
        # Token is still valid.
        assert auth_service.verify_magic_link(_token_from_link(issued.link)).session_token

    def test_unknown_and_known_addresses_behave_the_same(self, auth_service):
        auth_service.sign_up("known@example.com", PASSWORD)
        known = auth_service.request_magic_link("known@example.com")
        unknown = auth_service.request_magic_link("unknown@example.com")
        assert type(known) is type(unknown)
        assert known.expires_at == unknown.expires_at

    def test_verify_creates_verified_account(self, auth_service, user_store):
        issued = auth_service.request_magic_link("new@example.com")
        assert user_store.get_by_email("new@example.com") is None
        result = auth_service.verify_magic_link(_token_from_link(issued.link))
        assert result.user.email == "new@example.com"
        assert result.user.email_verified is True

    def test_verify_marks_existing_account_verified(self, auth_service, user_store):
        user = auth_service.sign_up("ana@example.com", PASSWORD).user
        assert user.email_verified is False
        issued = auth_service.request_magic_link("ana@example.com")
        result = auth_service.verify_magic_link(_token_from_link(issued.link))
        assert result.user.id == user.id
        assert user_store.get_by_id(user.id).email_verified is True

    def test_squatted_sign_up_loses_its_password(self, auth_service, user_store):
        """Someone signs up with another person's address; the real owner then uses a magic link."""
        squatter = auth_service.sign_up("victim@example.com", "squatter-pass-1").user
        auth_service.begin_two_factor_setup(squatter)

        issued = auth_service.request_magic_link("victim@example.com")
        result = auth_service.verify_magic_link(_token_from_link(issued.link))

        assert result.session_token
        stored = user_store.get_by_id(squatter.id)
        assert stored.password_hash is None
        assert stored.two_factor_secret is None
        with pytest.raises(InvalidCredentials):
            auth_service.sign_in("victim@example.com", "squatter-pass-1")

    def test_verified_account_keeps_its_password(self, auth_service):
        result = auth_service.sign_up("ana@example.com", PASSWORD)
        auth_service.verify_email(_token_from_link(result.verification_link, "verify"))
        issued = auth_service.request_magic_link("ana@example.com")
        auth_service.verify_magic_link(_token_from_link(issued.link))
        assert auth_service.sign_in("ana@example.com", PASSWORD).session_token

    def test_single_use(self, auth_service):
        token = _token_from_link(auth_service.request_magic_link("a@b.com").link)
        assert auth_service.verify_magic_link(token).session_token
        with pytest.raises(TokenAlreadyUsed):
            auth_service.verify_magic_link(token)

    def test_expired(self, auth_service, clock):
        token = _token_from_link(auth_service.request_magic_link("a@b.com").link)
        clock.advance(hours=1)
        with pytest.raises(TokenExpired):
            auth_service.verify_magic_link(token)

    @pytest.mark.parametrize("token", ["", "0" * 64, "x" * 300, None])
    def test_invalid(self, auth_service, token):
        with pytest.raises(TokenInvalid):
            auth_service.verify_magic_link(token)

    def test_rate_limit_fourth_request(self, auth_service):
        for _ in range(3):
            auth_service.request_magic_link("a@b.com", client_key="198.51.100.4")
        with pytest.raises(RateLimited):
            auth_service.request_magic_link("a@b.com", client_key="198.51.100.4")

    def test_malformed_email_is_not_counted(self, auth_service):
        for _ in range(5):
            with pytest.raises(ValidationError):
                auth_service.request_magic_link("nope", client_key="k")
        auth_service.request_magic_link("a@b.com", client_key="k")


def test_concurrent_verify_has_exactly_one_winner(tmp_path, settings):
    """Eight threads race on one token against a file DB; one session comes out."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'race.db'}")
    try:
        clock = FakeClock()
        service = AuthService(UserStore(engine), TokenService(settings), settings, clock=clock)
        token = _token_from_link(service.request_magic_link("race@example.com").link)

        def attempt(_):
            try:
                return service.verify_magic_link(token).session_token
            except TokenAlreadyUsed:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))
    finally:
        engine.dispose()

    assert sum(1 for o in outcomes if o) == 1


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuthSignIn:
    def test_creates_verified_account(self, auth_service):
        result = auth_service.oauth_sign_in("github", "Ana@Example.com", "12345")
        assert result.user.email == "ana@example.com"
        assert result.user.oauth_provider == "github"
        assert result.user.email_verified is True

    def test_links_existing_email(self, auth_service, user_store):
        user = auth_service.sign_up("ana@example.com", PASSWORD).user
        result = auth_service.oauth_sign_in("google", "ana@example.com", "sub-1")
        assert result.user.id == user.id
        stored = user_store.get_by_oauth("google", "sub-1")
        assert stored.id == user.id
        assert stored.email_verified is True

    def test_subject_wins_over_email(self, auth_service):
        first = auth_service.oauth_sign_in("github", "old@example.com", "777").user
        # Provider-side email changed; the subject still identifies the account.
        again = auth_service.oauth_sign_in("github", "new@example.com", "777").user
        assert again.id == first.id


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


def _enable_2fa(auth_service, clock, email="ana@example.com"):
    user = auth_service.sign_up(email, PASSWORD).user
    setup = auth_service.begin_two_factor_setup(user)
    assert setup.otpauth_uri.startswith("otpauth://totp/")
    assert "issuer=Zorem" in setup.otpauth_uri
    assert setup.qr_data.startswith("data:image/svg+xml;base64,")
    auth_service.enable_two_factor(user, pyotp.TOTP(setup.secret).at(clock()))
    return user, setup.secret


class TestSecondFactor:
    def test_enable_requires_valid_code(self, auth_service):
        user = auth_service.sign_up("ana@example.com", PASSWORD).user
        auth_service.begin_two_factor_setup(user)
        with pytest.raises(InvalidCredentials):
            auth_service.enable_two_factor(user, "000000")

    def test_enable_without_setup(self, auth_service):
        user = auth_service.sign_up("ana@example.com", PASSWORD).user
        with pytest.raises(ValidationError):
            auth_service.enable_two_factor(user, "123456")

    def test_sign_in_then_verify(self, auth_service, clock):
        user, secret = _enable_2fa(auth_service, clock)
        pending = auth_service.sign_in("ana@example.com", PASSWORD)
        assert pending.requires_second_factor
        assert pending.session_token is None
        assert pending.expires_in == 300

        clock.advance(seconds=40)
        result = auth_service.complete_second_factor(pending.second_factor_token, pyotp.TOTP(secret).at(clock()))
        assert result.session_token
        assert result.user.id == user.id

        with pytest.raises(TokenAlreadyUsed):
            auth_service.complete_second_factor(pending.second_factor_token, pyotp.TOTP(secret).at(clock()))

    def test_magic_link_also_gated(self, auth_service, clock):
        _enable_2fa(auth_service, clock)
        token = _token_from_link(auth_service.request_magic_link("ana@example.com").link)
        assert auth_service.verify_magic_link(token).requires_second_factor

    def test_attempt_cap_consumes_challenge(self, auth_service, clock, settings):
        _, secret = _enable_2fa(auth_service, clock)
        pending = auth_service.sign_in("ana@example.com", PASSWORD)
        for _ in range(settings.second_factor_max_attempts):
            with pytest.raises(InvalidCredentials):
                auth_service.complete_second_factor(pending.second_factor_token, "000000")
        with pytest.raises(TokenAlreadyUsed):
            auth_service.complete_second_factor(pending.second_factor_token, pyotp.TOTP(secret).at(clock()))

    def test_challenge_expires(self, auth_service, clock):
        _, secret = _enable_2fa(auth_service, clock)
        pending = auth_service.sign_in("ana@example.com", PASSWORD)
        clock.advance(minutes=5)
        with pytest.raises(TokenExpired):
            auth_service.complete_second_factor(pending.second_factor_token, pyotp.TOTP(secret).at(clock()))

    def test_unknown_challenge(self, auth_service):
        with pytest.raises(TokenInvalid):
            auth_service.complete_second_factor("f" * 64, "123456")

    def test_disable(self, auth_service, clock):
        user, secret = _enable_2fa(auth_service, clock)
        with pytest.raises(InvalidCredentials):
            auth_service.disable_two_factor(user, "000000")
        updated = auth_service.disable_two_factor(user, pyotp.TOTP(secret).at(clock()))
        assert updated.two_factor_enabled is False
        assert auth_service.sign_in("ana@example.com", PASSWORD).session_token


def test_verify_totp_rejects_malformed_codes():
    secret = pyotp.random_base32()
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    code = pyotp.TOTP(secret).at(now)
    assert verify_totp(secret, f" {code[:3]} {code[3:]} ", now)
    assert not verify_totp(secret, "12345", now)
    assert not verify_totp(secret, "abcdef", now)
    # One step of drift either side is tolerated, two is not.
    assert verify_totp(secret, pyotp.TOTP(secret).at(now - timedelta(seconds=30)), now)
    assert not verify_totp(secret, pyotp.TOTP(secret).at(now - timedelta(seconds=90)), now)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TestSessionTokens:
    def test_round_trip(self, settings):
        tokens = TokenService(settings)
        assert tokens.decode_session_token(tokens.create_session_token("user-1")) == "user-1"

    def test_wrong_secret(self, settings):
        token = TokenService(settings).create_session_token("user-1")
        assert jwt.get_unverified_claims(token)["typ"] == "session"
        other = TokenService(settings.model_copy(update={"secret_key": "z" * 40}))
        assert other.decode_session_token(token) is None

    def test_wrong_type(self, settings):
        forged = jwt.encode({"sub": "user-1", "typ": "refresh"}, settings.secret_key, algorithm="HS256")
        assert TokenService(settings).decode_session_token(forged) is None

    def test_expired(self, settings):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "user-1", "typ": "session", "iat": past, "exp": past + timedelta(hours=1)},
            settings.secret_key,
            algorithm="HS256",
        )
        assert TokenService(settings).decode_session_token(token) is None

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_get_current_user_rejects(self, auth_service, token):
        with pytest.raises(Unauthenticated):
            auth_service.get_current_user(token)

    def test_deleted_user(self, auth_service, settings):
        token = TokenService(settings).create_session_token("missing-user")
        with pytest.raises(Unauthenticated):
            auth_service.get_current_user(token)


def test_purge_expired_tokens(auth_service, clock):
    auth_service.request_magic_link("a@b.com")
    clock.advance(hours=1, minutes=1)
    assert auth_service.purge_expired_tokens(retention=timedelta(0)) == 1
    assert auth_service.purge_expired_tokens(retention=timedelta(0)) == 0
