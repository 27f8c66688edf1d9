"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same shape as rooms/store.py).
UserStore is the repository; _row_to_user / _row_to_magic_link /
_row_to_challenge are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Magic links and second-factor challenges are single-use. Consumption is a
  single conditional UPDATE (... WHERE used_at IS NULL AND expires_at > now)
  and the affected row count decides the winner, so two concurrent verifies
  of the same token cannot both succeed regardless of isolation level.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code (link_oauth is only
  called after get_by_oauth misses) because SQLite treats NULLs as distinct.

Layer rule: imports from core/ and auth/ only.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table, Text, and_, select
from sqlalchemy.engine import Engine

from auth.models import LINK_SIGN_IN, MagicLink, SecondFactorChallenge, User
from core.clock import from_db, to_db, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for magic-link / OAuth-only users
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("two_factor_enabled", Boolean, nullable=False, default=False),
    Column("two_factor_secret", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("last_login", DateTime),
)

_magic_links = Table(
    "magic_links",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("email", String(255), nullable=False, index=True),
    Column("purpose", String(20), nullable=False, default=LINK_SIGN_IN),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("used_at", DateTime),
)

_challenges = Table(
    "second_factor_challenges",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("consumed_at", DateTime),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, MagicLink, and SecondFactorChallenge rows.

    Usage:
        store = UserStore(create_db_engine(settings.database_url))
        user = store.create_user(User(email="a@b.com", password_hash=hash_password("secret")))
        store.get_by_email("a@b.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a concurrent registration of the same address.
        """
        if not user.id:
            user.id = uuid.uuid4().hex
        if user.created_at is None:
            user.created_at = utcnow()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    email=user.email,
                    password_hash=user.password_hash,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    email_verified=user.email_verified,
                    two_factor_enabled=user.two_factor_enabled,
                    two_factor_secret=user.two_factor_secret,
                    created_at=to_db(user.created_at),
                    last_login=to_db(user.last_login) if user.last_login else None,
                )
            )
            conn.commit()
        return user

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users).where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: str, provider: str, subject: str) -> None:
        self.update_user(user_id, oauth_provider=provider, oauth_subject=subject, email_verified=True)

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable columns. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str, now: datetime) -> None:
        self.update_user(user_id, last_login=to_db(now))

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    def add_magic_link(self, link: MagicLink) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _magic_links.insert().values(
                    token_hash=link.token_hash,
                    email=link.email,
                    purpose=link.purpose,
                    created_at=to_db(link.created_at),
                    expires_at=to_db(link.expires_at),
                    used_at=None,
                )
            )
            conn.commit()

    def get_magic_link(self, token_hash: str) -> MagicLink | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_magic_links).where(_magic_links.c.token_hash == token_hash)).fetchone()
        return _row_to_magic_link(row) if row is not None else None

    def consume_magic_link(self, token_hash: str, now: datetime, purpose: str = LINK_SIGN_IN) -> bool:
        """Mark the link used if it is unused, unexpired and minted for `purpose`.

        True only for the winner.
        """
        db_now = to_db(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _magic_links.update()
                .where(
                    and_(
                        _magic_links.c.token_hash == token_hash,
                        _magic_links.c.purpose == purpose,
                        _magic_links.c.used_at.is_(None),
                        _magic_links.c.expires_at > db_now,
                    )
                )
                .values(used_at=db_now)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Second-factor challenges
    # ------------------------------------------------------------------

    def add_challenge(self, challenge: SecondFactorChallenge) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.insert().values(
                    token_hash=challenge.token_hash,
                    user_id=challenge.user_id,
                    created_at=to_db(challenge.created_at),
                    expires_at=to_db(challenge.expires_at),
                    attempts=0,
                    consumed_at=None,
                )
            )
            conn.commit()

    def get_challenge(self, token_hash: str) -> SecondFactorChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_challenges).where(_challenges.c.token_hash == token_hash)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def consume_challenge(self, token_hash: str, now: datetime) -> bool:
        db_now = to_db(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.update()
                .where(
                    and_(
                        _challenges.c.token_hash == token_hash,
                        _challenges.c.consumed_at.is_(None),
                        _challenges.c.expires_at > db_now,
                    )
                )
                .values(consumed_at=db_now)
            )
            conn.commit()
        return result.rowcount == 1

    def record_failed_attempt(self, token_hash: str, now: datetime, max_attempts: int) -> int:
        """Increment attempts; consume the challenge once max_attempts is reached.

        Both statements run in one transaction. Returns the attempt count.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _challenges.update()
                .where(and_(_challenges.c.token_hash == token_hash, _challenges.c.consumed_at.is_(None)))
                .values(attempts=_challenges.c.attempts + 1)
            )
            conn.execute(
                _challenges.update()
                .where(
                    and_(
                        _challenges.c.token_hash == token_hash,
                        _challenges.c.consumed_at.is_(None),
                        _challenges.c.attempts >= max_attempts,
                    )
                )
                .values(consumed_at=to_db(now))
            )
            attempts = conn.execute(
                select(_challenges.c.attempts).where(_challenges.c.token_hash == token_hash)
            ).scalar_one_or_none()
        return attempts or 0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired_tokens(self, before: datetime) -> int:
        """Delete magic links and challenges that expired before `before`."""
        cutoff = to_db(before)
        with self.engine.begin() as conn:
            links = conn.execute(_magic_links.delete().where(_magic_links.c.expires_at < cutoff)).rowcount
            challenges = conn.execute(_challenges.delete().where(_challenges.c.expires_at < cutoff)).rowcount
        return links + challenges


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        email_verified=bool(row.email_verified),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        created_at=from_db(row.created_at),
        last_login=from_db(row.last_login),
    )


def _row_to_magic_link(row) -> MagicLink:
    return MagicLink(
        token_hash=row.token_hash,
        email=row.email,
        purpose=row.purpose,
        created_at=from_db(row.created_at),
        expires_at=from_db(row.expires_at),
        used_at=from_db(row.used_at),
    )


def _row_to_challenge(row) -> SecondFactorChallenge:
    return SecondFactorChallenge(
        token_hash=row.token_hash,
        user_id=row.user_id,
        created_at=from_db(row.created_at),
        expires_at=from_db(row.expires_at),
        attempts=row.attempts,
        consumed_at=from_db(row.consumed_at),
    )
