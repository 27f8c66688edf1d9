"""
rooms/store.py -- SQLAlchemy Core persistence for rooms, viewers, and stories.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
RoomStore is the repository; _row_to_room / _row_to_viewer / _row_to_story are
the mappers. Services never touch SQL directly.

Code uniqueness:
  rooms.code      -- the code the room was issued with. Never cleared, so an
                     expired code still resolves to "expired" rather than
                     "not found".
  rooms.code_slot -- nullable UNIQUE copy of the code, held only while the
                     room is live. claim_room() frees stale slots and inserts
                     the new room inside one transaction; the UNIQUE index
                     turns a concurrent claim of the same code into an
                     IntegrityError, which the caller treats as a collision.

Views and likes:
  story_views and story_likes are keyed (story_id, viewer_id). A repeat view
  hits the primary key and reports "not new"; toggle_like() deletes or inserts
  inside one transaction.

Datetimes are stored naive UTC (core.clock.to_db / from_db).

Layer rule: imports from core/ and rooms/ only.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.clock import from_db, to_db
from rooms.models import Room, RoomStats, Story, Viewer

logger = logging.getLogger("zorem.rooms")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rooms = Table(
    "rooms",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("code", String(6), nullable=False, index=True),
    Column("code_slot", String(6), unique=True),  # NULL once expired or closed
    Column("owner_id", String(32), index=True),
    Column("duration", String(8), nullable=False),
    Column("allow_uploads", Boolean, nullable=False, default=False),
    Column("max_uploads_per_viewer", Integer, nullable=False, default=1),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("closed_at", DateTime),
)

_viewers = Table(
    "viewers",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("room_id", String(32), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("viewer_hash", String(64), nullable=False, unique=True),
    Column("nickname", String(40), nullable=False),
    Column("avatar", String(16), nullable=False),
    Column("joined_at", DateTime, nullable=False),
    Column("last_seen_at", DateTime, nullable=False),
)

_stories = Table(
    "stories",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("room_id", String(32), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("viewer_id", String(32), index=True),  # NULL = owner upload
    Column("media_key", String(255), nullable=False, unique=True),
    Column("media_type", String(10), nullable=False),
    Column("content_type", String(50), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("media_deleted_at", DateTime),  # object removed from the bucket
)

# One row per (story, viewer); the composite key makes repeat views no-ops.
_story_views = Table(
    "story_views",
    _metadata,
    Column("story_id", String(32), ForeignKey("stories.id", ondelete="CASCADE"), primary_key=True),
    Column("viewer_id", String(32), ForeignKey("viewers.id", ondelete="CASCADE"), primary_key=True),
    Column("viewed_at", DateTime, nullable=False),
)

_story_likes = Table(
    "story_likes",
    _metadata,
    Column("story_id", String(32), ForeignKey("stories.id", ondelete="CASCADE"), primary_key=True),
    Column("viewer_id", String(32), ForeignKey("viewers.id", ondelete="CASCADE"), primary_key=True),
    Column("liked_at", DateTime, nullable=False),
)


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _row_to_room(row) -> Room:
    return Room(
        id=row.id,
        code=row.code,
        owner_id=row.owner_id,
        duration=row.duration,
        allow_uploads=bool(row.allow_uploads),
        max_uploads_per_viewer=row.max_uploads_per_viewer,
        created_at=from_db(row.created_at),
        expires_at=from_db(row.expires_at),
        closed_at=from_db(row.closed_at),
    )


def _row_to_viewer(row, last_viewed_at: datetime | None = None) -> Viewer:
    return Viewer(
        id=row.id,
        room_id=row.room_id,
        viewer_hash=row.viewer_hash,
        nickname=row.nickname,
        avatar=row.avatar,
        joined_at=from_db(row.joined_at),
        last_seen_at=from_db(row.last_seen_at),
        last_viewed_at=from_db(last_viewed_at),
    )


def _row_to_story(row) -> Story:
    return Story(
        id=row.id,
        room_id=row.room_id,
        viewer_id=row.viewer_id,
        media_key=row.media_key,
        media_type=row.media_type,
        content_type=row.content_type,
        created_at=from_db(row.created_at),
        media_deleted_at=from_db(row.media_deleted_at),
    )


def _row_to_stats(row) -> RoomStats:
    return RoomStats(
        viewer_count=row.viewer_count,
        story_count=row.story_count,
        total_views=row.total_views,
        total_likes=row.total_likes,
    )


def _stats_columns(room_ref):
    """Correlated count subqueries for a room; room_ref is a column or a room id."""
    viewer_count = select(func.count(_viewers.c.id)).where(_viewers.c.room_id == room_ref).scalar_subquery()
    story_count = select(func.count(_stories.c.id)).where(_stories.c.room_id == room_ref).scalar_subquery()
    total_views = (
        select(func.count())
        .select_from(_story_views.join(_stories, _story_views.c.story_id == _stories.c.id))
        .where(_stories.c.room_id == room_ref)
        .scalar_subquery()
    )
    total_likes = (
        select(func.count())
        .select_from(_story_likes.join(_stories, _story_likes.c.story_id == _stories.c.id))
        .where(_stories.c.room_id == room_ref)
        .scalar_subquery()
    )
    return (
        viewer_count.label("viewer_count"),
        story_count.label("story_count"),
        total_views.label("total_views"),
        total_likes.label("total_likes"),
    )


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RoomStore:
    """Repository for Room, Viewer, and Story rows plus story views and likes.

    Usage:
        store = RoomStore(create_db_engine("sqlite:///zorem.db"))
        if store.claim_room(room, now):
            ...
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(self.engine)

    # -- rooms ---------------------------------------------------------------

    def claim_room(self, room: Room, now: datetime) -> bool:
        """Insert room holding its code slot. Return False if the code is live elsewhere.

        Stale slots for the same code (expired or closed rooms) are released
        in the same transaction, so a code becomes claimable the instant its
        previous room stops being active.
        """
        if not room.id:
            room.id = _new_id()
        db_now = to_db(now)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _rooms.update()
                    .where(
                        and_(
                            _rooms.c.code_slot == room.code,
                            or_(_rooms.c.expires_at <= db_now, _rooms.c.closed_at.is_not(None)),
                        )
                    )
                    .values(code_slot=None)
                )
                conn.execute(
                    _rooms.insert().values(
                        id=room.id,
                        code=room.code,
                        code_slot=room.code,
                        owner_id=room.owner_id,
                        duration=room.duration,
                        allow_uploads=room.allow_uploads,
                        max_uploads_per_viewer=room.max_uploads_per_viewer,
                        created_at=to_db(room.created_at),
                        expires_at=to_db(room.expires_at),
                        closed_at=None,
                    )
                )
        except IntegrityError:
            logger.debug("Room code collision on claim")
            return False
        return True

    def get_room(self, room_id: str) -> Room | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_rooms).where(_rooms.c.id == room_id)).fetchone()
        return _row_to_room(row) if row else None

    def get_latest_by_code(self, code: str) -> Room | None:
        """Return the room currently holding code, else the most recent room issued it."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_rooms).where(_rooms.c.code_slot == code)).fetchone()
            if row is None:
                row = conn.execute(
                    select(_rooms).where(_rooms.c.code == code).order_by(_rooms.c.created_at.desc()).limit(1)
                ).fetchone()
        return _row_to_room(row) if row else None

    def list_by_owner(self, owner_id: str) -> list[tuple[Room, RoomStats]]:
        """Return (room, stats) pairs, newest first."""
        stmt = (
            select(_rooms, *_stats_columns(_rooms.c.id))
            .where(_rooms.c.owner_id == owner_id)
            .order_by(_rooms.c.created_at.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(_row_to_room(r), _row_to_stats(r)) for r in rows]

    def stats_for_room(self, room_id: str) -> RoomStats:
        with self.engine.connect() as conn:
            row = conn.execute(select(*_stats_columns(room_id))).one()
        return _row_to_stats(row)

    def count_by_owner(self, owner_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count(_rooms.c.id)).where(_rooms.c.owner_id == owner_id)).scalar_one()

    def close_room(self, room_id: str, now: datetime) -> bool:
        """Stamp closed_at and release the code slot. False if already closed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _rooms.update()
                .where(and_(_rooms.c.id == room_id, _rooms.c.closed_at.is_(None)))
                .values(closed_at=to_db(now), code_slot=None)
            )
            conn.commit()
        return result.rowcount == 1

    def release_expired_slots(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _rooms.update()
                .where(and_(_rooms.c.code_slot.is_not(None), _rooms.c.expires_at <= to_db(now)))
                .values(code_slot=None)
            )
            conn.commit()
        return result.rowcount

    # -- viewers -------------------------------------------------------------

    def add_viewer(self, viewer: Viewer) -> Viewer:
        if not viewer.id:
            viewer.id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _viewers.insert().values(
                    id=viewer.id,
                    room_id=viewer.room_id,
                    viewer_hash=viewer.viewer_hash,
                    nickname=viewer.nickname,
                    avatar=viewer.avatar,
                    joined_at=to_db(viewer.joined_at),
                    last_seen_at=to_db(viewer.last_seen_at),
                )
            )
            conn.commit()
        return viewer

    def get_viewer_by_hash(self, viewer_hash: str) -> Viewer | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_viewers).where(_viewers.c.viewer_hash == viewer_hash)).fetchone()
        return _row_to_viewer(row) if row else None

    def touch_viewer(self, viewer_id: str, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_viewers.update().where(_viewers.c.id == viewer_id).values(last_seen_at=to_db(now)))
            conn.commit()

    def list_viewers(self, room_id: str) -> list[Viewer]:
        """Viewers in join order, each with the time of its latest story view."""
        last_viewed = (
            select(func.max(_story_views.c.viewed_at))
            .where(_story_views.c.viewer_id == _viewers.c.id)
            .scalar_subquery()
            .label("last_viewed_at")
        )
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_viewers, last_viewed).where(_viewers.c.room_id == room_id).order_by(_viewers.c.joined_at)
            ).fetchall()
        return [_row_to_viewer(r, r.last_viewed_at) for r in rows]

    def avatar_counts(self, limit: int) -> list[tuple[str, int]]:
        """Most used viewer avatars across all rooms, most popular first."""
        uses = func.count(_viewers.c.id).label("uses")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_viewers.c.avatar, uses)
                .group_by(_viewers.c.avatar)
                .order_by(uses.desc(), func.max(_viewers.c.joined_at).desc())
                .limit(limit)
            ).fetchall()
        return [(r.avatar, r.uses) for r in rows]

    # -- stories -------------------------------------------------------------

    def add_story(self, story: Story) -> Story:
        """Insert a story. Raises IntegrityError if its media_key is already recorded."""
        if not story.id:
            story.id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _stories.insert().values(
                    id=story.id,
                    room_id=story.room_id,
                    viewer_id=story.viewer_id,
                    media_key=story.media_key,
                    media_type=story.media_type,
                    content_type=story.content_type,
                    created_at=to_db(story.created_at),
                    media_deleted_at=None,
                )
            )
            conn.commit()
        return story

    def get_story(self, story_id: str) -> Story | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_stories).where(_stories.c.id == story_id)).fetchone()
        return _row_to_story(row) if row else None

    def list_stories(self, room_id: str) -> list[tuple[Story, int, int]]:
        """Return (story, view_count, like_count) for stories whose media still exists, oldest first."""
        views = (
            select(func.count()).select_from(_story_views).where(_story_views.c.story_id == _stories.c.id)
        ).scalar_subquery()
        likes = (
            select(func.count()).select_from(_story_likes).where(_story_likes.c.story_id == _stories.c.id)
        ).scalar_subquery()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_stories, views.label("view_count"), likes.label("like_count"))
                .where(and_(_stories.c.room_id == room_id, _stories.c.media_deleted_at.is_(None)))
                .order_by(_stories.c.created_at)
            ).fetchall()
        return [(_row_to_story(r), r.view_count, r.like_count) for r in rows]

    def count_viewer_stories(self, room_id: str, viewer_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count(_stories.c.id)).where(
                    and_(_stories.c.room_id == room_id, _stories.c.viewer_id == viewer_id)
                )
            ).scalar_one()

    # -- views and likes -----------------------------------------------------

    def record_view(self, story_id: str, viewer_id: str, now: datetime) -> bool:
        """Record a first view. False if this viewer already viewed the story."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _story_views.insert().values(story_id=story_id, viewer_id=viewer_id, viewed_at=to_db(now))
                )
        except IntegrityError:
            return False
        return True

    def toggle_like(self, story_id: str, viewer_id: str, now: datetime) -> bool:
        """Flip the viewer's like on a story. Returns True if the story is now liked."""
        key = and_(_story_likes.c.story_id == story_id, _story_likes.c.viewer_id == viewer_id)
        try:
            with self.engine.begin() as conn:
                if conn.execute(_story_likes.delete().where(key)).rowcount:
                    return False
                conn.execute(
                    _story_likes.insert().values(story_id=story_id, viewer_id=viewer_id, liked_at=to_db(now))
                )
        except IntegrityError:
            # A concurrent toggle inserted the same like first.
            return True
        return True

    def count_likes(self, story_id: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_story_likes).where(_story_likes.c.story_id == story_id)
            ).scalar_one()

    # -- media housekeeping --------------------------------------------------

    def list_media_to_purge(self, now: datetime, limit: int = 100) -> list[Story]:
        """Stories of expired or closed rooms whose object is still in the bucket."""
        db_now = to_db(now)
        stmt = (
            select(_stories)
            .join(_rooms, _stories.c.room_id == _rooms.c.id)
            .where(
                and_(
                    _stories.c.media_deleted_at.is_(None),
                    or_(_rooms.c.expires_at <= db_now, _rooms.c.closed_at.is_not(None)),
                )
            )
            .order_by(_stories.c.created_at)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_story(r) for r in rows]

    def mark_media_deleted(self, story_id: str, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_stories.update().where(_stories.c.id == story_id).values(media_deleted_at=to_db(now)))
            conn.commit()
