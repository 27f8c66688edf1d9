"""
rooms/viewers.py -- Anonymous viewer join and per-request authorization.

A viewer presents only a viewer hash. There is no password and no session
table beyond the viewer row: possession of the hash is the credential, and
its validity is re-derived from the room on every request (never cached), so
expiry takes effect immediately.

authorize_viewer() check order is part of the contract:
  1. format      -> ValidationError  (before any storage access)
  2. lookup      -> ViewerNotFound
  3. room live   -> RoomExpired
  4. room match  -> RoomMismatch

record_view() and toggle_like() look the story up after the format check and
then run authorize_viewer() against the story's room, so a viewer can only
react to stories of the room it joined.
"""

from __future__ import annotations

import logging

from core.clock import Clock, utcnow
from core.codes import generate_viewer_hash, is_valid_hash_format
from core.errors import RoomExpired, RoomMismatch, StoryNotFound, ValidationError, ViewerNotFound
from rooms.models import LikeToggled, Room, Story, Viewer, ViewerJoined, ViewerSession, is_active
from rooms.sanitize import normalize_avatar, sanitize_nickname
from rooms.service import RoomService
from rooms.store import RoomStore

logger = logging.getLogger("zorem.rooms")

TRENDING_SIZE = 24

# Shown when too few avatars have been used yet.
CURATED_AVATARS = (
    "😍", "🫂", "😜", "😭", "😱", "😰", "🥵", "🥶",
    "😳", "🗿", "🥴", "😲", "🥱", "😴", "🤤", "🎀",
    "💅", "😐", "😏", "😒", "🙄", "😬", "😌", "😔",
    "🤯", "🤠", "🥳", "😎", "🤓", "🧐", "😤", "😡",
    "😈", "💀", "🤡", "👻", "👽", "🤖", "😺", "🙈",
)


class ViewerService:
    def __init__(self, store: RoomStore, rooms: RoomService, clock: Clock = utcnow) -> None:
        self.store = store
        self.rooms = rooms
        self.clock = clock

    def join_room(self, code: str, nickname: object, avatar: object = None) -> ViewerJoined:
        """Resolve the room, sanitize the nickname, then mint a viewer hash."""
        room = self.rooms.resolve_active_room(code)
        clean_nickname = sanitize_nickname(nickname)
        now = self.clock()
        viewer = Viewer(
            room_id=room.id,
            viewer_hash=generate_viewer_hash(room.id, clean_nickname, now),
            nickname=clean_nickname,
            avatar=normalize_avatar(avatar),
            joined_at=now,
            last_seen_at=now,
        )
        self.store.add_viewer(viewer)
        logger.info("Viewer joined room=%s", room.id)
        return ViewerJoined(viewer=viewer, room=room)

    def authorize_viewer(self, viewer_hash: object, expected_room_id: str | None = None) -> ViewerSession:
        if not is_valid_hash_format(viewer_hash):
            raise ValidationError("Invalid viewer_hash format.")
        viewer = self.store.get_viewer_by_hash(viewer_hash)
        if viewer is None:
            raise ViewerNotFound()
        room = self.store.get_room(viewer.room_id)
        now = self.clock()
        if room is None or not is_active(room, now):
            raise RoomExpired()
        if expected_room_id is not None and room.id != expected_room_id:
            raise RoomMismatch()
        self.store.touch_viewer(viewer.id, now)
        viewer.last_seen_at = now
        return ViewerSession(viewer=viewer, room=room)

    def list_viewers(self, room: Room) -> list[Viewer]:
        return self.store.list_viewers(room.id)

    # -- story engagement ------------------------------------------------------

    def _authorize_for_story(self, viewer_hash: object, story_id: str) -> tuple[ViewerSession, Story]:
        """Format first, then the story, then the viewer against the story's room."""
        if not is_valid_hash_format(viewer_hash):
            raise ValidationError("Invalid viewer_hash format.")
        story = self.store.get_story(story_id)
        if story is None:
            raise StoryNotFound()
        return self.authorize_viewer(viewer_hash, expected_room_id=story.room_id), story

    def record_view(self, viewer_hash: object, story_id: str) -> bool:
        """Record that the viewer saw the story. Returns False for a repeat view."""
        session, story = self._authorize_for_story(viewer_hash, story_id)
        return self.store.record_view(story.id, session.viewer.id, self.clock())

    def toggle_like(self, viewer_hash: object, story_id: str) -> LikeToggled:
        session, story = self._authorize_for_story(viewer_hash, story_id)
        liked = self.store.toggle_like(story.id, session.viewer.id, self.clock())
        return LikeToggled(story_id=story.id, liked=liked, like_count=self.store.count_likes(story.id))

    def trending_avatars(self, limit: int = TRENDING_SIZE) -> tuple[list[str], int]:
        """Most used avatars, topped up from CURATED_AVATARS to `limit` entries.

        Returns (avatars, number that came from real usage).
        """
        used = [avatar for avatar, _ in self.store.avatar_counts(limit)]
        fillers = [a for a in CURATED_AVATARS if a not in used][: max(0, limit - len(used))]
        return used + fillers, len(used)
