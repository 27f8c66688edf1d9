"""
media/uploads.py -- Upload authorization bridge.

An upload is two calls. The first turns an already-authorized principal into
a presigned PUT URL; nothing is recorded yet. The second, made after the PUT
succeeded, records the Story:

  authorize_viewer_upload(session, ...)  viewer path. The room must allow
  confirm_viewer_upload(session, ...)    uploads and the viewer must be under
                                         max_uploads_per_viewer.
  authorize_owner_upload(room, ...)      owner path. Not capped.
  confirm_owner_upload(room, ...)

Both steps require a live room. Authorization resolves the content type
against the allowed tables and mints a key under stories/{room_id}/;
confirmation only accepts a key of that shape for the same room, and derives
the stored content type from the key's extension. A key is recorded at most
once (StoryAlreadyRecorded).

The per-viewer cap is count-then-insert, not atomic: two simultaneous
confirmations from one viewer can both pass at the cap boundary. The cap is a
fairness limit, not a security boundary.

purge_expired_media() deletes the objects of stories whose room expired or
was closed and stamps media_deleted_at. The story rows stay for the counts.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from core.clock import Clock, utcnow
from core.errors import RoomExpired, StoryAlreadyRecorded, UploadLimitReached, UploadsNotAllowed, ValidationError
from media.storage import ObjectStorage
from rooms.models import Room, Story, ViewerSession, is_active
from rooms.store import RoomStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.media")

MEDIA_TYPES = ("image", "video")

IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

VIDEO_TYPES = {
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}

_DEFAULTS = {"image": ("image/jpeg", "jpg"), "video": ("video/mp4", "mp4")}

# Extension -> canonical content type, per media type. First table entry wins.
_EXTENSIONS: dict[str, dict[str, str]] = {"image": {}, "video": {}}
for _content_type, _ext in IMAGE_TYPES.items():
    _EXTENSIONS["image"].setdefault(_ext, _content_type)
for _content_type, _ext in VIDEO_TYPES.items():
    _EXTENSIONS["video"].setdefault(_ext, _content_type)

_MEDIA_KEY_RE = re.compile(r"stories/(?P<room_id>[^/]{1,64})/\d{1,15}-[0-9a-f]{16}\.(?P<ext>[a-z0-9]{2,5})")


@dataclass
class UploadGrant:
    upload_url: str
    media_key: str
    content_type: str
    expires_in: int
    uploads_remaining: int | None = None  # None for owner uploads


@dataclass
class StoryView:
    story: Story
    media_url: str
    view_count: int = 0
    like_count: int = 0


def resolve_upload_content(media_type: str, content_type: str | None = None) -> tuple[str, str]:
    """Return (content_type, file_extension) for an upload request.

    An empty content type falls back to the media type's default.
    """
    if media_type not in MEDIA_TYPES:
        raise ValidationError('media_type must be "image" or "video"')
    normalized = content_type.strip().lower() if isinstance(content_type, str) else ""
    if not normalized:
        return _DEFAULTS[media_type]
    table = IMAGE_TYPES if media_type == "image" else VIDEO_TYPES
    ext = table.get(normalized)
    if ext is None:
        raise ValidationError(f"Unsupported {media_type} content_type")
    return normalized, ext


def generate_media_key(room_id: str, file_extension: str, now_ms: int) -> str:
    return f"stories/{room_id}/{now_ms}-{secrets.token_hex(8)}.{file_extension}"


def content_type_for_key(room_id: str, media_key: object, media_type: str) -> str:
    """Check a client-reported key against the room and media type.

    Returns the content type implied by the key's extension.
    """
    if media_type not in MEDIA_TYPES:
        raise ValidationError('media_type must be "image" or "video"')
    match = _MEDIA_KEY_RE.fullmatch(media_key) if isinstance(media_key, str) else None
    if match is None or match.group("room_id") != room_id:
        raise ValidationError("media_key was not issued for this room.")
    content_type = _EXTENSIONS[media_type].get(match.group("ext"))
    if content_type is None:
        raise ValidationError(f"media_key is not a {media_type} upload.")
    return content_type


class UploadBridge:
    def __init__(
        self,
        store: RoomStore,
        storage: ObjectStorage,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.storage = storage
        self.settings = settings
        self.clock = clock

    # -- step 1: presigned PUT -----------------------------------------------

    def authorize_viewer_upload(
        self, session: ViewerSession, media_type: str, content_type: str | None = None
    ) -> UploadGrant:
        room = session.room
        resolved = resolve_upload_content(media_type, content_type)
        remaining = self._check_viewer_quota(session)
        grant = self._grant(room, resolved)
        grant.uploads_remaining = remaining
        return grant

    def authorize_owner_upload(self, room: Room, media_type: str, content_type: str | None = None) -> UploadGrant:
        resolved = resolve_upload_content(media_type, content_type)
        self._require_live(room)
        return self._grant(room, resolved)

    # -- step 2: record the story --------------------------------------------

    def confirm_viewer_upload(self, session: ViewerSession, media_key: object, media_type: str) -> StoryView:
        content_type = content_type_for_key(session.room.id, media_key, media_type)
        self._check_viewer_quota(session)
        return self._record(session.room, media_key, media_type, content_type, viewer_id=session.viewer.id)

    def confirm_owner_upload(self, room: Room, media_key: object, media_type: str) -> StoryView:
        content_type = content_type_for_key(room.id, media_key, media_type)
        self._require_live(room)
        return self._record(room, media_key, media_type, content_type, viewer_id=None)

    # -- reads and housekeeping ----------------------------------------------

    def list_stories(self, room: Room) -> list[StoryView]:
        ttl = self.settings.download_url_ttl_seconds
        return [
            StoryView(
                story=story,
                media_url=self.storage.presign_get(story.media_key, ttl),
                view_count=views,
                like_count=likes,
            )
            for story, views, likes in self.store.list_stories(room.id)
        ]

    def purge_expired_media(self, batch_size: int = 100) -> int:
        """Delete stored objects of stories in expired or closed rooms.

        A failed delete is logged and retried on the next run.
        """
        now = self.clock()
        deleted = 0
        for story in self.store.list_media_to_purge(now, limit=batch_size):
            try:
                self.storage.delete(story.media_key)
            except Exception:
                logger.exception("Failed to delete media for story=%s", story.id)
                continue
            self.store.mark_media_deleted(story.id, now)
            deleted += 1
        if deleted:
            logger.info("Deleted media of %d expired story(ies)", deleted)
        return deleted

    # -- internals -------------------------------------------------------------

    def _require_live(self, room: Room) -> None:
        if not is_active(room, self.clock()):
            raise RoomExpired()

    def _check_viewer_quota(self, session: ViewerSession) -> int:
        """Return the viewer's unused upload slots, raising if there are none."""
        room = session.room
        self._require_live(room)
        if not room.allow_uploads:
            raise UploadsNotAllowed()
        used = self.store.count_viewer_stories(room.id, session.viewer.id)
        remaining = room.max_uploads_per_viewer - used
        if remaining <= 0:
            raise UploadLimitReached(
                f"Upload limit reached. Maximum {room.max_uploads_per_viewer} stories per viewer."
            )
        return remaining

    def _grant(self, room: Room, resolved: tuple[str, str]) -> UploadGrant:
        content_type, ext = resolved
        key = generate_media_key(room.id, ext, int(self.clock().timestamp() * 1000))
        ttl = self.settings.upload_url_ttl_seconds
        url = self.storage.presign_put(key, content_type, ttl)
        logger.info("Upload URL issued room=%s", room.id)
        return UploadGrant(upload_url=url, media_key=key, content_type=content_type, expires_in=ttl)

    def _record(
        self, room: Room, media_key: str, media_type: str, content_type: str, viewer_id: str | None
    ) -> StoryView:
        story = Story(
            room_id=room.id,
            viewer_id=viewer_id,
            media_key=media_key,
            media_type=media_type,
            content_type=content_type,
            created_at=self.clock(),
        )
        media_url = self.storage.presign_get(media_key, self.settings.download_url_ttl_seconds)
        try:
            self.store.add_story(story)
        except IntegrityError as exc:
            raise StoryAlreadyRecorded() from exc
        logger.info("Story recorded room=%s story=%s owner=%s", room.id, story.id, viewer_id is None)
        return StoryView(story=story, media_url=media_url)
