"""
rooms/models.py -- Domain dataclasses for rooms, viewers, and stories.

Pattern: Data class. The one piece of logic that lives here is is_active(),
the single predicate every access decision goes through. It takes `now`
explicitly so callers (and tests) decide what time it is.

Layer rule: no imports from api/, auth/, or media/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

DURATIONS: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "72h": timedelta(hours=72),
    "7d": timedelta(days=7),
}

DEFAULT_AVATAR = "😀"


@dataclass
class Room:
    """A time-boxed, code-addressed container for stories.

    closed_at is the soft-deactivation stamp (owner closed the room early).
    A closed room behaves exactly like an expired one for viewers.
    """

    id: str
    code: str
    duration: str  # one of DURATIONS
    allow_uploads: bool
    created_at: datetime
    expires_at: datetime
    owner_id: str | None = None  # None only on anonymous test paths
    max_uploads_per_viewer: int = 1
    closed_at: datetime | None = None


def is_active(room: Room, now: datetime) -> bool:
    return room.closed_at is None and now < room.expires_at


def hours_remaining(room: Room, now: datetime) -> int:
    seconds = (room.expires_at - now).total_seconds()
    return max(0, math.floor(seconds / 3600))


@dataclass
class RoomStats:
    viewer_count: int = 0
    story_count: int = 0
    total_views: int = 0
    total_likes: int = 0


@dataclass
class RoomSummary:
    """Owner-facing view of a room with aggregate counts."""

    room: Room
    hours_remaining: int
    is_expired: bool
    viewer_count: int = 0
    story_count: int = 0
    total_views: int = 0
    total_likes: int = 0


@dataclass
class Viewer:
    """An anonymous viewer identity. viewer_hash IS the credential."""

    room_id: str
    viewer_hash: str
    nickname: str
    joined_at: datetime
    last_seen_at: datetime
    avatar: str = DEFAULT_AVATAR
    id: str = ""
    last_viewed_at: datetime | None = None  # latest story view; filled by list_viewers


@dataclass
class Story:
    room_id: str
    media_key: str
    media_type: str  # "image" | "video"
    content_type: str
    created_at: datetime
    viewer_id: str | None = None  # None = uploaded by the room owner
    id: str = ""
    media_deleted_at: datetime | None = None  # object removed by the media reaper


@dataclass
class RoomCreated:
    """Public view of a freshly created room."""

    room: Room
    link: str
    qr_data: str | None  # SVG data URL of link; None if rendering failed


@dataclass
class ViewerJoined:
    viewer: Viewer
    room: Room


@dataclass
class ViewerSession:
    """A viewer authorized against a live room, re-derived on every request."""

    viewer: Viewer
    room: Room


@dataclass
class LikeToggled:
    story_id: str
    liked: bool
    like_count: int
