"""
rooms/service.py -- Room lifecycle: create, resolve by code, list, close.

State machine:
  Created -> Active   immediate, on successful insert
  Active  -> Expired  not an event. is_active(room, now) is evaluated on every
                      access, so a room is unusable the instant expires_at
                      passes whether or not anything has run since.

purge_expired_codes() only releases code slots early so claim_room() has less
work; correctness never depends on it having run.

Code allocation:
  Draw a code, try to claim it. A collision (the code is held by a live room)
  means draw again, up to Settings.room_code_max_attempts. Running out raises
  CodeSpaceExhausted, which is logged at ERROR: with ~1e9 codes it signals
  either a broken RNG or an exhausted keyspace, and both need a human.

Layer rule: imports from core/ and rooms/ only.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING

from core.clock import Clock, utcnow
from core.codes import generate_room_code, is_valid_code_format, normalize_code
from core.errors import CodeSpaceExhausted, RoomExpired, RoomNotFound, ValidationError
from core.qr import svg_data_url
from core.ratelimit import LimitClass, RateLimiter
from rooms.models import DURATIONS, Room, RoomCreated, RoomStats, RoomSummary, hours_remaining, is_active
from rooms.store import RoomStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.rooms")


class RoomService:
    """Owns room creation and every code-based lookup.

    Usage:
        service = RoomService(RoomStore(engine), settings)
        created = service.create_room(owner_id=user.id, duration="24h", allow_uploads=True)
        room = service.resolve_active_room("K7Q2MX")
    """

    def __init__(
        self,
        store: RoomStore,
        settings: Settings,
        limiter: RateLimiter | None = None,
        clock: Clock = utcnow,
        code_factory: Callable[[], str] = generate_room_code,
    ) -> None:
        self.store = store
        self.settings = settings
        self.limiter = limiter
        self.clock = clock
        self._code_factory = code_factory

    # ---------------------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------------------

    def create_room(
        self,
        owner_id: str | None,
        duration: str,
        allow_uploads: bool = False,
        max_uploads_per_viewer: int | None = None,
        client_key: str | None = None,
    ) -> RoomCreated:
        """Create a room with a fresh code.

        When client_key is given the room_creation limit is applied before any
        code is drawn. Input is validated first so malformed requests do not
        count against the caller's limit.
        """
        if duration not in DURATIONS:
            raise ValidationError(f"Invalid duration. Must be one of: {', '.join(DURATIONS)}")
        if max_uploads_per_viewer is None:
            max_uploads_per_viewer = 1
        elif isinstance(max_uploads_per_viewer, bool) or not isinstance(max_uploads_per_viewer, int):
            raise ValidationError("max_uploads_per_viewer must be a positive integer")
        elif max_uploads_per_viewer < 1:
            raise ValidationError("max_uploads_per_viewer must be a positive integer")

        if client_key is not None and self.limiter is not None:
            self.limiter.hit(LimitClass.room_creation, client_key)

        now = self.clock()
        attempts = self.settings.room_code_max_attempts
        for attempt in range(1, attempts + 1):
            room = Room(
                id=uuid.uuid4().hex,
                code=self._code_factory(),
                owner_id=owner_id,
                duration=duration,
                allow_uploads=bool(allow_uploads),
                max_uploads_per_viewer=max_uploads_per_viewer,
                created_at=now,
                expires_at=now + DURATIONS[duration],
            )
            if self.store.claim_room(room, now):
                logger.info("Room created id=%s duration=%s uploads=%s", room.id, duration, room.allow_uploads)
                link = self.build_room_link(room.code)
                return RoomCreated(room=room, link=link, qr_data=svg_data_url(link))
            logger.warning("Room code collision (attempt %d/%d)", attempt, attempts)

        logger.error("Room code allocation failed after %d attempts", attempts)
        raise CodeSpaceExhausted()

    def build_room_link(self, code: str) -> str:
        return f"{self.settings.frontend_url}/nickname?code={code}"

    # ---------------------------------------------------------------------------
    # Lookup
    # ---------------------------------------------------------------------------

    def resolve_active_room(self, code: str) -> Room:
        if not is_valid_code_format(code):
            raise ValidationError("Invalid code format. Code must be 6 alphanumeric characters.")
        room = self.store.get_latest_by_code(normalize_code(code))
        if room is None:
            raise RoomNotFound()
        if not is_active(room, self.clock()):
            raise RoomExpired()
        return room

    def _summarize(self, room: Room, stats: RoomStats) -> RoomSummary:
        now = self.clock()
        return RoomSummary(
            room=room,
            hours_remaining=hours_remaining(room, now),
            is_expired=not is_active(room, now),
            viewer_count=stats.viewer_count,
            story_count=stats.story_count,
            total_views=stats.total_views,
            total_likes=stats.total_likes,
        )

    def list_owner_rooms(self, owner_id: str) -> list[RoomSummary]:
        return [self._summarize(room, stats) for room, stats in self.store.list_by_owner(owner_id)]

    def get_owner_room(self, owner_id: str, room_id: str) -> RoomSummary:
        room = self._get_owned(owner_id, room_id)
        return self._summarize(room, self.store.stats_for_room(room.id))

    def count_owner_rooms(self, owner_id: str) -> int:
        return self.store.count_by_owner(owner_id)

    def _get_owned(self, owner_id: str, room_id: str) -> Room:
        room = self.store.get_room(room_id)
        # A room owned by someone else is reported exactly like a missing one.
        if room is None or room.owner_id != owner_id:
            raise RoomNotFound("Room not found or you are not the owner.")
        return room

    # ---------------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------------

    def close_room(self, owner_id: str, room_id: str) -> Room:
        """Soft-close a room ahead of expiry. Closing twice is a no-op."""
        room = self._get_owned(owner_id, room_id)
        if self.store.close_room(room.id, self.clock()):
            logger.info("Room closed id=%s", room.id)
        return self.store.get_room(room.id) or room

    def purge_expired_codes(self) -> int:
        released = self.store.release_expired_slots(self.clock())
        if released:
            logger.info("Released %d expired room code(s)", released)
        return released
