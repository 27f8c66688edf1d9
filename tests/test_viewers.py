"""Unit tests for rooms/viewers.py -- anonymous join, per-request authorization, story views and likes."""

import pytest

from core.codes import is_valid_hash_format
from core.errors import RoomExpired, RoomMismatch, RoomNotFound, StoryNotFound, ValidationError, ViewerNotFound
from rooms.models import DEFAULT_AVATAR, LikeToggled, Story
from rooms.viewers import CURATED_AVATARS, TRENDING_SIZE


@pytest.fixture
def room(room_service):
    return room_service.create_room(owner_id="u1", duration="24h", allow_uploads=True).room


class TestJoinRoom:
    def test_join_mints_hash(self, viewer_service, room, clock):
        joined = viewer_service.join_room(room.code, "Ana", "🐱")
        assert is_valid_hash_format(joined.viewer.viewer_hash)
        assert joined.viewer.nickname == "Ana"
        assert joined.viewer.avatar == "🐱"
        assert joined.viewer.joined_at == clock()
        assert joined.room.id == room.id
        assert joined.room.allow_uploads is True

    def test_same_nickname_twice_gets_distinct_hashes(self, viewer_service, room):
        a = viewer_service.join_room(room.code, "Ana")
        b = viewer_service.join_room(room.code, "Ana")
        assert a.viewer.viewer_hash != b.viewer.viewer_hash

    def test_bad_avatar_falls_back(self, viewer_service, room):
        joined = viewer_service.join_room(room.code, "Ana", "<b>")
        assert joined.viewer.avatar == DEFAULT_AVATAR

    def test_script_nickname_rejected_and_nothing_stored(self, viewer_service, room):
        with pytest.raises(ValidationError):
            viewer_service.join_room(room.code, "<script>alert(1)</script>")
        assert viewer_service.list_viewers(room) == []

    def test_unknown_code(self, viewer_service):
        with pytest.raises(RoomNotFound):
            viewer_service.join_room("ZZZZZZ", "Ana")

    def test_expired_room(self, viewer_service, room, clock):
        clock.advance(hours=24)
        with pytest.raises(RoomExpired):
            viewer_service.join_room(room.code, "Ana")

    def test_room_checked_before_nickname(self, viewer_service, room, clock):
        clock.advance(hours=25)
        with pytest.raises(RoomExpired):
            viewer_service.join_room(room.code, "")


class TestAuthorizeViewer:
    def test_valid_session_touches_last_seen(self, viewer_service, room, clock):
        joined = viewer_service.join_room(room.code, "Ana")
        clock.advance(minutes=10)
        session = viewer_service.authorize_viewer(joined.viewer.viewer_hash)
        assert session.room.id == room.id
        assert session.viewer.last_seen_at == clock()
        [listed] = viewer_service.list_viewers(room)
        assert listed.last_seen_at == clock()

    @pytest.mark.parametrize("value", ["", "abc", "A" * 64, None, 7])
    def test_format_checked_first(self, viewer_service, value):
        with pytest.raises(ValidationError):
            viewer_service.authorize_viewer(value)

    def test_unknown_hash(self, viewer_service):
        with pytest.raises(ViewerNotFound):
            viewer_service.authorize_viewer("f" * 64)

    def test_expired_room_rejects_immediately(self, viewer_service, room, clock):
        joined = viewer_service.join_room(room.code, "Ana")
        clock.advance(hours=24)
        with pytest.raises(RoomExpired):
            viewer_service.authorize_viewer(joined.viewer.viewer_hash)

    def test_closed_room_rejects(self, viewer_service, room_service, room):
        joined = viewer_service.join_room(room.code, "Ana")
        room_service.close_room("u1", room.id)
        with pytest.raises(RoomExpired):
            viewer_service.authorize_viewer(joined.viewer.viewer_hash)

    def test_room_mismatch(self, viewer_service, room_service, room):
        other = room_service.create_room(owner_id="u1", duration="1h").room
        joined = viewer_service.join_room(room.code, "Ana")
        with pytest.raises(RoomMismatch):
            viewer_service.authorize_viewer(joined.viewer.viewer_hash, expected_room_id=other.id)
        assert viewer_service.authorize_viewer(joined.viewer.viewer_hash, expected_room_id=room.id)


def test_list_viewers_in_join_order(viewer_service, room, clock):
    viewer_service.join_room(room.code, "Ana")
    clock.advance(seconds=5)
    viewer_service.join_room(room.code, "Bo")
    assert [v.nickname for v in viewer_service.list_viewers(room)] == ["Ana", "Bo"]


# ---------------------------------------------------------------------------
# Story views and likes
# ---------------------------------------------------------------------------


@pytest.fixture
def story(room_store, room, clock):
    return room_store.add_story(
        Story(room_id=room.id, media_key=f"stories/{room.id}/1-0123456789abcdef.jpg", media_type="image",
              content_type="image/jpeg", created_at=clock())
    )


class TestStoryEngagement:
    def test_view_recorded_once(self, viewer_service, room, story, clock):
        joined = viewer_service.join_room(room.code, "Ana")
        [listed] = viewer_service.list_viewers(room)
        assert listed.last_viewed_at is None

        clock.advance(minutes=3)
        assert viewer_service.record_view(joined.viewer.viewer_hash, story.id) is True
        viewed_at = clock()
        clock.advance(minutes=3)
        assert viewer_service.record_view(joined.viewer.viewer_hash, story.id) is False

        [listed] = viewer_service.list_viewers(room)
        assert listed.last_viewed_at == viewed_at

    def test_like_toggles(self, viewer_service, room, story):
        ana = viewer_service.join_room(room.code, "Ana").viewer.viewer_hash
        bo = viewer_service.join_room(room.code, "Bo").viewer.viewer_hash

        assert viewer_service.toggle_like(ana, story.id) == LikeToggled(story_id=story.id, liked=True, like_count=1)
        assert viewer_service.toggle_like(bo, story.id).like_count == 2
        assert viewer_service.toggle_like(ana, story.id) == LikeToggled(story_id=story.id, liked=False, like_count=1)

    def test_viewer_of_another_room(self, viewer_service, room_service, story):
        other = room_service.create_room(owner_id="u1", duration="1h").room
        outsider = viewer_service.join_room(other.code, "Bo").viewer.viewer_hash
        with pytest.raises(RoomMismatch):
            viewer_service.record_view(outsider, story.id)
        with pytest.raises(RoomMismatch):
            viewer_service.toggle_like(outsider, story.id)

    def test_unknown_story(self, viewer_service, room):
        ana = viewer_service.join_room(room.code, "Ana").viewer.viewer_hash
        with pytest.raises(StoryNotFound):
            viewer_service.record_view(ana, "missing")

    def test_hash_format_checked_before_story(self, viewer_service):
        with pytest.raises(ValidationError):
            viewer_service.toggle_like("nothex", "missing")

    def test_expired_room(self, viewer_service, room, story, clock):
        ana = viewer_service.join_room(room.code, "Ana").viewer.viewer_hash
        clock.advance(hours=24)
        with pytest.raises(RoomExpired):
            viewer_service.record_view(ana, story.id)


def test_trending_avatars(viewer_service, room, clock):
    viewer_service.join_room(room.code, "Ana", "🦊")
    clock.advance(seconds=1)
    viewer_service.join_room(room.code, "Bo", "🐱")
    viewer_service.join_room(room.code, "Cy", "🐱")

    trending, used = viewer_service.trending_avatars()
    assert used == 2
    assert trending[:2] == ["🐱", "🦊"]
    assert len(trending) == TRENDING_SIZE
    assert trending[2:] == [a for a in CURATED_AVATARS if a not in ("🐱", "🦊")][: TRENDING_SIZE - 2]

    assert viewer_service.trending_avatars(limit=1) == (["🐱"], 1)
