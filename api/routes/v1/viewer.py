"""
api/routes/v1/viewer.py -- Anonymous viewer endpoints.

Routes:
  POST /api/v1/viewer/join                    -- join a room by code + nickname
  GET  /api/v1/viewer/session                 -- re-authorize a viewer hash
  GET  /api/v1/viewer/stories                 -- stories of the viewer's room, with GET URLs
  POST /api/v1/viewer/upload-url              -- presigned PUT for a viewer story
  POST /api/v1/viewer/stories                 -- record an uploaded viewer story
  POST /api/v1/viewer/stories/{story_id}/view -- mark a story as seen
  POST /api/v1/viewer/stories/{story_id}/like -- like or unlike a story

The viewer hash travels in X-Viewer-Hash (or ?viewer_hash= on GET). It is
re-checked against the room on every call; nothing about a viewer is cached.
Every route here is covered by the "general" limit from the middleware only.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import get_upload_bridge, get_viewer_hash, get_viewer_service, get_viewer_session
from api.models import (
    JoinRequest,
    JoinResponse,
    LikeResponse,
    StoryCreateRequest,
    StoryListResponse,
    StoryResponse,
    UploadUrlRequest,
    UploadUrlResponse,
    ViewerSessionResponse,
    ViewRecordedResponse,
)
from media.uploads import UploadBridge
from rooms.models import ViewerSession
from rooms.viewers import ViewerService

router = APIRouter()


@router.post("/viewer/join", response_model=JoinResponse)
def join_room(body: JoinRequest, viewers: ViewerService = Depends(get_viewer_service)) -> JoinResponse:
    joined = viewers.join_room(body.code, body.nickname, body.avatar)
    return JoinResponse.from_joined(joined)


@router.get("/viewer/session", response_model=ViewerSessionResponse)
def viewer_session(session: ViewerSession = Depends(get_viewer_session)) -> ViewerSessionResponse:
    return ViewerSessionResponse.from_session(session)


@router.get("/viewer/stories", response_model=StoryListResponse)
def viewer_stories(
    session: ViewerSession = Depends(get_viewer_session),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> StoryListResponse:
    room = session.room
    stories = [StoryResponse.from_view(v) for v in uploads.list_stories(room)]
    return StoryListResponse(room_id=room.id, allow_uploads=room.allow_uploads, stories=stories, total=len(stories))


@router.post("/viewer/upload-url", response_model=UploadUrlResponse)
def viewer_upload_url(
    body: UploadUrlRequest,
    session: ViewerSession = Depends(get_viewer_session),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> UploadUrlResponse:
    grant = uploads.authorize_viewer_upload(session, body.media_type, body.content_type)
    return UploadUrlResponse.from_grant(grant, session.room.expires_at)


@router.post("/viewer/stories", response_model=StoryResponse, status_code=201)
def viewer_create_story(
    body: StoryCreateRequest,
    session: ViewerSession = Depends(get_viewer_session),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> StoryResponse:
    """Record the upload once the PUT succeeded. Counts against the viewer's cap."""
    return StoryResponse.from_view(uploads.confirm_viewer_upload(session, body.media_key, body.media_type))


@router.post("/viewer/stories/{story_id}/view", response_model=ViewRecordedResponse)
def record_view(
    story_id: str,
    viewer_hash: str = Depends(get_viewer_hash),
    viewers: ViewerService = Depends(get_viewer_service),
) -> ViewRecordedResponse:
    recorded = viewers.record_view(viewer_hash, story_id)
    return ViewRecordedResponse(story_id=story_id, recorded=recorded)


@router.post("/viewer/stories/{story_id}/like", response_model=LikeResponse)
def toggle_like(
    story_id: str,
    viewer_hash: str = Depends(get_viewer_hash),
    viewers: ViewerService = Depends(get_viewer_service),
) -> LikeResponse:
    return LikeResponse.from_toggle(viewers.toggle_like(viewer_hash, story_id))
