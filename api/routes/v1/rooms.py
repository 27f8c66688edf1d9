"""
api/routes/v1/rooms.py -- Room owner endpoints and public code lookup.

Routes:
  POST   /api/v1/rooms                       -- create a room (auth, room_creation limit)
  GET    /api/v1/rooms                       -- list own rooms, newest first (auth)
  GET    /api/v1/rooms/code/{code}           -- resolve a code to a live room (public)
  GET    /api/v1/rooms/{room_id}             -- own room detail (auth)
  DELETE /api/v1/rooms/{room_id}             -- close a room early (auth)
  GET    /api/v1/rooms/{room_id}/viewers     -- who joined (auth, owner)
  POST   /api/v1/rooms/{room_id}/upload-url  -- owner story upload URL (auth)
  POST   /api/v1/rooms/{room_id}/stories     -- record an uploaded owner story (auth)
  GET    /api/v1/rooms/{room_id}/stories     -- owner story list (auth)

Ownership: every {room_id} route goes through RoomService.get_owner_room /
close_room, which report someone else's room exactly like a missing one.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.deps import get_current_user, get_room_service, get_upload_bridge, get_viewer_service
from api.limiter import get_client_key
from api.models import (
    CodeResolveResponse,
    CreateRoomRequest,
    RoomClosedResponse,
    RoomCreatedResponse,
    RoomListResponse,
    RoomSummaryResponse,
    StoryCreateRequest,
    StoryListResponse,
    StoryResponse,
    UploadUrlRequest,
    UploadUrlResponse,
    ViewerListResponse,
    ViewerSummaryResponse,
)
from auth.models import User
from media.uploads import UploadBridge
from rooms.service import RoomService
from rooms.viewers import ViewerService

router = APIRouter()


@router.post("/rooms", response_model=RoomCreatedResponse, status_code=201)
def create_room(
    request: Request,
    body: CreateRoomRequest,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> RoomCreatedResponse:
    created = rooms.create_room(
        owner_id=current_user.id,
        duration=body.duration,
        allow_uploads=body.allow_uploads,
        max_uploads_per_viewer=body.max_uploads_per_viewer,
        client_key=get_client_key(request),
    )
    return RoomCreatedResponse.from_created(created)


@router.get("/rooms", response_model=RoomListResponse)
def list_rooms(
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> RoomListResponse:
    """Every room the user created, including expired and closed ones."""
    summaries = rooms.list_owner_rooms(current_user.id)
    return RoomListResponse(rooms=[RoomSummaryResponse.from_summary(s) for s in summaries])


# Registered before /rooms/{room_id} so "code" is never read as a room id.
@router.get("/rooms/code/{code}", response_model=CodeResolveResponse)
def resolve_code(code: str, rooms: RoomService = Depends(get_room_service)) -> CodeResolveResponse:
    room = rooms.resolve_active_room(code)
    return CodeResolveResponse(
        room_id=room.id,
        code=room.code,
        expires_at=room.expires_at,
        allow_uploads=room.allow_uploads,
    )


@router.get("/rooms/{room_id}", response_model=RoomSummaryResponse)
def get_room(
    room_id: str,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> RoomSummaryResponse:
    return RoomSummaryResponse.from_summary(rooms.get_owner_room(current_user.id, room_id))


@router.delete("/rooms/{room_id}", response_model=RoomClosedResponse)
def close_room(
    room_id: str,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> RoomClosedResponse:
    room = rooms.close_room(current_user.id, room_id)
    return RoomClosedResponse(room_id=room.id, code=room.code)


@router.get("/rooms/{room_id}/viewers", response_model=ViewerListResponse)
def list_room_viewers(
    room_id: str,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
    viewers: ViewerService = Depends(get_viewer_service),
) -> ViewerListResponse:
    summary = rooms.get_owner_room(current_user.id, room_id)
    items = [ViewerSummaryResponse.from_viewer(v) for v in viewers.list_viewers(summary.room)]
    return ViewerListResponse(viewers=items, total=len(items))


@router.post("/rooms/{room_id}/upload-url", response_model=UploadUrlResponse)
def owner_upload_url(
    room_id: str,
    body: UploadUrlRequest,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> UploadUrlResponse:
    room = rooms.get_owner_room(current_user.id, room_id).room
    grant = uploads.authorize_owner_upload(room, body.media_type, body.content_type)
    return UploadUrlResponse.from_grant(grant, room.expires_at)


@router.post("/rooms/{room_id}/stories", response_model=StoryResponse, status_code=201)
def owner_create_story(
    room_id: str,
    body: StoryCreateRequest,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> StoryResponse:
    """Record an owner upload once its PUT succeeded."""
    room = rooms.get_owner_room(current_user.id, room_id).room
    return StoryResponse.from_view(uploads.confirm_owner_upload(room, body.media_key, body.media_type))


@router.get("/rooms/{room_id}/stories", response_model=StoryListResponse)
def owner_stories(
    room_id: str,
    current_user: User = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
    uploads: UploadBridge = Depends(get_upload_bridge),
) -> StoryListResponse:
    room = rooms.get_owner_room(current_user.id, room_id).room
    stories = [StoryResponse.from_view(v) for v in uploads.list_stories(room)]
    return StoryListResponse(room_id=room.id, allow_uploads=room.allow_uploads, stories=stories, total=len(stories))
