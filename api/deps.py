"""
api/deps.py -- FastAPI Depends() helpers.

Services are built once in the lifespan and hung on app.state; these helpers
fetch them so route signatures stay declarative. Tests inject fakes through
create_app() keyword arguments.

Two credentials exist:
  Authorization: Bearer <jwt>   owner session -> get_current_user()
  X-Viewer-Hash: <64 hex>       anonymous viewer -> get_viewer_session()
                                (GET requests may pass ?viewer_hash= instead)

Both raise domain errors (Unauthenticated, ValidationError, ...) rather than
HTTPException; api/main.py renders them through the single ZoremError handler.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import User
from auth.service import AuthService
from core.config import Settings
from core.errors import ValidationError
from media.uploads import UploadBridge
from rooms.models import ViewerSession
from rooms.service import RoomService
from rooms.viewers import ViewerService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_room_service(request: Request) -> RoomService:
    return request.app.state.room_service


def get_viewer_service(request: Request) -> ViewerService:
    return request.app.state.viewer_service


def get_upload_bridge(request: Request) -> UploadBridge:
    return request.app.state.upload_bridge


def get_bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request, auth: AuthService = Depends(get_auth_service)) -> User:
    """Require a valid owner session. Raises Unauthenticated otherwise.

    Use as a FastAPI dependency:
        @router.get("/rooms")
        def route(user: User = Depends(get_current_user)): ...
    """
    return auth.get_current_user(get_bearer_token(request))


def get_viewer_hash(request: Request) -> str:
    viewer_hash = request.headers.get("X-Viewer-Hash") or request.query_params.get("viewer_hash")
    if not viewer_hash:
        raise ValidationError("viewer_hash is required.")
    return viewer_hash.strip()


def get_viewer_session(
    viewer_hash: str = Depends(get_viewer_hash),
    viewers: ViewerService = Depends(get_viewer_service),
) -> ViewerSession:
    """Authorize the viewer against its room on every request."""
    return viewers.authorize_viewer(viewer_hash)
