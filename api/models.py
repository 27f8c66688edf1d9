"""
API request and response models for the Zorem REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in rooms/models.py and
auth/models.py, which own the internal domain representation. The from_*
classmethods (Factory Method) keep the domain -> wire mapping next to the
wire shape instead of scattered across route handlers.

Request models only bound sizes and types. Semantic validation (email syntax,
nickname sanitizing, durations) happens in the services so unit tests and HTTP
callers get the same ValidationError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from auth.models import AuthResult, TwoFactorSetup, User
from media.uploads import StoryView, UploadGrant
from rooms.models import LikeToggled, RoomCreated, RoomSummary, Viewer, ViewerJoined, ViewerSession

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for every non-2xx JSON response."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    database: str = "ok"


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class _StrippedModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class SignUpRequest(BaseModel):
    email: str = Field(max_length=320)
    # Not stripped: whitespace is significant in passwords.
    password: str = Field(max_length=128, json_schema_extra={"format": "password"})


class SignInRequest(SignUpRequest):
    pass


class MagicLinkRequest(_StrippedModel):
    email: str = Field(max_length=320)


class MagicLinkVerifyRequest(_StrippedModel):
    token: str = Field(min_length=1, max_length=256)


class EmailVerifyRequest(_StrippedModel):
    token: str = Field(min_length=1, max_length=256)


class SecondFactorVerifyRequest(_StrippedModel):
    token: str = Field(min_length=1, max_length=256)
    code: str = Field(min_length=1, max_length=10)


class TwoFactorCodeRequest(_StrippedModel):
    code: str = Field(min_length=1, max_length=10)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    two_factor_enabled: bool
    oauth_provider: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            two_factor_enabled=user.two_factor_enabled,
            oauth_provider=user.oauth_provider,
            created_at=user.created_at,
        )


class MeResponse(UserResponse):
    rooms_count: int = 0


class AuthResponse(BaseModel):
    """A session (access_token), a pending second factor (two_factor_token),
    or, after sign-up outside debug mode, neither until the email is verified.
    """

    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int
    requires_2fa: bool = False
    two_factor_token: Optional[str] = None
    requires_verification: bool = False
    verification_link: Optional[str] = None  # echoed in debug mode only
    user: Optional[UserResponse] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        if result.requires_second_factor:
            # No account details until the second factor is proven.
            return cls(
                expires_in=result.expires_in,
                requires_2fa=True,
                two_factor_token=result.second_factor_token,
                verification_link=result.verification_link,
            )
        if result.requires_verification:
            return cls(expires_in=0, requires_verification=True, user=UserResponse.from_user(result.user))
        return cls(
            access_token=result.session_token,
            expires_in=result.expires_in,
            verification_link=result.verification_link,
            user=UserResponse.from_user(result.user),
        )


class MagicLinkResponse(BaseModel):
    message: str
    magic_link: Optional[str] = None  # echoed in debug mode only


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_data: Optional[str] = None

    @classmethod
    def from_setup(cls, setup: TwoFactorSetup) -> "TwoFactorSetupResponse":
        return cls(secret=setup.secret, otpauth_uri=setup.otpauth_uri, qr_data=setup.qr_data)


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


class CreateRoomRequest(BaseModel):
    duration: str = Field(max_length=8, description="One of 1h, 6h, 24h, 72h, 7d.")
    allow_uploads: bool = False
    max_uploads_per_viewer: Optional[StrictInt] = None


class RoomCreatedResponse(BaseModel):
    room_id: str
    code: str
    link: str
    qr_data: Optional[str] = None
    expires_at: datetime
    allow_uploads: bool
    max_uploads_per_viewer: int
    duration: str

    @classmethod
    def from_created(cls, created: RoomCreated) -> "RoomCreatedResponse":
        room = created.room
        return cls(
            room_id=room.id,
            code=room.code,
            link=created.link,
            qr_data=created.qr_data,
            expires_at=room.expires_at,
            allow_uploads=room.allow_uploads,
            max_uploads_per_viewer=room.max_uploads_per_viewer,
            duration=room.duration,
        )


class RoomSummaryResponse(BaseModel):
    room_id: str
    code: str
    duration: str
    expires_at: datetime
    hours_remaining: int
    allow_uploads: bool
    max_uploads_per_viewer: int
    is_active: bool
    is_expired: bool
    viewer_count: int
    story_count: int
    total_views: int = 0
    total_likes: int = 0
    created_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: RoomSummary) -> "RoomSummaryResponse":
        room = summary.room
        return cls(
            room_id=room.id,
            code=room.code,
            duration=room.duration,
            expires_at=room.expires_at,
            hours_remaining=summary.hours_remaining,
            allow_uploads=room.allow_uploads,
            max_uploads_per_viewer=room.max_uploads_per_viewer,
            is_active=not summary.is_expired,
            is_expired=summary.is_expired,
            viewer_count=summary.viewer_count,
            story_count=summary.story_count,
            total_views=summary.total_views,
            total_likes=summary.total_likes,
            created_at=room.created_at,
            closed_at=room.closed_at,
        )


class RoomListResponse(BaseModel):
    rooms: list[RoomSummaryResponse]


class CodeResolveResponse(BaseModel):
    valid: bool = True
    room_id: str
    code: str
    expires_at: datetime
    allow_uploads: bool


class RoomClosedResponse(BaseModel):
    message: str = "Room closed successfully"
    room_id: str
    code: str


class ViewerSummaryResponse(BaseModel):
    nickname: str
    avatar: str
    joined_at: datetime
    last_viewed_at: Optional[datetime] = None  # None until the viewer opens a story

    @classmethod
    def from_viewer(cls, viewer: Viewer) -> "ViewerSummaryResponse":
        return cls(
            nickname=viewer.nickname,
            avatar=viewer.avatar,
            joined_at=viewer.joined_at,
            last_viewed_at=viewer.last_viewed_at,
        )


class ViewerListResponse(BaseModel):
    viewers: list[ViewerSummaryResponse]
    total: int


# ---------------------------------------------------------------------------
# Uploads / stories
# ---------------------------------------------------------------------------


class UploadUrlRequest(_StrippedModel):
    media_type: str = Field(max_length=10, description='"image" or "video".')
    content_type: Optional[str] = Field(default=None, max_length=50)


class UploadUrlResponse(BaseModel):
    upload_url: str
    media_key: str
    content_type: str
    expires_in: int
    uploads_remaining: Optional[int] = None
    room_expires_at: datetime

    @classmethod
    def from_grant(cls, grant: UploadGrant, room_expires_at: datetime) -> "UploadUrlResponse":
        return cls(
            upload_url=grant.upload_url,
            media_key=grant.media_key,
            content_type=grant.content_type,
            expires_in=grant.expires_in,
            uploads_remaining=grant.uploads_remaining,
            room_expires_at=room_expires_at,
        )


class StoryCreateRequest(_StrippedModel):
    """Sent after the PUT to the presigned URL succeeded."""

    media_key: str = Field(min_length=1, max_length=255)
    media_type: str = Field(max_length=10, description='"image" or "video".')


class StoryResponse(BaseModel):
    id: str
    media_type: str
    content_type: str
    media_key: str
    media_url: str
    created_at: datetime
    uploaded_by_owner: bool
    view_count: int = 0
    like_count: int = 0

    @classmethod
    def from_view(cls, view: StoryView) -> "StoryResponse":
        story = view.story
        return cls(
            id=story.id,
            media_type=story.media_type,
            content_type=story.content_type,
            media_key=story.media_key,
            media_url=view.media_url,
            created_at=story.created_at,
            uploaded_by_owner=story.viewer_id is None,
            view_count=view.view_count,
            like_count=view.like_count,
        )


class StoryListResponse(BaseModel):
    room_id: str
    allow_uploads: bool
    stories: list[StoryResponse]
    total: int


class ViewRecordedResponse(BaseModel):
    story_id: str
    recorded: bool  # False when this viewer had already seen the story


class LikeResponse(BaseModel):
    story_id: str
    liked: bool
    like_count: int

    @classmethod
    def from_toggle(cls, toggled: LikeToggled) -> "LikeResponse":
        return cls(story_id=toggled.story_id, liked=toggled.liked, like_count=toggled.like_count)


class TrendingEmojisResponse(BaseModel):
    trending: list[str]
    total: int  # how many entries come from real usage rather than the curated list
    updated_at: datetime


# ---------------------------------------------------------------------------
# Viewer
# ---------------------------------------------------------------------------


class JoinRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)
    # Raw length bound only; sanitizing and the 20-char rule live in the service.
    nickname: str = Field(max_length=200)
    avatar: Optional[str] = Field(default=None, max_length=64)


class JoinResponse(BaseModel):
    viewer_hash: str
    room_id: str
    room_code: str
    allow_uploads: bool
    expires_at: datetime
    nickname: str
    avatar: str

    @classmethod
    def from_joined(cls, joined: ViewerJoined) -> "JoinResponse":
        return cls(
            viewer_hash=joined.viewer.viewer_hash,
            room_id=joined.room.id,
            room_code=joined.room.code,
            allow_uploads=joined.room.allow_uploads,
            expires_at=joined.room.expires_at,
            nickname=joined.viewer.nickname,
            avatar=joined.viewer.avatar,
        )


class ViewerSessionResponse(JoinResponse):
    joined_at: datetime

    @classmethod
    def from_session(cls, session: ViewerSession) -> "ViewerSessionResponse":
        return cls(
            viewer_hash=session.viewer.viewer_hash,
            room_id=session.room.id,
            room_code=session.room.code,
            allow_uploads=session.room.allow_uploads,
            expires_at=session.room.expires_at,
            nickname=session.viewer.nickname,
            avatar=session.viewer.avatar,
            joined_at=session.viewer.joined_at,
        )
