"""
core/errors.py -- Domain error taxonomy shared by every Zorem service.

Services raise these; they never raise HTTPException. api/main.py registers a
single exception handler that maps any ZoremError onto the ErrorResponse
envelope using the status_code and code carried by the class. That keeps the
mapping in one place and lets unit tests assert on error types without
spinning up the HTTP stack.

Families:
  ValidationError                      -- malformed input, actionable message
  RoomNotFound / ViewerNotFound        -- "check the code"
  RoomExpired / TokenExpired /
  TokenAlreadyUsed / TokenInvalid      -- "this is gone / already used"
  InvalidCredentials / Unauthenticated -- deliberately low-information
  RateLimited                          -- carries retry_after seconds
  CodeSpaceExhausted                   -- 5xx, logged loudly by the caller
"""

from __future__ import annotations


class ZoremError(Exception):
    """Base class for every error the request boundary knows how to render."""

    status_code: int = 400
    code: str = "error"
    message: str = "Request failed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(ZoremError):
    status_code = 400
    code = "validation_error"
    message = "Invalid input."


class RoomNotFound(ZoremError):
    status_code = 404
    code = "room_not_found"
    message = "Room not found. Check the code and try again."


class ViewerNotFound(ZoremError):
    status_code = 404
    code = "viewer_not_found"
    message = "Viewer session not found. Join the room again."


class StoryNotFound(ZoremError):
    status_code = 404
    code = "story_not_found"
    message = "Story not found."


class StoryAlreadyRecorded(ZoremError):
    status_code = 409
    code = "story_exists"
    message = "This upload has already been recorded."


class RoomExpired(ZoremError):
    status_code = 410
    code = "room_expired"
    message = "This room has expired."


class RoomMismatch(ZoremError):
    status_code = 403
    code = "room_mismatch"
    message = "This viewer session belongs to a different room."


class TokenInvalid(ZoremError):
    status_code = 400
    code = "token_invalid"
    message = "Invalid token."


class TokenExpired(ZoremError):
    status_code = 410
    code = "token_expired"
    message = "This link has expired. Request a new one."


class TokenAlreadyUsed(ZoremError):
    status_code = 409
    code = "token_already_used"
    message = "This link has already been used."


class InvalidCredentials(ZoremError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class Unauthenticated(ZoremError):
    status_code = 401
    code = "unauthenticated"
    message = "Authentication required."


class Forbidden(ZoremError):
    status_code = 403
    code = "forbidden"
    message = "You are not allowed to do that."


class UploadsNotAllowed(Forbidden):
    code = "uploads_not_allowed"
    message = "Uploads are disabled for this room."


class UploadLimitReached(Forbidden):
    code = "upload_limit_reached"
    message = "You have reached the upload limit for this room."


class EmailNotVerified(Forbidden):
    code = "email_not_verified"
    message = "Please verify your email before signing in."


class EmailAlreadyRegistered(ZoremError):
    status_code = 409
    code = "email_registered"
    message = "An account with this email already exists."


class RateLimited(ZoremError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None, *, limit_class: str = "") -> None:
        super().__init__(message, detail=f"Retry after {retry_after} seconds.")
        self.retry_after = retry_after
        self.limit_class = limit_class


class CodeSpaceExhausted(ZoremError):
    status_code = 503
    code = "code_space_exhausted"
    message = "Could not allocate a room code. Please try again."


class StorageNotConfigured(ZoremError):
    status_code = 503
    code = "storage_unavailable"
    message = "Media storage is not configured."
