"""
Caller-facing error taxonomy shared by the storage, teaching and learning contexts.

Why:
    Routes and tests historically match on `str(exc)` codes raised as plain
    LookupError/ValueError/PermissionError. These classes keep that contract
    (each subclasses the built-in the call sites expect and stringifies to its
    stable code) while carrying a short human message and structured details.

Security:
    `message` and `details` are safe to show to end users. Storage-provider
    causes are kept on `cause` for logging only and never serialized.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CoursefilesError(Exception):
    """Base class: stable `code`, human `message`, optional `details`."""

    code = "internal_error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.code)

    def __str__(self) -> str:
        return self.code

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        payload.update(self.details)
        return payload


class NotFound(CoursefilesError, LookupError):
    code = "not_found"
    default_message = "The requested item does not exist."


class Unauthorized(CoursefilesError, PermissionError):
    code = "forbidden"
    default_message = "You are not allowed to perform this action."


class NotEnrolled(CoursefilesError, PermissionError):
    code = "not_enrolled"
    default_message = "You are not enrolled in this course."


class ValidationFailed(CoursefilesError, ValueError):
    """Upload rejected by the file policy; `reason` is InvalidType/TooLarge/TooManyFiles/EmptyFile."""

    code = "validation_failed"
    default_message = "The upload does not meet the requirements."

    def __init__(self, reason: str, message: Optional[str] = None, **details: Any) -> None:
        self.reason = reason
        super().__init__(message, reason=reason, **details)


class DeadlinePassed(CoursefilesError, ValueError):
    code = "deadline_passed"
    default_message = "Submission deadline has passed."


class AlreadyGraded(CoursefilesError, ValueError):
    code = "already_graded"
    default_message = "Cannot modify a graded submission."


class GradeOutOfRange(CoursefilesError, ValueError):
    code = "grade_out_of_range"
    default_message = "Grade is outside the allowed range."


class NotFileResource(CoursefilesError, ValueError):
    code = "not_file_resource"
    default_message = "Only file resources can receive new versions."


class ConfirmationRequired(CoursefilesError, RuntimeError):
    """Destructive delete needs `force=true`; `count` says how much would go."""

    code = "confirmation_required"
    default_message = "This item has dependent content. Confirm to delete everything."

    def __init__(self, count: int, message: Optional[str] = None, **details: Any) -> None:
        self.count = int(count)
        super().__init__(message, count=self.count, **details)


class Conflict(CoursefilesError, RuntimeError):
    code = "conflict"
    default_message = "The item was changed concurrently. Please retry."


class StorageError(CoursefilesError, RuntimeError):
    """Remote storage failure. `cause` is for logs only."""

    default_message = "File storage is temporarily unavailable. Please try again."

    def __init__(self, message: Optional[str] = None, *, cause: Optional[BaseException] = None, **details: Any) -> None:
        self.cause = cause
        super().__init__(message, **details)


class UploadFailed(StorageError):
    code = "upload_failed"
    default_message = "Upload failed. Please try again."


class SigningFailed(StorageError):
    code = "signing_failed"
    default_message = "Could not create a download link. Please try again."


class DeleteFailed(StorageError):
    code = "delete_failed"


class StorageNotConfigured(StorageError):
    code = "storage_adapter_not_configured"


__all__ = [
    "CoursefilesError",
    "NotFound",
    "Unauthorized",
    "NotEnrolled",
    "ValidationFailed",
    "DeadlinePassed",
    "AlreadyGraded",
    "GradeOutOfRange",
    "NotFileResource",
    "ConfirmationRequired",
    "Conflict",
    "StorageError",
    "UploadFailed",
    "SigningFailed",
    "DeleteFailed",
    "StorageNotConfigured",
]
