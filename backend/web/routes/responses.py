"""
JSON response helpers shared by the Teaching and Learning adapters.

Every API response here is owner- or role-scoped, so all of them carry
`Cache-Control: private, no-store`. Domain errors are mapped to HTTP status
codes in one place to keep both routers consistent.
"""
from __future__ import annotations

import logging
from typing import Any, Tuple, Type

from fastapi.responses import JSONResponse

from backend.errors import (
    AlreadyGraded,
    ConfirmationRequired,
    Conflict,
    CoursefilesError,
    DeadlinePassed,
    GradeOutOfRange,
    NotEnrolled,
    NotFileResource,
    NotFound,
    StorageError,
    StorageNotConfigured,
    Unauthorized,
    ValidationFailed,
)

logger = logging.getLogger("coursefiles.web")

# Order matters: StorageNotConfigured is a StorageError.
_STATUS_BY_ERROR: Tuple[Tuple[Type[CoursefilesError], int], ...] = (
    (NotFound, 404),
    (Unauthorized, 403),
    (NotEnrolled, 403),
    (ValidationFailed, 400),
    (DeadlinePassed, 400),
    (GradeOutOfRange, 400),
    (NotFileResource, 400),
    (AlreadyGraded, 409),
    (ConfirmationRequired, 409),
    (Conflict, 409),
    (StorageNotConfigured, 503),
    (StorageError, 502),
)


def json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    """Return a JSONResponse with cache disabled for shared caches and browsers."""
    return JSONResponse(content=payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def private_error(payload: dict, *, status_code: int) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def status_for(exc: CoursefilesError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def error_response(exc: CoursefilesError) -> JSONResponse:
    """Map a domain error to its JSON error body.

    Storage causes are logged with their class name only; the client sees the
    generic "try again" message carried by the error itself.
    """
    status = status_for(exc)
    if isinstance(exc, StorageError):
        cause = exc.cause.__class__.__name__ if exc.cause is not None else None
        logger.warning("storage error surfaced to client code=%s cause=%s", exc.code, cause)
    elif status == 500:
        logger.error("unmapped domain error code=%s", exc.code)
    return private_error(exc.to_payload(), status_code=status)


def bad_request(detail: str) -> JSONResponse:
    return private_error({"error": "bad_request", "detail": detail}, status_code=400)


__all__ = ["json_private", "private_error", "status_for", "error_response", "bad_request"]
