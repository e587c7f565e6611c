"""
Teaching API routes: lesson resources, cascading deletes and grading.

Why:
    Lecturers and administrators manage lesson files and grade submissions.
    The adapter enforces authentication (middleware) and authorization (role
    checks) and delegates the file lifecycle to the teaching and learning
    services. Blocking repository and storage work runs in a worker thread.

Notes:
    - Persistence: Prefers the Postgres-backed repo when psycopg and a DSN are
      available; falls back to the shared in-memory repo for tests/local work.
      Tests can call `set_repo` to override the implementation for isolation.
    - Storage: the resource store and the submission store are wired as two
      independent gateways (see `backend.web.storage_wiring`).
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from pydantic import BaseModel, Field
from pydantic.functional_validators import field_validator

from backend.errors import CoursefilesError
from backend.ops.audit import AuditSink, LoggingAuditSink
from backend.ops.clock import Clock, SystemClock
from backend.ops.notifications import Notifier, notifier_from_env
from backend.storage.config import StoreKind, get_delete_concurrency
from backend.storage.upload_policy import IncomingFile, resource_policy
from backend.teaching.models import ContentType, SubtreeKind, Visibility
from backend.teaching.services.deletion import CascadingDeletionCoordinator
from backend.teaching.services.resources import ResourceMeta, ResourceVersionManager
from backend.learning.usecases.grading import GradingGate
from backend.web.repo_memory import shared_memory_repo
from backend.web.storage_wiring import get_gateway

from .responses import bad_request, error_response, json_private, private_error
from .security import csrf_guard, require_roles
from .uploads import read_upload_with_limit

teaching_router = APIRouter(tags=["Teaching"])  # explicit paths below
logger = logging.getLogger("coursefiles.web.teaching")

try:
    from backend.teaching.repo_db import DBTeachingRepo  # type: ignore
except Exception as exc:  # pragma: no cover - optional dependency path
    DBTeachingRepo = None  # type: ignore
    _DB_REPO_IMPORT_ERROR: Optional[Exception] = exc
else:
    _DB_REPO_IMPORT_ERROR = None


def _build_default_repo():
    """Prefer DB-backed teaching repo; fall back to in-memory if unavailable."""
    if DBTeachingRepo is None:
        if _DB_REPO_IMPORT_ERROR:
            logger.warning("Teaching repo import failed: %s", _DB_REPO_IMPORT_ERROR)
        return shared_memory_repo()
    try:
        return DBTeachingRepo()
    except Exception as exc:  # pragma: no cover - exercised when DSN missing
        logger.warning("Teaching repo unavailable (%s); using in-memory fallback", exc)
        return shared_memory_repo()


"""Lazy collaborators to avoid import-time DB checks in tests."""
_REPO = None
_CLOCK: Clock = SystemClock()
AUDIT: AuditSink = LoggingAuditSink()
_NOTIFIER: Optional[Notifier] = None
_NOTIFY_EXECUTOR: Optional[Executor] = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")


def _get_repo():  # pragma: no cover - simple accessor
    global _REPO
    if _REPO is None:
        _REPO = _build_default_repo()
    return _REPO


def set_repo(repo) -> None:
    """Allow tests to swap the teaching repository implementation."""
    global _REPO
    _REPO = repo


def set_clock(clock: Clock) -> None:
    global _CLOCK
    _CLOCK = clock


def set_audit_sink(sink: AuditSink) -> None:
    global AUDIT
    AUDIT = sink


def set_notifier(notifier: Optional[Notifier], *, executor: Optional[Executor] = None) -> None:
    """Allow tests to capture notifications; without an executor they run inline."""
    global _NOTIFIER, _NOTIFY_EXECUTOR
    _NOTIFIER = notifier
    _NOTIFY_EXECUTOR = executor


def _get_notifier() -> Notifier:
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = notifier_from_env()
    return _NOTIFIER


def resource_service() -> ResourceVersionManager:
    return ResourceVersionManager(
        repo=_get_repo(),
        storage=get_gateway(StoreKind.RESOURCES),
        clock=_CLOCK,
        audit=AUDIT,
        policy=resource_policy(),
    )


def _deletion_service() -> CascadingDeletionCoordinator:
    return CascadingDeletionCoordinator(
        repo=_get_repo(),
        resource_storage=get_gateway(StoreKind.RESOURCES),
        submission_storage=get_gateway(StoreKind.SUBMISSIONS),
        audit=AUDIT,
        max_workers=get_delete_concurrency(),
    )


def _grading_service() -> GradingGate:
    from backend.web.routes import learning as learning_routes

    return GradingGate(
        repo=learning_routes._get_repo(),
        clock=_CLOCK,
        audit=AUDIT,
        notifier=_get_notifier(),
        executor=_NOTIFY_EXECUTOR,
    )


# --- Request models --------------------------------------------------------------

_SUBTREE_PATHS = {
    "courses": SubtreeKind.COURSE,
    "modules": SubtreeKind.MODULE,
    "lessons": SubtreeKind.LESSON,
    "assignments": SubtreeKind.ASSIGNMENT,
}


class ContentResourceCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content_type: ContentType
    content: str = Field(..., min_length=1, max_length=100_000)
    visibility: Visibility = Visibility.PUBLIC
    reveal_at: Optional[datetime] = None
    position: Optional[int] = Field(default=None, ge=0)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty_title")
        return v


class GradePayload(BaseModel):
    grade: float
    feedback: Optional[str] = Field(default=None, max_length=10_000)

    @field_validator("feedback")
    @classmethod
    def _strip_empty(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v


# --- Helpers -----------------------------------------------------------------------


async def _read_upload(upload: UploadFile) -> IncomingFile:
    return await read_upload_with_limit(upload, resource_policy())


def _parse_reveal_at(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC. Raises ValueError."""
    if value is None or not value.strip():
        return None
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _meta(
    title: Optional[str],
    visibility: str,
    reveal_at: Optional[datetime],
    downloadable: bool,
    position: Optional[int],
) -> ResourceMeta:
    vis = Visibility(visibility)
    if vis == Visibility.SCHEDULED and reveal_at is None:
        raise ValueError("reveal_at_required")
    if reveal_at is not None and reveal_at.tzinfo is None:
        reveal_at = reveal_at.replace(tzinfo=timezone.utc)
    return ResourceMeta(
        title=title or "",
        visibility=vis,
        reveal_at=reveal_at if vis == Visibility.SCHEDULED else None,
        downloadable=downloadable,
        position=position,
    )


# --- Resources ---------------------------------------------------------------------


@teaching_router.post("/api/teaching/lessons/{lesson_id}/resources")
async def upload_resource(
    request: Request,
    lesson_id: str,
    file: UploadFile = File(...),
    title: Optional[str] = Form(default=None),
    visibility: str = Form(default="public"),
    reveal_at: Optional[str] = Form(default=None),
    downloadable: bool = Form(default=True),
    position: Optional[int] = Form(default=None),
):
    """Upload a new file resource (version 1) into a lesson. Admin only."""
    actor, error = require_roles(request, "admin")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        meta = _meta(title, visibility, _parse_reveal_at(reveal_at), downloadable, position)
    except ValueError as exc:
        detail = str(exc) if str(exc) == "reveal_at_required" else "invalid_input"
        return bad_request(detail)
    try:
        incoming = await _read_upload(file)
        resource = await asyncio.to_thread(
            resource_service().upload_new, lesson_id, meta, incoming, uploaded_by=actor.sub
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(resource.to_dict(), status_code=201)


@teaching_router.post("/api/teaching/lessons/{lesson_id}/resources/content")
async def create_content_resource(request: Request, lesson_id: str, payload: ContentResourceCreate):
    """Create a link, embed or text resource (no file, version 0). Admin only."""
    actor, error = require_roles(request, "admin")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    if payload.content_type == ContentType.FILE:
        return bad_request("invalid_content_type")
    try:
        meta = _meta(payload.title, payload.visibility.value, payload.reveal_at, False, payload.position)
    except ValueError as exc:
        return bad_request(str(exc))
    try:
        resource = await asyncio.to_thread(
            resource_service().create_content,
            lesson_id,
            meta,
            content_type=payload.content_type,
            content=payload.content,
            created_by=actor.sub,
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(resource.to_dict(), status_code=201)


@teaching_router.post("/api/teaching/resources/{resource_id}/versions")
async def upload_resource_version(request: Request, resource_id: str, file: UploadFile = File(...)):
    """Upload version N+1 of a file resource. Admin only."""
    actor, error = require_roles(request, "admin")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        incoming = await _read_upload(file)
        resource = await asyncio.to_thread(
            resource_service().upload_new_version, resource_id, incoming, uploaded_by=actor.sub
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(resource.to_dict(), status_code=201)


@teaching_router.get("/api/teaching/resources/{resource_id}/versions")
async def list_resource_versions(request: Request, resource_id: str):
    """Version history, newest first."""
    _actor, error = require_roles(request, "admin", "lecturer")
    if error:
        return error
    try:
        versions = await asyncio.to_thread(resource_service().list_versions, resource_id)
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private([v.to_dict() for v in versions])


@teaching_router.delete("/api/teaching/resources/{resource_id}")
async def delete_resource(request: Request, resource_id: str):
    """Delete a resource and every stored version; returns the cleanup report."""
    actor, error = require_roles(request, "admin")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        report = await asyncio.to_thread(resource_service().delete, resource_id, actor_id=actor.sub)
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(report.to_dict())


# --- Grading -----------------------------------------------------------------------


@teaching_router.put("/api/teaching/submissions/{submission_id}/grade")
async def grade_submission(request: Request, submission_id: str, payload: GradePayload):
    actor, error = require_roles(request, "admin", "lecturer")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        submission = await asyncio.to_thread(
            _grading_service().grade, submission_id, payload.grade, payload.feedback, actor
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(submission.to_dict())


@teaching_router.get("/api/teaching/submissions/{submission_id}/attachments/{attachment_id}/download-url")
async def get_attachment_download_url(request: Request, submission_id: str, attachment_id: str):
    """Short-lived signed URL for a submission attachment (staff view)."""
    actor, error = require_roles(request, "admin", "lecturer")
    if error:
        return error
    from backend.web.routes import learning as learning_routes

    try:
        payload = await asyncio.to_thread(
            learning_routes.submission_workflow().attachment_download_url, submission_id, attachment_id, actor
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(payload)


# --- Cascading deletes ---------------------------------------------------------------


@teaching_router.delete("/api/teaching/{kind}/{entity_id}")
async def delete_subtree(request: Request, kind: str, entity_id: str, force: bool = False):
    """Delete a course, module, lesson or assignment with everything below it.

    Without `force=true` a subtree with dependent content answers 409
    `confirmation_required` and the number of dependents; nothing is deleted.
    """
    actor, error = require_roles(request, "admin")
    if error:
        return error
    subtree_kind = _SUBTREE_PATHS.get(kind)
    if subtree_kind is None:
        return private_error({"error": "not_found"}, status_code=404)
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        report = await asyncio.to_thread(
            _deletion_service().delete_subtree, subtree_kind, entity_id, force=force, actor_id=actor.sub
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(report.to_dict())


__all__: List[str] = ["teaching_router", "set_repo", "set_clock", "set_audit_sink", "set_notifier", "resource_service"]
