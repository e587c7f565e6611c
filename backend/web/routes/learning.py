"""Learning API routes: assignment context, submissions and student downloads."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile

from backend.errors import CoursefilesError, NotFound
from backend.learning.usecases.submissions import SubmissionWorkflow, SubmitInput
from backend.ops.audit import AuditSink, LoggingAuditSink
from backend.ops.clock import Clock, SystemClock
from backend.storage.config import StoreKind
from backend.storage.upload_policy import IncomingFile, check_count
from backend.web.repo_memory import shared_memory_repo
from backend.web.storage_wiring import get_gateway

from .responses import bad_request, error_response, json_private
from .security import csrf_guard, require_roles
from .uploads import read_upload_with_limit

learning_router = APIRouter(tags=["Learning"])
logger = logging.getLogger("coursefiles.web.learning")

_MAX_CONTENT_CHARS = 50_000

try:
    from backend.learning.repo_db import DBLearningRepo  # type: ignore
except Exception as exc:  # pragma: no cover - optional dependency path
    DBLearningRepo = None  # type: ignore
    _DB_REPO_IMPORT_ERROR: Optional[Exception] = exc
else:
    _DB_REPO_IMPORT_ERROR = None


def _build_default_repo():
    if DBLearningRepo is None:
        if _DB_REPO_IMPORT_ERROR:
            logger.warning("Learning repo import failed: %s", _DB_REPO_IMPORT_ERROR)
        return shared_memory_repo()
    try:
        return DBLearningRepo()
    except Exception as exc:  # pragma: no cover - exercised when DSN missing
        logger.warning("Learning repo unavailable (%s); using in-memory fallback", exc)
        return shared_memory_repo()


# Repository indirection keeps the adapter thin. Tests can override via set_repo().
_REPO = None
_CLOCK: Clock = SystemClock()
AUDIT: AuditSink = LoggingAuditSink()


def _get_repo():
    global _REPO
    if _REPO is None:
        _REPO = _build_default_repo()
    return _REPO


def set_repo(repo) -> None:  # pragma: no cover - used in tests
    global _REPO
    _REPO = repo


def set_clock(clock: Clock) -> None:
    global _CLOCK
    _CLOCK = clock


def set_audit_sink(sink: AuditSink) -> None:
    global AUDIT
    AUDIT = sink


def submission_workflow() -> SubmissionWorkflow:
    return SubmissionWorkflow(
        repo=_get_repo(),
        storage=get_gateway(StoreKind.SUBMISSIONS),
        clock=_CLOCK,
        audit=AUDIT,
    )


@learning_router.get("/api/learning/resources/{resource_id}/download-url")
async def get_resource_download_url(request: Request, resource_id: str, version: Optional[int] = None):
    """Signed URL for a lesson resource.

    Students get the live version of visible, downloadable files in courses
    they are enrolled in; staff may also request historical versions.
    """
    actor, error = require_roles(request)
    if error:
        return error
    from backend.web.routes import teaching as teaching_routes

    try:
        payload = await asyncio.to_thread(
            teaching_routes.resource_service().download_url, resource_id, actor, version=version
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(payload)


@learning_router.get("/api/learning/assignments/{assignment_id}")
async def get_assignment_context(request: Request, assignment_id: str):
    actor, error = require_roles(request, "student")
    if error:
        return error
    try:
        ctx = await asyncio.to_thread(submission_workflow().get_submission_context, assignment_id, actor.sub)
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(ctx.to_dict())


@learning_router.post("/api/learning/assignments/{assignment_id}/submission")
async def submit_assignment(
    request: Request,
    assignment_id: str,
    content: Optional[str] = Form(default=None),
    files: List[UploadFile] = File(default=[]),
):
    """Create or update the caller's submission.

    The student id always comes from the session. Late submissions are
    accepted only when the assignment allows them; the response says whether
    the submission is overdue.
    """
    actor, error = require_roles(request, "student")
    if error:
        return error
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    text = (content or "").strip() or None
    if text is not None and len(text) > _MAX_CONTENT_CHARS:
        return bad_request("content_too_long")
    workflow = submission_workflow()
    incoming: List[IncomingFile] = []
    try:
        # Bound every read by the assignment's own size limit before buffering.
        assignment = await asyncio.to_thread(workflow.repo.get_assignment, assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found.")
        policy = assignment.upload_policy()
        check_count(len(files), policy)
        for upload in files:
            incoming.append(await read_upload_with_limit(upload, policy))
        req = SubmitInput(assignment_id=assignment_id, student_id=actor.sub, content=text, files=incoming)
        result = await asyncio.to_thread(workflow.submit, req)
    except CoursefilesError as exc:
        return error_response(exc)
    body = result.submission.to_dict()
    body["is_overdue"] = result.is_overdue
    return json_private(body, status_code=201)


@learning_router.get("/api/learning/submissions/{submission_id}/attachments/{attachment_id}/download-url")
async def get_own_attachment_download_url(request: Request, submission_id: str, attachment_id: str):
    actor, error = require_roles(request, "student")
    if error:
        return error
    try:
        payload = await asyncio.to_thread(
            submission_workflow().attachment_download_url, submission_id, attachment_id, actor
        )
    except CoursefilesError as exc:
        return error_response(exc)
    return json_private(payload)


__all__ = ["learning_router", "set_repo", "set_clock", "set_audit_sink", "submission_workflow"]
