from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import uuid4

from backend.errors import AlreadyGraded, Conflict, DeadlinePassed, NotEnrolled, NotFound, Unauthorized
from backend.identity_access.domain import Actor
from backend.learning.models import Assignment, AttachmentContext, NewAttachment, Submission
from backend.ops.audit import ASSIGNMENT_SUBMITTED, AuditSink, record_safely
from backend.ops.clock import Clock, SystemClock
from backend.storage.cleanup import StoredFile, delete_many
from backend.storage.gateway import StorageGateway, UploadedObject
from backend.storage.keys import make_submission_key
from backend.storage.upload_policy import IncomingFile, check_count, validate_file

_log = logging.getLogger("coursefiles.learning")


class LearningSubmissionRepoProtocol(Protocol):
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        ...

    def is_actively_enrolled(self, student_id: str, course_id: str) -> bool:
        ...

    def is_course_lecturer(self, course_id: str, user_id: str) -> bool:
        ...

    def get_submission_for(self, assignment_id: str, student_id: str) -> Optional[Submission]:
        ...

    def insert_submission(
        self,
        *,
        submission_id: str,
        assignment_id: str,
        student_id: str,
        content: Optional[str],
        submitted_at: datetime,
        max_grade: Optional[float],
        attachments: Sequence[NewAttachment],
    ) -> Submission:
        ...

    def update_submission(
        self,
        submission_id: str,
        *,
        content: Optional[str],
        submitted_at: datetime,
        attachments: Sequence[NewAttachment],
    ) -> Submission:
        ...

    def get_attachment_context(self, submission_id: str, attachment_id: str) -> Optional[AttachmentContext]:
        ...


@dataclass
class SubmitInput:
    assignment_id: str
    student_id: str
    content: Optional[str]
    files: Sequence[IncomingFile] = ()


@dataclass
class SubmitResult:
    submission: Submission
    is_overdue: bool


@dataclass
class SubmissionContext:
    assignment: Assignment
    submission: Optional[Submission]
    can_submit: bool
    is_overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment": self.assignment.to_dict(),
            "submission": self.submission.to_dict() if self.submission else None,
            "can_submit": self.can_submit,
            "is_overdue": self.is_overdue,
        }


@dataclass
class SubmissionWorkflow:
    repo: LearningSubmissionRepoProtocol
    storage: StorageGateway
    clock: Clock = field(default_factory=SystemClock)
    audit: Optional[AuditSink] = None

    def submit(self, req: SubmitInput) -> SubmitResult:
        """Create or update the caller's submission for an assignment.

        Intent:
            Accept a student's work only while the assignment is open and the
            submission is not graded, without ever recording a file that did not
            make it into the submission store.

        Behavior:
            - Checks run before any upload: assignment exists, active enrollment,
              deadline/late policy, file count and per-file policy, not graded.
            - Empty files are skipped but still count towards `max_files`.
            - Uploads run sequentially. If one fails (or the database write
              fails afterwards) every file uploaded by this call is deleted
              best-effort and the original error is raised.
            - The first submit inserts; a concurrent insert losing the
              uniqueness race, or a resubmission, updates the existing row and
              appends the new attachments.

        Permissions:
            Caller must be the student identified by `req.student_id`; the route
            derives it from the session, never from the request body.
        """
        assignment = self.repo.get_assignment(req.assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found.")
        if not self.repo.is_actively_enrolled(req.student_id, assignment.course_id):
            raise NotEnrolled()
        now = self.clock.now()
        is_overdue = assignment.is_overdue(now)
        if is_overdue and not assignment.allow_late:
            raise DeadlinePassed()

        policy = assignment.upload_policy()
        check_count(len(req.files), policy)
        files = [f for f in req.files if not f.is_empty]
        for f in files:
            validate_file(f.candidate(), policy)

        existing = self.repo.get_submission_for(req.assignment_id, req.student_id)
        if existing is not None and existing.is_graded:
            raise AlreadyGraded()

        uploaded = self._upload_all(assignment, req.student_id, files, now)
        new_attachments = [
            NewAttachment(store_key=u.store_key, external_id=u.external_id, name=f.name, size=u.size, mime=f.mime)
            for f, u in zip(files, uploaded)
        ]
        try:
            submission = self._persist(assignment, req, existing, new_attachments, now)
        except Exception:
            self._rollback(uploaded)
            raise

        record_safely(
            self.audit,
            actor=req.student_id,
            action=ASSIGNMENT_SUBMITTED,
            entity_type="submission",
            entity_id=submission.id,
            metadata={"assignment_id": assignment.id, "file_count": len(new_attachments), "is_late": is_overdue},
        )
        return SubmitResult(submission=submission, is_overdue=is_overdue)

    def get_submission_context(self, assignment_id: str, student_id: str) -> SubmissionContext:
        """Read-only view of an assignment from the student's perspective."""
        assignment = self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found.")
        if not self.repo.is_actively_enrolled(student_id, assignment.course_id):
            raise NotEnrolled()
        is_overdue = assignment.is_overdue(self.clock.now())
        return SubmissionContext(
            assignment=assignment,
            submission=self.repo.get_submission_for(assignment_id, student_id),
            can_submit=(not is_overdue) or assignment.allow_late,
            is_overdue=is_overdue,
        )

    def attachment_download_url(self, submission_id: str, attachment_id: str, actor: Actor) -> Dict[str, Any]:
        """Signed URL for one attachment: owner student, admins, course lecturers."""
        ctx = self.repo.get_attachment_context(submission_id, attachment_id)
        if ctx is None:
            raise NotFound("Attachment not found.")
        allowed = (
            actor.sub == ctx.student_id
            or actor.is_admin
            or (actor.is_lecturer and self.repo.is_course_lecturer(ctx.course_id, actor.sub))
        )
        if not allowed:
            raise Unauthorized()
        signed = self.storage.signed_url(ctx.attachment.store_key)
        return {"url": signed["url"], "expires_at": signed.get("expires_at"), "file_name": ctx.attachment.name}

    # --- Helpers -----------------------------------------------------------------

    def _upload_all(self, assignment: Assignment, student_id: str, files: List[IncomingFile], now: datetime) -> List[UploadedObject]:
        uploaded: List[UploadedObject] = []
        epoch_ms = int(now.timestamp() * 1000)
        for f in files:
            key = make_submission_key(
                assignment_id=assignment.id,
                student_id=student_id,
                filename=f.name,
                epoch_ms=epoch_ms,
                uuid_hex=uuid4().hex,
            )
            try:
                uploaded.append(
                    self.storage.upload(
                        f.body,
                        key=key,
                        name=f.name,
                        mime=f.mime,
                        metadata={"uploaded_by": student_id, "assignment_id": assignment.id, "uploaded_at": now.isoformat()},
                    )
                )
            except Exception:
                self._rollback(uploaded)
                raise
        return uploaded

    def _persist(
        self,
        assignment: Assignment,
        req: SubmitInput,
        existing: Optional[Submission],
        attachments: List[NewAttachment],
        now: datetime,
    ) -> Submission:
        if existing is None:
            try:
                return self.repo.insert_submission(
                    submission_id=str(uuid4()),
                    assignment_id=assignment.id,
                    student_id=req.student_id,
                    content=req.content,
                    submitted_at=now,
                    max_grade=assignment.max_points,
                    attachments=attachments,
                )
            except Conflict:
                existing = self.repo.get_submission_for(assignment.id, req.student_id)
                if existing is None:
                    raise
                if existing.is_graded:
                    raise AlreadyGraded()
                _log.info("concurrent first submit for assignment=%s; continuing as update", assignment.id)
        return self.repo.update_submission(existing.id, content=req.content, submitted_at=now, attachments=attachments)

    def _rollback(self, uploaded: List[UploadedObject]) -> None:
        outcomes = delete_many(self.storage, [StoredFile(u.store_key, u.external_id) for u in uploaded])
        for outcome in outcomes:
            if not outcome.ok:
                _log.warning("rollback delete failed store=%s key=%s", outcome.store, outcome.store_key)


__all__ = [
    "LearningSubmissionRepoProtocol",
    "SubmitInput",
    "SubmitResult",
    "SubmissionContext",
    "SubmissionWorkflow",
]
