"""Postgres-backed repository for the Learning context (assignments, submissions, grading)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Sequence
import os
from uuid import UUID, uuid4

from backend.errors import AlreadyGraded, Conflict, NotFound
from backend.learning.models import (
    Assignment,
    Attachment,
    AttachmentContext,
    GradingContext,
    NewAttachment,
    Submission,
    SubmissionStatus,
)

try:  # pragma: no cover -- optional dependency in some environments
    import psycopg
    from psycopg import errors as pg_errors

    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover
    psycopg = None  # type: ignore
    pg_errors = None  # type: ignore
    HAVE_PSYCOPG = False


def _dsn() -> str:
    """Resolve the Postgres DSN.

    Order of precedence (first non-empty wins):
      1) LEARNING_DATABASE_URL (context-specific override)
      2) DATABASE_URL (app-wide default)
    """
    for candidate in (os.getenv("LEARNING_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if candidate:
            return candidate
    raise RuntimeError("Database DSN unavailable for Learning repo")


def _as_uuid(value: str) -> Optional[str]:
    try:
        return str(UUID(str(value)))
    except (ValueError, TypeError):
        return None


def _num(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


_ASSIGNMENT_SELECT = """
    select a.id::text, a.lesson_id::text, m.course_id::text, a.title, a.due_at, a.max_points,
           a.allowed_file_types, a.max_file_size, a.max_files, a.allow_late
      from public.assignments a
      join public.lessons l on l.id = a.lesson_id
      join public.modules m on m.id = l.module_id
"""

_SUBMISSION_SELECT = """
    select id::text, assignment_id::text, student_id, status, submitted_at, content,
           max_grade, grade, feedback, graded_at, graded_by
      from public.submissions
"""


def _row_to_assignment(row: Sequence[Any]) -> Assignment:
    return Assignment(
        id=row[0],
        lesson_id=row[1],
        course_id=row[2],
        title=row[3],
        due_at=row[4],
        max_points=float(row[5]),
        allowed_file_types=tuple(row[6] or ()),
        max_file_size=int(row[7]),
        max_files=int(row[8]),
        allow_late=bool(row[9]),
    )


def _row_to_submission(row: Sequence[Any], attachments: List[Attachment]) -> Submission:
    return Submission(
        id=row[0],
        assignment_id=row[1],
        student_id=row[2],
        status=SubmissionStatus(row[3]),
        submitted_at=row[4],
        content=row[5],
        max_grade=_num(row[6]),
        grade=_num(row[7]),
        feedback=row[8],
        graded_at=row[9],
        graded_by=row[10],
        attachments=attachments,
    )


class DBLearningRepo:
    """Persistence adapter used by Learning use cases."""

    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBLearningRepo")
        self._dsn = dsn or _dsn()

    # --- Lookups -----------------------------------------------------------------

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        aid = _as_uuid(assignment_id)
        if aid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_ASSIGNMENT_SELECT + " where a.id = %s::uuid", (aid,))
                row = cur.fetchone()
        return _row_to_assignment(row) if row else None

    def is_actively_enrolled(self, student_id: str, course_id: str) -> bool:
        cid = _as_uuid(course_id)
        if cid is None:
            return False
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select exists(
                        select 1 from public.enrollments
                         where course_id = %s::uuid and student_id = %s and status <> 'DROPPED'
                    )
                    """,
                    (cid, student_id),
                )
                return bool(cur.fetchone()[0])

    def is_course_lecturer(self, course_id: str, user_id: str) -> bool:
        cid = _as_uuid(course_id)
        if cid is None:
            return False
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select exists(select 1 from public.course_lecturers where course_id = %s::uuid and user_id = %s)",
                    (cid, user_id),
                )
                return bool(cur.fetchone()[0])

    # --- Submissions -------------------------------------------------------------

    @staticmethod
    def _attachments(cur, submission_id: str) -> List[Attachment]:
        cur.execute(
            """
            select id::text, submission_id::text, store_key, file_name, file_size, mime_type, created_at, external_id
              from public.submission_attachments
             where submission_id = %s::uuid
             order by created_at, id
            """,
            (submission_id,),
        )
        return [
            Attachment(
                id=r[0], submission_id=r[1], store_key=r[2], name=r[3], size=int(r[4]),
                mime=r[5], created_at=r[6], external_id=r[7],
            )
            for r in cur.fetchall()
        ]

    def _fetch_submission(self, cur, submission_id: str) -> Optional[Submission]:
        cur.execute(_SUBMISSION_SELECT + " where id = %s::uuid", (submission_id,))
        row = cur.fetchone()
        if not row:
            return None
        return _row_to_submission(row, self._attachments(cur, row[0]))

    @staticmethod
    def _insert_attachments(cur, submission_id: str, items: Sequence[NewAttachment], now: datetime) -> None:
        for a in items:
            cur.execute(
                """
                insert into public.submission_attachments
                    (id, submission_id, store_key, external_id, file_name, file_size, mime_type, created_at)
                values (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
                """,
                (str(uuid4()), submission_id, a.store_key, a.external_id, a.name, a.size, a.mime, now),
            )

    def get_submission_for(self, assignment_id: str, student_id: str) -> Optional[Submission]:
        aid = _as_uuid(assignment_id)
        if aid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_SUBMISSION_SELECT + " where assignment_id = %s::uuid and student_id = %s", (aid, student_id))
                row = cur.fetchone()
                if not row:
                    return None
                return _row_to_submission(row, self._attachments(cur, row[0]))

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
        """Insert the first submission row; the unique constraint decides races.

        Raises:
            Conflict: another request created the (assignment, student) row first.
        """
        with psycopg.connect(self._dsn) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        insert into public.submissions
                            (id, assignment_id, student_id, content, status, submitted_at, max_grade)
                        values (%s::uuid, %s::uuid, %s, %s, 'SUBMITTED', %s, %s)
                        """,
                        (submission_id, assignment_id, student_id, content, submitted_at, max_grade),
                    )
                    self._insert_attachments(cur, submission_id, attachments, submitted_at)
                    created = self._fetch_submission(cur, submission_id)
                conn.commit()
            except pg_errors.UniqueViolation as exc:
                conn.rollback()
                raise Conflict() from exc
            except pg_errors.ForeignKeyViolation as exc:
                conn.rollback()
                raise NotFound("Assignment not found.") from exc
        if created is None:
            raise RuntimeError("submission insert returned no row")
        return created

    def update_submission(
        self,
        submission_id: str,
        *,
        content: Optional[str],
        submitted_at: datetime,
        attachments: Sequence[NewAttachment],
    ) -> Submission:
        """Resubmit: reset to SUBMITTED and append attachments unless already graded."""
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update public.submissions
                       set content = %s, status = 'SUBMITTED', submitted_at = %s,
                           grade = null, feedback = null, graded_at = null, graded_by = null
                     where id = %s::uuid and status <> 'GRADED'
                    returning id
                    """,
                    (content, submitted_at, submission_id),
                )
                if cur.fetchone() is None:
                    cur.execute("select status from public.submissions where id = %s::uuid", (submission_id,))
                    row = cur.fetchone()
                    if row is None:
                        raise NotFound("Submission not found.")
                    raise AlreadyGraded()
                self._insert_attachments(cur, submission_id, attachments, submitted_at)
                updated = self._fetch_submission(cur, submission_id)
            conn.commit()
        if updated is None:
            raise RuntimeError("submission update returned no row")
        return updated

    def get_attachment_context(self, submission_id: str, attachment_id: str) -> Optional[AttachmentContext]:
        sid, att_id = _as_uuid(submission_id), _as_uuid(attachment_id)
        if sid is None or att_id is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select att.id::text, att.submission_id::text, att.store_key, att.file_name, att.file_size,
                           att.mime_type, att.created_at, att.external_id, s.student_id, m.course_id::text
                      from public.submission_attachments att
                      join public.submissions s on s.id = att.submission_id
                      join public.assignments a on a.id = s.assignment_id
                      join public.lessons l on l.id = a.lesson_id
                      join public.modules m on m.id = l.module_id
                     where att.id = %s::uuid and att.submission_id = %s::uuid
                    """,
                    (att_id, sid),
                )
                r = cur.fetchone()
        if not r:
            return None
        attachment = Attachment(
            id=r[0], submission_id=r[1], store_key=r[2], name=r[3], size=int(r[4]),
            mime=r[5], created_at=r[6], external_id=r[7],
        )
        return AttachmentContext(attachment=attachment, student_id=r[8], course_id=r[9])

    # --- Grading -----------------------------------------------------------------

    def get_grading_context(self, submission_id: str) -> Optional[GradingContext]:
        sid = _as_uuid(submission_id)
        if sid is None:
            return None
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                submission = self._fetch_submission(cur, sid)
                if submission is None:
                    return None
                cur.execute(_ASSIGNMENT_SELECT + " where a.id = %s::uuid", (submission.assignment_id,))
                arow = cur.fetchone()
                if arow is None:
                    return None
                assignment = _row_to_assignment(arow)
                cur.execute(
                    "select user_id from public.course_lecturers where course_id = %s::uuid",
                    (assignment.course_id,),
                )
                lecturers = frozenset(r[0] for r in cur.fetchall())
                cur.execute("select email from public.user_profiles where user_id = %s", (submission.student_id,))
                erow = cur.fetchone()
        return GradingContext(
            submission=submission,
            assignment=assignment,
            lecturer_ids=lecturers,
            student_email=erow[0] if erow else None,
        )

    def mark_graded(
        self,
        submission_id: str,
        *,
        grade: float,
        feedback: Optional[str],
        graded_at: datetime,
        graded_by: str,
    ) -> Submission:
        sid = _as_uuid(submission_id)
        if sid is None:
            raise NotFound("Submission not found.")
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update public.submissions
                       set status = 'GRADED', grade = %s, feedback = %s, graded_at = %s, graded_by = %s
                     where id = %s::uuid
                    returning id
                    """,
                    (grade, feedback, graded_at, graded_by, sid),
                )
                if cur.fetchone() is None:
                    raise NotFound("Submission not found.")
                graded = self._fetch_submission(cur, sid)
            conn.commit()
        if graded is None:
            raise RuntimeError("grade update returned no row")
        return graded


__all__ = ["DBLearningRepo", "HAVE_PSYCOPG"]
