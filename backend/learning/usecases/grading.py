from __future__ import annotations

import logging
import math
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from backend.errors import GradeOutOfRange, NotFound, Unauthorized
from backend.identity_access.domain import Actor
from backend.learning.models import GradingContext, Submission
from backend.ops.audit import SUBMISSION_GRADED, AuditSink, record_safely
from backend.ops.clock import Clock, SystemClock
from backend.ops.notifications import Notifier

_log = logging.getLogger("coursefiles.learning")


class GradingRepoProtocol(Protocol):
    def get_grading_context(self, submission_id: str) -> Optional[GradingContext]:
        ...

    def mark_graded(
        self,
        submission_id: str,
        *,
        grade: float,
        feedback: Optional[str],
        graded_at: datetime,
        graded_by: str,
    ) -> Submission:
        ...


@dataclass
class GradingGate:
    repo: GradingRepoProtocol
    clock: Clock = field(default_factory=SystemClock)
    audit: Optional[AuditSink] = None
    notifier: Optional[Notifier] = None
    executor: Optional[Executor] = None

    def grade(self, submission_id: str, grade: float, feedback: Optional[str], grader: Actor) -> Submission:
        """Grade a submission and lock it against further student changes.

        Intent:
            The only path that moves a submission to GRADED.

        Behavior:
            - `0 <= grade <= max`, where max is the submission's stored max grade
              or, when absent, the assignment's max points.
            - Re-grading a graded submission replaces grade and feedback.
            - The graded notification is dispatched on `executor` when given
              (inline otherwise); its failure is logged and never undoes the grade.

        Permissions:
            Administrators, or lecturers assigned to the submission's course.
        """
        ctx = self.repo.get_grading_context(submission_id)
        if ctx is None:
            raise NotFound("Submission not found.")
        if not (grader.is_admin or (grader.is_lecturer and grader.sub in ctx.lecturer_ids)):
            raise Unauthorized()
        max_grade = ctx.submission.max_grade if ctx.submission.max_grade is not None else ctx.assignment.max_points
        value = float(grade)
        if math.isnan(value) or value < 0 or value > float(max_grade):
            raise GradeOutOfRange(f"Grade must be between 0 and {max_grade:g}.", max_grade=max_grade)

        normalized_feedback = (feedback or "").strip() or None
        graded = self.repo.mark_graded(
            submission_id,
            grade=value,
            feedback=normalized_feedback,
            graded_at=self.clock.now(),
            graded_by=grader.sub,
        )
        record_safely(
            self.audit,
            actor=grader.sub,
            action=SUBMISSION_GRADED,
            entity_type="submission",
            entity_id=submission_id,
            metadata={"grade": value, "assignment_title": ctx.assignment.title},
        )
        self._dispatch_notification(ctx, value, normalized_feedback)
        return graded

    def _dispatch_notification(self, ctx: GradingContext, grade: float, feedback: Optional[str]) -> None:
        if self.notifier is None or not ctx.student_email:
            return
        if self.executor is not None:
            try:
                self.executor.submit(self._notify, ctx.student_email, ctx.assignment.title, grade, feedback)
            except RuntimeError as exc:
                _log.warning("notification not scheduled error=%s", type(exc).__name__)
            return
        self._notify(ctx.student_email, ctx.assignment.title, grade, feedback)

    def _notify(self, email: str, title: str, grade: float, feedback: Optional[str]) -> None:
        try:
            ok, error = self.notifier.notify_graded(  # type: ignore[union-attr]
                student_email=email, assignment_title=title, grade=grade, feedback=feedback
            )
        except Exception as exc:
            _log.warning("graded notification failed error=%s", type(exc).__name__)
            return
        if not ok:
            _log.warning("graded notification not delivered error=%s", error)


__all__ = ["GradingRepoProtocol", "GradingGate"]
