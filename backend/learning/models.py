"""Learning context value objects: assignments, submissions and attachments."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from backend.storage.upload_policy import UploadPolicy


class SubmissionStatus(str, Enum):
    """Stored states only. "No submission yet" is the absence of a row."""

    SUBMITTED = "SUBMITTED"
    GRADED = "GRADED"


@dataclass(frozen=True)
class Assignment:
    id: str
    lesson_id: str
    course_id: str
    title: str
    due_at: datetime
    max_points: float
    allowed_file_types: Tuple[str, ...] = ()
    max_file_size: int = 10 * 1024 * 1024
    max_files: int = 1
    allow_late: bool = False

    def upload_policy(self) -> UploadPolicy:
        return UploadPolicy.build(
            extensions=self.allowed_file_types,
            max_size_bytes=self.max_file_size,
            max_files=self.max_files if self.max_files > 0 else None,
        )

    def is_overdue(self, now: datetime) -> bool:
        return now > self.due_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lesson_id": self.lesson_id,
            "course_id": self.course_id,
            "title": self.title,
            "due_at": self.due_at.isoformat(),
            "max_points": self.max_points,
            "allowed_file_types": list(self.allowed_file_types),
            "max_file_size": self.max_file_size,
            "max_files": self.max_files,
            "allow_late": self.allow_late,
        }


@dataclass(frozen=True)
class Attachment:
    id: str
    submission_id: str
    store_key: str
    name: str
    size: int
    mime: str
    created_at: datetime
    external_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_name": self.name,
            "file_size": self.size,
            "mime_type": self.mime,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Submission:
    id: str
    assignment_id: str
    student_id: str
    status: SubmissionStatus
    submitted_at: datetime
    content: Optional[str] = None
    max_grade: Optional[float] = None
    grade: Optional[float] = None
    feedback: Optional[str] = None
    graded_at: Optional[datetime] = None
    graded_by: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def is_graded(self) -> bool:
        return self.status == SubmissionStatus.GRADED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "student_id": self.student_id,
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat(),
            "content": self.content,
            "max_grade": self.max_grade,
            "grade": self.grade,
            "feedback": self.feedback,
            "graded_at": self.graded_at.isoformat() if self.graded_at else None,
            "attachments": [a.to_dict() for a in self.attachments],
        }


@dataclass(frozen=True)
class NewAttachment:
    """An uploaded file not yet recorded in the database."""

    store_key: str
    name: str
    size: int
    mime: str
    external_id: Optional[str] = None


@dataclass(frozen=True)
class GradingContext:
    submission: Submission
    assignment: Assignment
    lecturer_ids: frozenset
    student_email: Optional[str] = None


@dataclass(frozen=True)
class AttachmentContext:
    attachment: Attachment
    student_id: str
    course_id: str


__all__ = [
    "SubmissionStatus",
    "Assignment",
    "Attachment",
    "Submission",
    "NewAttachment",
    "GradingContext",
    "AttachmentContext",
]
