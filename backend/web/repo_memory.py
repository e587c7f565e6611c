"""
In-memory repository for development and tests.

Implements both the teaching repository contracts (resources, versions,
subtree deletion) and the learning ones (assignments, submissions, grading)
against plain dicts guarded by one lock. It mirrors the Postgres schema's
guarantees that the services rely on:

- one submission per (assignment, student): a second insert raises Conflict;
- resource versions are numbered 1..N under the lock;
- deleting a row removes its descendants (ON DELETE CASCADE).
"""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from backend.errors import AlreadyGraded, ConfirmationRequired, Conflict, NotFileResource, NotFound
from backend.learning.models import (
    Assignment,
    Attachment,
    AttachmentContext,
    GradingContext,
    NewAttachment,
    Submission,
    SubmissionStatus,
)
from backend.storage.cleanup import StoredFile, dedupe
from backend.teaching.models import ContentType, FileRef, Resource, ResourceVersion, SubtreeInventory, SubtreeKind, Visibility

ACTIVE = "ACTIVE"
DROPPED = "DROPPED"


class MemoryRepo:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.courses: Dict[str, Dict[str, str]] = {}
        self.lecturers: Dict[str, Set[str]] = {}
        self.enrollments: Dict[Tuple[str, str], str] = {}
        self.emails: Dict[str, str] = {}
        self.modules: Dict[str, Dict[str, str]] = {}
        self.lessons: Dict[str, Dict[str, str]] = {}
        self.resources: Dict[str, Resource] = {}
        self.versions: Dict[str, List[ResourceVersion]] = {}
        self.assignments: Dict[str, Assignment] = {}
        self.submissions: Dict[str, Submission] = {}
        self._submission_by_pair: Dict[Tuple[str, str], str] = {}

    # --- Seeding (admin CRUD lives elsewhere) ---------------------------------

    def add_course(self, title: str, *, course_id: Optional[str] = None) -> str:
        cid = course_id or str(uuid4())
        with self._lock:
            self.courses[cid] = {"title": title}
            self.lecturers.setdefault(cid, set())
        return cid

    def add_lecturer(self, course_id: str, user_id: str) -> None:
        with self._lock:
            self.lecturers.setdefault(course_id, set()).add(user_id)

    def enroll(self, course_id: str, student_id: str, *, status: str = ACTIVE, email: Optional[str] = None) -> None:
        with self._lock:
            self.enrollments[(course_id, student_id)] = status
            if email:
                self.emails[student_id] = email

    def add_module(self, course_id: str, title: str = "Module", *, module_id: Optional[str] = None) -> str:
        mid = module_id or str(uuid4())
        with self._lock:
            if course_id not in self.courses:
                raise NotFound("Course not found.")
            self.modules[mid] = {"course_id": course_id, "title": title}
        return mid

    def add_lesson(self, module_id: str, title: str = "Lesson", *, lesson_id: Optional[str] = None) -> str:
        lid = lesson_id or str(uuid4())
        with self._lock:
            if module_id not in self.modules:
                raise NotFound("Module not found.")
            self.lessons[lid] = {"module_id": module_id, "title": title}
        return lid

    def add_assignment(
        self,
        lesson_id: str,
        *,
        title: str,
        due_at: datetime,
        max_points: float = 100,
        allowed_file_types: Sequence[str] = (),
        max_file_size: int = 10 * 1024 * 1024,
        max_files: int = 1,
        allow_late: bool = False,
        assignment_id: Optional[str] = None,
    ) -> Assignment:
        with self._lock:
            course_id = self.course_id_for_lesson(lesson_id)
            if course_id is None:
                raise NotFound("Lesson not found.")
            assignment = Assignment(
                id=assignment_id or str(uuid4()),
                lesson_id=lesson_id,
                course_id=course_id,
                title=title,
                due_at=due_at,
                max_points=max_points,
                allowed_file_types=tuple(allowed_file_types),
                max_file_size=max_file_size,
                max_files=max_files,
                allow_late=allow_late,
            )
            self.assignments[assignment.id] = assignment
        return assignment

    # --- Shared lookups ----------------------------------------------------------

    def course_id_for_lesson(self, lesson_id: str) -> Optional[str]:
        with self._lock:
            lesson = self.lessons.get(lesson_id)
            if lesson is None:
                return None
            module = self.modules.get(lesson["module_id"])
            return module["course_id"] if module else None

    def is_course_lecturer(self, course_id: str, user_id: str) -> bool:
        with self._lock:
            return user_id in self.lecturers.get(course_id, set())

    def is_actively_enrolled(self, student_id: str, course_id: str) -> bool:
        with self._lock:
            status = self.enrollments.get((course_id, student_id))
        return status is not None and status != DROPPED

    # --- Resources ---------------------------------------------------------------

    def create_resource(
        self,
        *,
        resource_id: str,
        lesson_id: str,
        title: str,
        content_type: ContentType,
        visibility: Visibility,
        reveal_at: Optional[datetime],
        downloadable: bool,
        position: Optional[int],
        file: Optional[FileRef],
        content: Optional[str],
        created_by: str,
        now: datetime,
    ) -> Resource:
        with self._lock:
            course_id = self.course_id_for_lesson(lesson_id)
            if course_id is None:
                raise NotFound("Lesson not found.")
            if (content_type == ContentType.FILE) != (file is not None):
                raise ValueError("file_reference_mismatch")
            if position is None:
                positions = [r.position for r in self.resources.values() if r.lesson_id == lesson_id]
                position = (max(positions) + 1) if positions else 0
            resource = Resource(
                id=resource_id,
                lesson_id=lesson_id,
                title=title,
                content_type=content_type,
                version=1 if file is not None else 0,
                visibility=visibility,
                reveal_at=reveal_at,
                downloadable=downloadable,
                position=position,
                file=file,
                content=content,
                course_id=course_id,
                created_at=now,
                updated_at=now,
            )
            self.resources[resource_id] = resource
            self.versions[resource_id] = []
            if file is not None:
                self.versions[resource_id].append(self._version_entry(resource_id, 1, file, created_by, now))
            return replace(resource)

    def add_resource_version(self, resource_id: str, *, file: FileRef, uploaded_by: str, now: datetime) -> Resource:
        with self._lock:
            resource = self.resources.get(resource_id)
            if resource is None:
                raise NotFound("Resource not found.")
            if not resource.is_file:
                raise NotFileResource()
            history = self.versions.setdefault(resource_id, [])
            next_version = max((v.version for v in history), default=0) + 1
            history.append(self._version_entry(resource_id, next_version, file, uploaded_by, now))
            updated = replace(resource, file=file, version=next_version, updated_at=now)
            self.resources[resource_id] = updated
            return replace(updated)

    @staticmethod
    def _version_entry(resource_id: str, version: int, file: FileRef, uploaded_by: str, now: datetime) -> ResourceVersion:
        return ResourceVersion(
            id=str(uuid4()),
            resource_id=resource_id,
            version=version,
            store_key=file.store_key,
            name=file.name,
            size=file.size,
            mime=file.mime,
            uploaded_by=uploaded_by,
            created_at=now,
        )

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self._lock:
            resource = self.resources.get(resource_id)
            return replace(resource) if resource else None

    def list_resource_versions(self, resource_id: str) -> List[ResourceVersion]:
        with self._lock:
            resource = self.resources.get(resource_id)
            if resource is None:
                return []
            history = sorted(self.versions.get(resource_id, []), key=lambda v: v.version, reverse=True)
            return [replace(v, is_latest=(v.version == resource.version)) for v in history]

    def _resource_files(self, resource_id: str) -> List[StoredFile]:
        files = [StoredFile(v.store_key) for v in self.versions.get(resource_id, [])]
        resource = self.resources.get(resource_id)
        if resource is not None and resource.file is not None:
            files.append(StoredFile(resource.file.store_key))
        return dedupe(files)

    def delete_resource(self, resource_id: str) -> Optional[List[StoredFile]]:
        with self._lock:
            if resource_id not in self.resources:
                return None
            files = self._resource_files(resource_id)
            self.resources.pop(resource_id, None)
            self.versions.pop(resource_id, None)
            return files

    # --- Subtrees ----------------------------------------------------------------

    def _scope(self, kind: SubtreeKind, entity_id: str) -> Optional[Tuple[List[str], List[str]]]:
        """Return (lesson_ids, assignment_ids) under the root, or None if absent."""
        if kind == SubtreeKind.COURSE:
            if entity_id not in self.courses:
                return None
            module_ids = {mid for mid, m in self.modules.items() if m["course_id"] == entity_id}
            lesson_ids = [lid for lid, lesson in self.lessons.items() if lesson["module_id"] in module_ids]
        elif kind == SubtreeKind.MODULE:
            if entity_id not in self.modules:
                return None
            lesson_ids = [lid for lid, lesson in self.lessons.items() if lesson["module_id"] == entity_id]
        elif kind == SubtreeKind.LESSON:
            if entity_id not in self.lessons:
                return None
            lesson_ids = [entity_id]
        else:
            if entity_id not in self.assignments:
                return None
            return [], [entity_id]
        lesson_set = set(lesson_ids)
        assignment_ids = [aid for aid, a in self.assignments.items() if a.lesson_id in lesson_set]
        return lesson_ids, assignment_ids

    def collect_subtree(self, kind: SubtreeKind, entity_id: str) -> Optional[SubtreeInventory]:
        with self._lock:
            scope = self._scope(kind, entity_id)
            if scope is None:
                return None
            lesson_ids, assignment_ids = scope
            lesson_set, assignment_set = set(lesson_ids), set(assignment_ids)
            resource_ids = [rid for rid, r in self.resources.items() if r.lesson_id in lesson_set]
            submissions = [s for s in self.submissions.values() if s.assignment_id in assignment_set]
            resource_files: List[StoredFile] = []
            for rid in resource_ids:
                resource_files.extend(self._resource_files(rid))
            submission_files = [
                StoredFile(a.store_key, a.external_id) for s in submissions for a in s.attachments
            ]
            module_count = 0
            if kind == SubtreeKind.COURSE:
                module_count = sum(1 for m in self.modules.values() if m["course_id"] == entity_id)
            return SubtreeInventory(
                kind=kind,
                root_id=entity_id,
                module_count=module_count,
                lesson_count=len(lesson_ids) - (1 if kind == SubtreeKind.LESSON else 0),
                resource_count=len(resource_ids),
                submission_count=len(submissions),
                resource_files=dedupe(resource_files),
                submission_files=dedupe(submission_files),
            )

    def delete_subtree(self, kind: SubtreeKind, entity_id: str, *, allow_dependents: bool) -> Optional[SubtreeInventory]:
        with self._lock:
            inventory = self.collect_subtree(kind, entity_id)
            if inventory is None:
                return None
            if inventory.dependent_count and not allow_dependents:
                raise ConfirmationRequired(inventory.dependent_count)
            lesson_ids, assignment_ids = self._scope(kind, entity_id)  # type: ignore[misc]
            lesson_set, assignment_set = set(lesson_ids), set(assignment_ids)
            for sid in [sid for sid, s in self.submissions.items() if s.assignment_id in assignment_set]:
                sub = self.submissions.pop(sid)
                self._submission_by_pair.pop((sub.assignment_id, sub.student_id), None)
            for aid in assignment_set:
                self.assignments.pop(aid, None)
            for rid in [rid for rid, r in self.resources.items() if r.lesson_id in lesson_set]:
                self.resources.pop(rid, None)
                self.versions.pop(rid, None)
            for lid in lesson_set:
                self.lessons.pop(lid, None)
            if kind == SubtreeKind.MODULE:
                self.modules.pop(entity_id, None)
            elif kind == SubtreeKind.COURSE:
                for mid in [mid for mid, m in self.modules.items() if m["course_id"] == entity_id]:
                    self.modules.pop(mid, None)
                self.courses.pop(entity_id, None)
                self.lecturers.pop(entity_id, None)
                for key in [k for k in self.enrollments if k[0] == entity_id]:
                    self.enrollments.pop(key, None)
            return inventory

    # --- Assignments & submissions ----------------------------------------------

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        with self._lock:
            return self.assignments.get(assignment_id)

    def _copy(self, sub: Submission) -> Submission:
        return replace(sub, attachments=list(sub.attachments))

    def get_submission_for(self, assignment_id: str, student_id: str) -> Optional[Submission]:
        with self._lock:
            sid = self._submission_by_pair.get((assignment_id, student_id))
            return self._copy(self.submissions[sid]) if sid else None

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        with self._lock:
            sub = self.submissions.get(submission_id)
            return self._copy(sub) if sub else None

    @staticmethod
    def _attachments(submission_id: str, items: Sequence[NewAttachment], now: datetime) -> List[Attachment]:
        return [
            Attachment(
                id=str(uuid4()),
                submission_id=submission_id,
                store_key=a.store_key,
                external_id=a.external_id,
                name=a.name,
                size=a.size,
                mime=a.mime,
                created_at=now,
            )
            for a in items
        ]

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
        with self._lock:
            if assignment_id not in self.assignments:
                raise NotFound("Assignment not found.")
            if (assignment_id, student_id) in self._submission_by_pair:
                raise Conflict()
            sub = Submission(
                id=submission_id,
                assignment_id=assignment_id,
                student_id=student_id,
                status=SubmissionStatus.SUBMITTED,
                submitted_at=submitted_at,
                content=content,
                max_grade=max_grade,
                attachments=self._attachments(submission_id, attachments, submitted_at),
            )
            self.submissions[submission_id] = sub
            self._submission_by_pair[(assignment_id, student_id)] = submission_id
            return self._copy(sub)

    def update_submission(
        self,
        submission_id: str,
        *,
        content: Optional[str],
        submitted_at: datetime,
        attachments: Sequence[NewAttachment],
    ) -> Submission:
        with self._lock:
            sub = self.submissions.get(submission_id)
            if sub is None:
                raise NotFound("Submission not found.")
            if sub.is_graded:
                raise AlreadyGraded()
            updated = replace(
                sub,
                content=content,
                status=SubmissionStatus.SUBMITTED,
                submitted_at=submitted_at,
                grade=None,
                feedback=None,
                graded_at=None,
                graded_by=None,
                attachments=list(sub.attachments) + self._attachments(submission_id, attachments, submitted_at),
            )
            self.submissions[submission_id] = updated
            return self._copy(updated)

    def get_attachment_context(self, submission_id: str, attachment_id: str) -> Optional[AttachmentContext]:
        with self._lock:
            sub = self.submissions.get(submission_id)
            if sub is None:
                return None
            attachment = next((a for a in sub.attachments if a.id == attachment_id), None)
            assignment = self.assignments.get(sub.assignment_id)
            if attachment is None or assignment is None:
                return None
            return AttachmentContext(attachment=attachment, student_id=sub.student_id, course_id=assignment.course_id)

    def get_grading_context(self, submission_id: str) -> Optional[GradingContext]:
        with self._lock:
            sub = self.submissions.get(submission_id)
            if sub is None:
                return None
            assignment = self.assignments.get(sub.assignment_id)
            if assignment is None:
                return None
            return GradingContext(
                submission=self._copy(sub),
                assignment=assignment,
                lecturer_ids=frozenset(self.lecturers.get(assignment.course_id, set())),
                student_email=self.emails.get(sub.student_id),
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
        with self._lock:
            sub = self.submissions.get(submission_id)
            if sub is None:
                raise NotFound("Submission not found.")
            updated = replace(
                sub,
                status=SubmissionStatus.GRADED,
                grade=grade,
                feedback=feedback,
                graded_at=graded_at or datetime.now(timezone.utc),
                graded_by=graded_by,
            )
            self.submissions[submission_id] = updated
            return self._copy(updated)


_SHARED: Optional[MemoryRepo] = None
_SHARED_LOCK = threading.Lock()


def shared_memory_repo() -> MemoryRepo:
    """Process-wide fallback so teaching and learning routes see the same rows."""
    global _SHARED
    with _SHARED_LOCK:
        if _SHARED is None:
            _SHARED = MemoryRepo()
        return _SHARED


__all__ = ["MemoryRepo", "ACTIVE", "DROPPED", "shared_memory_repo"]
