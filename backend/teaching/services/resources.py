"""Lesson resource service: versioned files in the resource store."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from backend.errors import NotEnrolled, NotFileResource, NotFound, Unauthorized, ValidationFailed
from backend.identity_access.domain import Actor
from backend.ops.audit import RESOURCE_DELETED, RESOURCE_UPLOADED, AuditSink, record_safely
from backend.ops.clock import Clock, SystemClock
from backend.storage.cleanup import DeletionReport, StoredFile, delete_many
from backend.storage.gateway import StorageGateway, UploadedObject
from backend.storage.keys import make_resource_key
from backend.storage.upload_policy import EMPTY_FILE, IncomingFile, UploadPolicy, resource_policy, validate_batch
from backend.teaching.models import ContentType, FileRef, Resource, ResourceVersion, Visibility

_log = logging.getLogger("coursefiles.teaching")


class ResourceRepoProtocol(Protocol):
    """Repository contract expected by the resource service."""

    def course_id_for_lesson(self, lesson_id: str) -> Optional[str]: ...

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
    ) -> Resource: ...

    def add_resource_version(self, resource_id: str, *, file: FileRef, uploaded_by: str, now: datetime) -> Resource: ...

    def get_resource(self, resource_id: str) -> Optional[Resource]: ...

    def list_resource_versions(self, resource_id: str) -> List[ResourceVersion]: ...

    def delete_resource(self, resource_id: str) -> Optional[List[StoredFile]]: ...

    def is_course_lecturer(self, course_id: str, user_id: str) -> bool: ...

    def is_actively_enrolled(self, student_id: str, course_id: str) -> bool: ...


@dataclass
class ResourceMeta:
    title: str
    visibility: Visibility = Visibility.PUBLIC
    reveal_at: Optional[datetime] = None
    downloadable: bool = True
    position: Optional[int] = None


@dataclass
class ResourceVersionManager:
    """Encapsulate resource use cases independent of web adapters.

    Relational writes never run while a storage call is in flight: uploads
    finish before the row that references them is written, and physical
    deletes start only after the rows are gone.
    """

    repo: ResourceRepoProtocol
    storage: StorageGateway
    clock: Clock = field(default_factory=SystemClock)
    audit: Optional[AuditSink] = None
    policy: UploadPolicy = field(default_factory=resource_policy)

    # --- Core version operations -------------------------------------------------

    def create_initial(self, lesson_id: str, meta: ResourceMeta, file_ref: FileRef, *, uploaded_by: str) -> Resource:
        """Create a file resource at version 1 with its first history entry."""
        if self.repo.course_id_for_lesson(lesson_id) is None:
            raise NotFound("Lesson not found.")
        resource = self.repo.create_resource(
            resource_id=str(uuid4()),
            lesson_id=lesson_id,
            title=_normalize_title(meta.title, file_ref.name),
            content_type=ContentType.FILE,
            visibility=meta.visibility,
            reveal_at=meta.reveal_at,
            downloadable=meta.downloadable,
            position=meta.position,
            file=file_ref,
            content=None,
            created_by=uploaded_by,
            now=self.clock.now(),
        )
        self._audit_upload(resource, uploaded_by)
        return resource

    def add_version(self, resource_id: str, file_ref: FileRef, *, uploaded_by: str) -> Resource:
        """Append version N+1 and move the live pointer in one transaction."""
        self._require_file_resource(resource_id)
        updated = self.repo.add_resource_version(resource_id, file=file_ref, uploaded_by=uploaded_by, now=self.clock.now())
        self._audit_upload(updated, uploaded_by)
        return updated

    def list_versions(self, resource_id: str) -> List[ResourceVersion]:
        """History newest first; empty for non-file resources."""
        resource = self.repo.get_resource(resource_id)
        if resource is None:
            raise NotFound("Resource not found.")
        if not resource.is_file:
            return []
        return self.repo.list_resource_versions(resource_id)

    def delete(self, resource_id: str, *, actor_id: str = "system") -> DeletionReport:
        """Delete the resource rows, then every distinct stored version best-effort.

        The report reflects physical cleanup only; the resource is gone from the
        product as soon as the relational delete returns.
        """
        files = self.repo.delete_resource(resource_id)
        if files is None:
            raise NotFound("Resource not found.")
        report = DeletionReport.from_outcomes(delete_many(self.storage, files))
        if report.files_failed:
            _log.warning(
                "resource %s deleted with %s orphaned file(s) in store=%s",
                resource_id, report.files_failed, self.storage.store,
            )
        record_safely(
            self.audit,
            actor=actor_id,
            action=RESOURCE_DELETED,
            entity_type="resource",
            entity_id=resource_id,
            metadata={"files_attempted": report.files_attempted, "files_failed": report.files_failed},
        )
        return report

    # --- Upload flows ------------------------------------------------------------

    def upload_new(self, lesson_id: str, meta: ResourceMeta, upload: IncomingFile, *, uploaded_by: str) -> Resource:
        """Validate, store and record a new file resource."""
        if self.repo.course_id_for_lesson(lesson_id) is None:
            raise NotFound("Lesson not found.")
        self._validate(upload)
        resource_id = str(uuid4())
        stored = self._store(lesson_id, resource_id, upload, uploaded_by=uploaded_by)
        file_ref = FileRef(store_key=stored.store_key, name=upload.name, size=stored.size, mime=upload.mime)
        try:
            resource = self.repo.create_resource(
                resource_id=resource_id,
                lesson_id=lesson_id,
                title=_normalize_title(meta.title, upload.name),
                content_type=ContentType.FILE,
                visibility=meta.visibility,
                reveal_at=meta.reveal_at,
                downloadable=meta.downloadable,
                position=meta.position,
                file=file_ref,
                content=None,
                created_by=uploaded_by,
                now=self.clock.now(),
            )
        except Exception:
            self._rollback(stored)
            raise
        self._audit_upload(resource, uploaded_by)
        return resource

    def upload_new_version(self, resource_id: str, upload: IncomingFile, *, uploaded_by: str) -> Resource:
        resource = self._require_file_resource(resource_id)
        self._validate(upload)
        stored = self._store(resource.lesson_id, resource_id, upload, uploaded_by=uploaded_by)
        file_ref = FileRef(store_key=stored.store_key, name=upload.name, size=stored.size, mime=upload.mime)
        try:
            updated = self.repo.add_resource_version(resource_id, file=file_ref, uploaded_by=uploaded_by, now=self.clock.now())
        except Exception:
            self._rollback(stored)
            raise
        self._audit_upload(updated, uploaded_by)
        return updated

    def create_content(
        self,
        lesson_id: str,
        meta: ResourceMeta,
        *,
        content_type: ContentType,
        content: str,
        created_by: str,
    ) -> Resource:
        """Create a link/embed/text resource (no file, version 0, no history)."""
        if content_type == ContentType.FILE:
            raise ValueError("invalid_content_type")
        if self.repo.course_id_for_lesson(lesson_id) is None:
            raise NotFound("Lesson not found.")
        return self.repo.create_resource(
            resource_id=str(uuid4()),
            lesson_id=lesson_id,
            title=_normalize_title(meta.title, content_type.value),
            content_type=content_type,
            visibility=meta.visibility,
            reveal_at=meta.reveal_at,
            downloadable=False,
            position=meta.position,
            file=None,
            content=content,
            created_by=created_by,
            now=self.clock.now(),
        )

    # --- Downloads ---------------------------------------------------------------

    def download_url(self, resource_id: str, actor: Actor, *, version: Optional[int] = None) -> Dict[str, Any]:
        """Issue a signed read URL for the live file or a historical version.

        Permissions:
            Admins and the course's lecturers always; enrolled students only for
            the live version of a visible, downloadable file resource.
        """
        resource = self.repo.get_resource(resource_id)
        if resource is None:
            raise NotFound("Resource not found.")
        if not resource.is_file or resource.file is None:
            raise NotFileResource("This resource has no file to download.")
        course_id = resource.course_id or self.repo.course_id_for_lesson(resource.lesson_id) or ""
        is_staff = actor.is_admin or (actor.is_lecturer and self.repo.is_course_lecturer(course_id, actor.sub))
        if not is_staff:
            if not self.repo.is_actively_enrolled(actor.sub, course_id):
                raise NotEnrolled()
            if not resource.is_visible_at(self.clock.now()):
                raise NotFound("Resource not found.")
            if not resource.downloadable or version is not None:
                raise Unauthorized("This file is not available for download.")
        key, name = resource.file.store_key, resource.file.name
        served_version = resource.version
        if version is not None and version != resource.version:
            match = next((v for v in self.repo.list_resource_versions(resource_id) if v.version == version), None)
            if match is None:
                raise NotFound("Version not found.")
            key, name, served_version = match.store_key, match.name, match.version
        signed = self.storage.signed_url(key)
        return {"url": signed["url"], "expires_at": signed.get("expires_at"), "file_name": name, "version": served_version}

    # --- Helpers -----------------------------------------------------------------

    def _require_file_resource(self, resource_id: str) -> Resource:
        resource = self.repo.get_resource(resource_id)
        if resource is None:
            raise NotFound("Resource not found.")
        if not resource.is_file:
            raise NotFileResource()
        return resource

    def _validate(self, upload: IncomingFile) -> None:
        if upload.is_empty:
            raise ValidationFailed(EMPTY_FILE, f'"{upload.name}" is empty.', file_name=upload.name)
        validate_batch([upload.candidate()], self.policy)

    def _store(self, lesson_id: str, resource_id: str, upload: IncomingFile, *, uploaded_by: str) -> UploadedObject:
        now = self.clock.now()
        key = make_resource_key(
            lesson_id=lesson_id,
            resource_id=resource_id,
            filename=upload.name,
            epoch_ms=int(now.timestamp() * 1000),
            uuid_hex=uuid4().hex,
        )
        return self.storage.upload(
            upload.body,
            key=key,
            name=upload.name,
            mime=upload.mime,
            metadata={"uploaded_by": uploaded_by, "resource_id": resource_id, "uploaded_at": now.isoformat()},
        )

    def _rollback(self, stored: UploadedObject) -> None:
        outcome = self.storage.delete(stored.store_key, stored.external_id)
        if not outcome.ok:
            _log.warning("rollback delete failed store=%s key=%s", self.storage.store, stored.store_key)

    def _audit_upload(self, resource: Resource, actor_id: str) -> None:
        record_safely(
            self.audit,
            actor=actor_id,
            action=RESOURCE_UPLOADED,
            entity_type="resource",
            entity_id=resource.id,
            metadata={"version": resource.version, "file_name": resource.file.name if resource.file else None},
        )


def _normalize_title(title: Optional[str], fallback: str) -> str:
    normalized = (title or "").strip() or (fallback or "").strip() or "Untitled"
    return normalized[:200]


__all__ = ["ResourceRepoProtocol", "ResourceMeta", "ResourceVersionManager"]
