"""Teaching context value objects: resources, their version history and subtree inventories."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from backend.storage.cleanup import StoredFile


class ContentType(str, Enum):
    FILE = "file"
    LINK = "link"
    EMBED = "embed"
    TEXT = "text"


class Visibility(str, Enum):
    PUBLIC = "public"
    SCHEDULED = "scheduled"
    HIDDEN = "hidden"


class SubtreeKind(str, Enum):
    COURSE = "course"
    MODULE = "module"
    LESSON = "lesson"
    ASSIGNMENT = "assignment"


@dataclass(frozen=True, slots=True)
class FileRef:
    """Metadata of one physical object in the resource store."""

    store_key: str
    name: str
    size: int
    mime: str


@dataclass
class Resource:
    id: str
    lesson_id: str
    title: str
    content_type: ContentType
    version: int
    visibility: Visibility = Visibility.PUBLIC
    reveal_at: Optional[datetime] = None
    downloadable: bool = True
    position: int = 0
    file: Optional[FileRef] = None
    content: Optional[str] = None
    course_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_file(self) -> bool:
        return self.content_type == ContentType.FILE

    def is_visible_at(self, now: datetime) -> bool:
        if self.visibility == Visibility.PUBLIC:
            return True
        if self.visibility == Visibility.SCHEDULED:
            return self.reveal_at is not None and self.reveal_at <= now
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lesson_id": self.lesson_id,
            "title": self.title,
            "content_type": self.content_type.value,
            "version": self.version,
            "visibility": self.visibility.value,
            "reveal_at": self.reveal_at.isoformat() if self.reveal_at else None,
            "downloadable": self.downloadable,
            "position": self.position,
            "file_name": self.file.name if self.file else None,
            "file_size": self.file.size if self.file else None,
            "mime_type": self.file.mime if self.file else None,
            "content": self.content,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class ResourceVersion:
    """Immutable history entry; `is_latest` is derived on read."""

    id: str
    resource_id: str
    version: int
    store_key: str
    name: str
    size: int
    mime: str
    uploaded_by: str
    created_at: datetime
    is_latest: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "file_name": self.name,
            "file_size": self.size,
            "mime_type": self.mime,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at.isoformat(),
            "is_latest": self.is_latest,
        }


@dataclass
class SubtreeInventory:
    """Everything a cascading delete would remove below (and including) a root."""

    kind: SubtreeKind
    root_id: str
    module_count: int = 0
    lesson_count: int = 0
    resource_count: int = 0
    submission_count: int = 0
    resource_files: List[StoredFile] = field(default_factory=list)
    submission_files: List[StoredFile] = field(default_factory=list)

    @property
    def dependent_count(self) -> int:
        """Descendant modules and lessons (root excluded), resources and submissions."""
        return self.module_count + self.lesson_count + self.resource_count + self.submission_count


__all__ = ["ContentType", "Visibility", "SubtreeKind", "FileRef", "Resource", "ResourceVersion", "SubtreeInventory"]
