"""
Upload policy and validation for resource files and submission attachments.

Centralises extension/MIME/size/count constraints so that services stay slim
and tests can reference a single source of truth. Validation is pure: no I/O,
no side effects, first violation wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from backend.errors import ValidationFailed

from .config import get_resource_max_upload_bytes

INVALID_TYPE = "InvalidType"
TOO_LARGE = "TooLarge"
TOO_MANY_FILES = "TooManyFiles"
EMPTY_FILE = "EmptyFile"


@dataclass(frozen=True, slots=True)
class CandidateFile:
    """What the validator needs to know about one upload (never the bytes)."""

    name: str
    mime: str
    size: int


@dataclass(frozen=True)
class IncomingFile:
    """An uploaded file as received from the caller."""

    name: str
    mime: str
    body: bytes

    @property
    def size(self) -> int:
        return len(self.body)

    @property
    def is_empty(self) -> bool:
        return not self.body

    def candidate(self) -> CandidateFile:
        return CandidateFile(name=self.name, mime=self.mime, size=self.size)


@dataclass(frozen=True, slots=True)
class UploadPolicy:
    """Immutable policy object used at request-handling time.

    An empty `allowed_extensions` or `allowed_mime_types` set means "any".
    `max_files=None` disables the batch count check.
    """

    allowed_extensions: frozenset[str] = frozenset()
    allowed_mime_types: frozenset[str] = frozenset()
    max_size_bytes: int = 10 * 1024 * 1024
    max_files: Optional[int] = None

    @classmethod
    def build(
        cls,
        *,
        extensions: Iterable[str] = (),
        mime_types: Iterable[str] = (),
        max_size_bytes: int,
        max_files: Optional[int] = None,
    ) -> "UploadPolicy":
        exts = frozenset(e.strip().lower().lstrip(".") for e in extensions if e and e.strip())
        mimes = frozenset(m.strip().lower() for m in mime_types if m and m.strip())
        return cls(allowed_extensions=exts, allowed_mime_types=mimes, max_size_bytes=int(max_size_bytes), max_files=max_files)


def extension_of(name: str) -> str:
    """Lowercased text after the last dot; "" when there is none."""
    base = (name or "").strip()
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].lower()


def _human_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{n} B"


def validate_file(candidate: CandidateFile, policy: UploadPolicy) -> None:
    """Accept `candidate` or raise ValidationFailed with a structured reason."""
    if policy.allowed_extensions:
        ext = extension_of(candidate.name)
        if ext not in policy.allowed_extensions:
            allowed = ", ".join(sorted(policy.allowed_extensions))
            raise ValidationFailed(
                INVALID_TYPE,
                f'"{candidate.name}" has an unsupported file type. Allowed: {allowed}.',
                file_name=candidate.name,
            )
    if policy.allowed_mime_types:
        mime = (candidate.mime or "").split(";", 1)[0].strip().lower()
        if mime not in policy.allowed_mime_types:
            raise ValidationFailed(
                INVALID_TYPE,
                f'"{candidate.name}" has an unsupported content type ({mime or "unknown"}).',
                file_name=candidate.name,
            )
    if candidate.size > policy.max_size_bytes:
        over = candidate.size - policy.max_size_bytes
        raise ValidationFailed(
            TOO_LARGE,
            f'"{candidate.name}" is {_human_bytes(over)} over the {_human_bytes(policy.max_size_bytes)} limit.',
            file_name=candidate.name,
            size=candidate.size,
            max_size_bytes=policy.max_size_bytes,
        )


def check_count(count: int, policy: UploadPolicy) -> None:
    if policy.max_files is not None and count > policy.max_files:
        raise ValidationFailed(
            TOO_MANY_FILES,
            f"At most {policy.max_files} file(s) may be uploaded; got {count}.",
            max_files=policy.max_files,
            count=count,
        )


def validate_batch(candidates: Sequence[CandidateFile], policy: UploadPolicy) -> None:
    """Check the count first, then each file in order."""
    check_count(len(candidates), policy)
    for candidate in candidates:
        validate_file(candidate, policy)


def resource_policy() -> UploadPolicy:
    """Policy for lesson resource uploads: any type, size from config."""
    return UploadPolicy(max_size_bytes=get_resource_max_upload_bytes(), max_files=1)


__all__ = [
    "CandidateFile",
    "IncomingFile",
    "UploadPolicy",
    "INVALID_TYPE",
    "TOO_LARGE",
    "TOO_MANY_FILES",
    "EMPTY_FILE",
    "extension_of",
    "check_count",
    "validate_file",
    "validate_batch",
    "resource_policy",
]
