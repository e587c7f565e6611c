"""
Helpers to generate standardized store keys for both object stores.

Why:
    Keep path shapes consistent across contexts and provide simple, testable
    sanitization that avoids path traversal and exotic characters while
    remaining human-readable.

Conventions:
    - Resource store: resources/{lesson}/{resource}/{epoch_ms}-{uuid}.{ext}
    - Submission store: submissions/{assignment}/{student}/{epoch_ms}-{uuid}-{name}

Security:
    - Sanitization removes characters outside [A-Za-z0-9._-] from segments.
    - Filename extensions are lowercased and filtered to alphanumeric + dot.
"""
from __future__ import annotations

import os
import re
import unicodedata

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_segment(value: str, *, fallback: str = "x") -> str:
    value = value or ""
    normalized = unicodedata.normalize("NFKD", value)
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    sanitized = _SEGMENT_RE.sub("-", ascii_value).strip("-_.")
    return sanitized or fallback


def _sanitize_ext_from_filename(filename: str | None, default_ext: str = "") -> str:
    if not filename:
        ext = default_ext
    else:
        _, ext = os.path.splitext(os.path.basename(filename))
    ext = (ext or default_ext or "").lower()
    ext = "".join(ch for ch in ext if ch.isalnum() or ch == ".")
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


def sanitize_filename(filename: str) -> str:
    """Return a storage-safe file name (max 64 chars before the extension)."""
    base = os.path.basename((filename or "").strip())
    root, _ = os.path.splitext(base)
    clean_root = _sanitize_segment(root, fallback="file")[:64]
    return f"{clean_root}{_sanitize_ext_from_filename(base)}"


def make_resource_key(*, lesson_id: str, resource_id: str, filename: str, epoch_ms: int, uuid_hex: str) -> str:
    """Build a key for the resource store.

    Returns: resources/{lesson}/{resource}/{epoch_ms}-{uuid}.{ext}
    """
    lesson = _sanitize_segment(lesson_id, fallback="lesson")
    res = _sanitize_segment(resource_id, fallback="resource")
    ext = _sanitize_ext_from_filename(filename)
    hexpart = (uuid_hex or "").strip() or "file"
    return f"resources/{lesson}/{res}/{epoch_ms}-{hexpart}{ext}"


def make_submission_key(*, assignment_id: str, student_id: str, filename: str, epoch_ms: int, uuid_hex: str) -> str:
    """Build a key for the submission store.

    Returns: submissions/{assignment}/{student}/{epoch_ms}-{uuid}-{sanitized name}
    """
    a = _sanitize_segment(assignment_id, fallback="assignment")
    stu = _sanitize_segment(student_id, fallback="student")
    hexpart = (uuid_hex or "").strip() or "file"
    return f"submissions/{a}/{stu}/{epoch_ms}-{hexpart}-{sanitize_filename(filename)}"


__all__ = ["make_resource_key", "make_submission_key", "sanitize_filename"]
