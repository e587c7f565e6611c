"""Bounded reads of multipart uploads."""

from __future__ import annotations

from fastapi import UploadFile

from backend.storage.upload_policy import CandidateFile, IncomingFile, UploadPolicy, validate_file

_CHUNK_BYTES = 64 * 1024


async def read_upload_with_limit(upload: UploadFile, policy: UploadPolicy) -> IncomingFile:
    """Consume an upload without buffering more than the policy allows.

    Stops as soon as the running total passes `policy.max_size_bytes` and raises
    the same ValidationFailed the policy check would.
    """
    name = upload.filename or "upload"
    mime = upload.content_type or "application/octet-stream"
    limit = int(policy.max_size_bytes)
    total = 0
    buffer = bytearray()
    while True:
        chunk = await upload.read(_CHUNK_BYTES)
        if not chunk:
            break
        buffer.extend(chunk)
        total += len(chunk)
        if limit > 0 and total > limit:
            validate_file(CandidateFile(name=name, mime=mime, size=total), policy)
    return IncomingFile(name=name, mime=mime, body=bytes(buffer))


__all__ = ["read_upload_with_limit"]
