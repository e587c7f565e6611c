"""
Storage adapter port shared by the resource store and the submission store.

Keep this small and framework-agnostic so tests can supply simple fakes. The
gateway (`backend.storage.gateway`) layers timeouts, retries and error mapping
on top; adapters only translate calls to a concrete SDK.
"""
from __future__ import annotations

from typing import Any, Dict, Protocol

from backend.errors import StorageNotConfigured


class StorageAdapterProtocol(Protocol):
    """Protocol describing one bucket-addressed object store.

    Permissions:
        Implementations run with server-side credentials; callers must have
        authorized the actor before issuing URLs or deletes.
    """

    def put_object(self, *, bucket: str, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]: ...

    def presign_download(self, *, bucket: str, key: str, expires_in: int) -> Dict[str, Any]: ...

    def presign_upload(self, *, bucket: str, key: str, expires_in: int, content_type: str) -> Dict[str, Any]: ...

    def delete_object(self, *, bucket: str, key: str, external_id: str | None = None) -> None: ...


class NullStorageAdapter:
    """Fallback adapter that signals the storage backend is not configured."""

    def put_object(self, *, bucket: str, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]:  # noqa: D401
        raise StorageNotConfigured()

    def presign_download(self, *, bucket: str, key: str, expires_in: int) -> Dict[str, Any]:  # noqa: D401
        raise StorageNotConfigured()

    def presign_upload(self, *, bucket: str, key: str, expires_in: int, content_type: str) -> Dict[str, Any]:  # noqa: D401
        raise StorageNotConfigured()

    def delete_object(self, *, bucket: str, key: str, external_id: str | None = None) -> None:  # noqa: D401
        raise StorageNotConfigured()


class ObjectMissing(Exception):
    """Raised by adapters when the addressed object does not exist."""


__all__ = ["StorageAdapterProtocol", "NullStorageAdapter", "ObjectMissing"]
