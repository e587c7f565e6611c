"""
Supabase-backed storage adapter for one object store.

This adapter implements StorageAdapterProtocol using a provided Supabase client.
It is intentionally duck-typed to avoid a hard dependency during testing. The
client is expected to expose `.storage.from_(bucket)` (supabase) or
`.from_(bucket)` (storage3) which returns an object offering:

- upload(path, body, file_options) -> response with `Id`/`id` or `path`
- create_signed_url(path, expires_in) -> { signed_url | signedURL | signedUrl | url }
- create_signed_upload_url(path) -> { signed_url | signedURL | url }
- remove([path]) -> list of removed objects (empty when nothing matched)

Security:
- The caller must ensure the client is initialized with the service key of the
  store it addresses. One adapter instance per store; never share clients.
- All buckets should be private; clients receive only short-lived signed URLs.
"""
from __future__ import annotations

from typing import Any, Dict

from .ports import ObjectMissing, StorageAdapterProtocol

_URL_FIELDS = ("signed_url", "signedURL", "signedUrl", "url")


def _looks_missing(exc: BaseException) -> bool:
    status = getattr(exc, "status", None) or getattr(exc, "statusCode", None) or getattr(exc, "status_code", None)
    if str(status) == "404":
        return True
    text = str(exc).lower()
    return "not found" in text or "not_found" in text or "'404'" in text


class SupabaseStorageAdapter(StorageAdapterProtocol):
    """Storage adapter using a supabase (or storage3) client for Storage operations."""

    def __init__(self, client: Any):
        self._client = client

    # --- Helpers -----------------------------------------------------------------

    def _bucket(self, bucket: str) -> Any:
        """Return a bucket proxy from either supabase client or storage3 client."""
        c = self._client
        storage = getattr(c, "storage", None)
        if storage is not None and hasattr(storage, "from_"):
            return storage.from_(bucket)
        if hasattr(c, "from_"):
            return c.from_(bucket)
        raise RuntimeError("invalid_supabase_client")

    @staticmethod
    def _relative_key(bucket: str, key: str) -> str:
        # storage3 prepends the bucket id itself
        norm_key = key.lstrip("/")
        prefix = f"{bucket}/"
        if norm_key.startswith(prefix):
            norm_key = norm_key[len(prefix):]
        return norm_key

    @staticmethod
    def _first_key(d: Dict[str, Any], *keys: str) -> Any:
        for k in keys:
            if k in d and d[k] is not None:
                return d[k]
        return None

    def _extract(self, res: Any, *keys: str) -> Any:
        """Pull a field out of the shapes different client versions return."""
        if isinstance(res, dict):
            value = self._first_key(res, *keys)
            data = res.get("data")
            if value is None and isinstance(data, dict):
                value = self._first_key(data, *keys)
            return value
        if isinstance(res, (list, tuple)) and res and isinstance(res[0], dict):
            return self._first_key(res[0], *keys)
        json_fn = getattr(res, "json", None)
        if callable(json_fn):
            try:
                body = json_fn()
            except ValueError:
                body = None
            if isinstance(body, dict):
                return self._first_key(body, *keys)
        for k in keys:
            value = getattr(res, k, None)
            if value is not None:
                return value
        return None

    # --- Protocol methods --------------------------------------------------------

    def put_object(self, *, bucket: str, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        """Upload `body` under `key`.

        Returns:
            {"key": <relative key>, "external_id": <provider object id or None>}

        Raises:
            Propagates client exceptions; the gateway maps them to UploadFailed.
        """
        b = self._bucket(bucket)
        norm_key = self._relative_key(bucket, key)
        # Some client versions expect file options with either kebab or camel case.
        opts: Dict[str, Any] = {"content-type": content_type, "contentType": content_type, "upsert": "false"}
        if metadata:
            opts["metadata"] = dict(metadata)
        res = b.upload(norm_key, body, opts)
        external_id = self._extract(res, "Id", "id")
        return {"key": norm_key, "external_id": str(external_id) if external_id else None}

    def presign_download(self, *, bucket: str, key: str, expires_in: int) -> Dict[str, Any]:
        b = self._bucket(bucket)
        norm_key = self._relative_key(bucket, key)
        try:
            res = b.create_signed_url(norm_key, expires_in)
        except Exception as exc:
            if _looks_missing(exc):
                raise ObjectMissing(norm_key) from exc
            raise
        url = self._extract(res, *_URL_FIELDS)
        if not url:
            raise RuntimeError("failed_to_presign_download")
        expires_at = self._extract(res, "expires_at", "expiresAt")
        return {"url": str(url), "expires_at": expires_at}

    def presign_upload(self, *, bucket: str, key: str, expires_in: int, content_type: str) -> Dict[str, Any]:
        b = self._bucket(bucket)
        norm_key = self._relative_key(bucket, key)
        # Supabase signed upload URLs carry their TTL server-side; expires_in is advisory.
        res = b.create_signed_upload_url(norm_key)
        url = self._extract(res, *_URL_FIELDS)
        if not url:
            raise RuntimeError("failed_to_presign_upload")
        return {"url": str(url), "headers": {"content-type": content_type}}

    def delete_object(self, *, bucket: str, key: str, external_id: str | None = None) -> None:
        b = self._bucket(bucket)
        norm_key = self._relative_key(bucket, key)
        try:
            removed = b.remove([norm_key])
        except Exception as exc:
            if _looks_missing(exc):
                raise ObjectMissing(norm_key) from exc
            raise
        if isinstance(removed, list) and not removed:
            raise ObjectMissing(norm_key)


__all__ = ["SupabaseStorageAdapter"]
