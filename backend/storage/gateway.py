"""
StorageGateway: uniform, bounded access to one object store.

Intent:
    Wrap a StorageAdapterProtocol implementation with the behavior every caller
    needs: a per-call timeout, upload retries with exponential backoff, stable
    error kinds and idempotent delete semantics.

Behavior:
    - Every adapter call runs on a worker thread and is abandoned after
      `timeout_seconds`. A timeout is treated exactly like a remote failure.
    - `upload` retries `upload_retries` times (delay 1s, 2s, 4s, ...) and raises
      `UploadFailed` only after the final attempt.
    - A timed-out put keeps running on its worker. If it lands before a retry
      succeeds its result is used; if the upload is given up, the object is
      deleted as soon as the abandoned put completes.
    - `delete` never raises; it returns a `DeleteOutcome`. A key that no longer
      exists counts as deleted.
    - One gateway per store. The `store` name is carried into logs and outcomes
      so resource and submission keys are never confused.

Security:
    Provider exceptions are logged by class name and kept on `cause`; callers
    only see the generic message of the mapped error.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from backend.errors import DeleteFailed, SigningFailed, StorageNotConfigured, UploadFailed

from .config import get_download_url_ttl_seconds, get_storage_timeout_seconds, get_upload_retries, get_upload_url_ttl_seconds
from .ports import ObjectMissing, StorageAdapterProtocol

_log = logging.getLogger("coursefiles.storage")


@dataclass(frozen=True, slots=True)
class UploadedObject:
    """Result of a successful upload."""

    store_key: str
    external_id: Optional[str]
    size: int


@dataclass(frozen=True, slots=True)
class DeleteOutcome:
    store: str
    store_key: str
    missing: bool = False
    error: Optional[DeleteFailed] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StorageTimeout(Exception):
    """Adapter call exceeded the configured bound.

    `pending` is the abandoned call; it may still complete on its worker.
    """

    def __init__(self, message: str, pending: Optional["Future[Any]"] = None) -> None:
        super().__init__(message)
        self.pending = pending


class StorageGateway:
    """Timeout/retry/error-mapping layer over one store's adapter."""

    def __init__(
        self,
        *,
        store: str,
        adapter: StorageAdapterProtocol,
        bucket: str,
        timeout_seconds: Optional[float] = None,
        upload_retries: Optional[int] = None,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 16,
    ) -> None:
        self.store = store
        self.bucket = bucket
        self._adapter = adapter
        self._timeout = float(timeout_seconds if timeout_seconds is not None else get_storage_timeout_seconds())
        self._retries = int(upload_retries if upload_retries is not None else get_upload_retries())
        self._backoff = float(backoff_seconds)
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"storage-{store}")

    @property
    def adapter(self) -> StorageAdapterProtocol:
        return self._adapter

    def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        future = self._pool.submit(fn, bucket=self.bucket, **kwargs)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise StorageTimeout(f"{self.store}: call exceeded {self._timeout:g}s", pending=future) from exc

    # --- Upload ------------------------------------------------------------------

    def upload(
        self,
        body: bytes,
        *,
        key: str,
        name: str,
        mime: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> UploadedObject:
        """Upload `body` under `key`; retry transient failures.

        Raises:
            UploadFailed: after the final attempt failed or timed out.
            StorageNotConfigured: the store has no adapter wired (not retried).
        """
        meta = {"originalname": name}
        meta.update(metadata or {})
        attempts = self._retries + 1
        last_exc: Optional[BaseException] = None
        pending: List["Future[Any]"] = []
        for attempt in range(attempts):
            try:
                res = self._call(
                    self._adapter.put_object,
                    key=key,
                    body=body,
                    content_type=mime or "application/octet-stream",
                    metadata=meta,
                )
            except StorageNotConfigured:
                raise
            except Exception as exc:
                last_exc = exc
                if isinstance(exc, StorageTimeout) and exc.pending is not None:
                    pending.append(exc.pending)
                if attempt + 1 < attempts:
                    delay = self._backoff * (2 ** attempt)
                    _log.warning(
                        "upload retry store=%s key=%s attempt=%s error=%s delay=%.1fs",
                        self.store, key, attempt + 1, type(exc).__name__, delay,
                    )
                    self._sleep(delay)
                    landed = _first_landed(pending)
                    if landed is not None:
                        return self._uploaded(landed, key, body)
                continue
            return self._uploaded(res, key, body)
        landed = _first_landed(pending)
        if landed is not None:
            return self._uploaded(landed, key, body)
        _log.warning("upload failed store=%s key=%s attempts=%s error=%s", self.store, key, attempts, type(last_exc).__name__)
        for future in pending:
            future.add_done_callback(lambda f, k=key: self._reclaim(k, f))
        raise UploadFailed(cause=last_exc, file_name=name)

    @staticmethod
    def _uploaded(res: Any, key: str, body: bytes) -> UploadedObject:
        res = res or {}
        return UploadedObject(
            store_key=str(res.get("key") or key),
            external_id=res.get("external_id"),
            size=len(body),
        )

    def _reclaim(self, key: str, future: "Future[Any]") -> None:
        """Delete the object left by an abandoned put once that put completes."""
        if future.cancelled() or future.exception() is not None:
            return
        res = future.result() or {}
        try:
            self._adapter.delete_object(bucket=self.bucket, key=str(res.get("key") or key), external_id=res.get("external_id"))
        except ObjectMissing:
            return
        except Exception as exc:
            _log.warning("late upload cleanup failed store=%s key=%s error=%s", self.store, key, type(exc).__name__)
            return
        _log.info("late upload reclaimed store=%s key=%s", self.store, key)

    # --- Signed URLs -------------------------------------------------------------

    def signed_url(self, key: str, ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Return {"url", "expires_at"} for a time-limited read of `key`.

        Raises:
            SigningFailed: the key is missing or the store rejected the request.
        """
        ttl = int(ttl_seconds or get_download_url_ttl_seconds())
        try:
            res = self._call(self._adapter.presign_download, key=key, expires_in=ttl)
        except StorageNotConfigured:
            raise
        except ObjectMissing as exc:
            raise SigningFailed("The file is no longer available.", cause=exc) from exc
        except Exception as exc:
            _log.warning("signing failed store=%s key=%s error=%s", self.store, key, type(exc).__name__)
            raise SigningFailed(cause=exc) from exc
        url = (res or {}).get("url")
        if not url:
            raise SigningFailed()
        return {"url": str(url), "expires_at": (res or {}).get("expires_at"), "expires_in": ttl}

    def upload_url(self, key: str, mime: str, ttl_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Return {"url", "headers", "expires_in"} for a direct client upload."""
        ttl = int(ttl_seconds or get_upload_url_ttl_seconds())
        try:
            res = self._call(self._adapter.presign_upload, key=key, expires_in=ttl, content_type=mime)
        except StorageNotConfigured:
            raise
        except Exception as exc:
            _log.warning("upload signing failed store=%s key=%s error=%s", self.store, key, type(exc).__name__)
            raise SigningFailed(cause=exc) from exc
        if not (res or {}).get("url"):
            raise SigningFailed()
        return {"url": str(res["url"]), "headers": dict(res.get("headers") or {}), "expires_in": ttl}

    # --- Delete ------------------------------------------------------------------

    def delete(self, key: str, external_id: Optional[str] = None) -> DeleteOutcome:
        """Delete `key`; never raises. Missing objects count as deleted."""
        try:
            self._call(self._adapter.delete_object, key=key, external_id=external_id)
        except ObjectMissing:
            return DeleteOutcome(store=self.store, store_key=key, missing=True)
        except Exception as exc:
            _log.warning("delete failed store=%s key=%s error=%s", self.store, key, type(exc).__name__)
            return DeleteOutcome(store=self.store, store_key=key, error=DeleteFailed(cause=exc, store_key=key))
        return DeleteOutcome(store=self.store, store_key=key)


def _first_landed(futures: List["Future[Any]"]) -> Any:
    """Result of the first abandoned put that has since completed successfully."""
    for future in futures:
        if future.done() and not future.cancelled() and future.exception() is None:
            return future.result() or {}
    return None


__all__ = ["StorageGateway", "UploadedObject", "DeleteOutcome", "StorageTimeout"]
