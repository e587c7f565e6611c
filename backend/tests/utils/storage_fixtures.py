"""
In-memory fakes for the storage port and the ops boundaries.

The storage fake records every call and can be told to fail uploads a number
of times, fail deletes for specific keys, or stall to trip the gateway timeout.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from backend.storage.gateway import StorageGateway
from backend.storage.ports import ObjectMissing


class FakeStorageAdapter:
    def __init__(
        self,
        *,
        put_failures: int = 0,
        fail_put_names: Optional[Set[str]] = None,
        fail_delete_keys: Optional[Set[str]] = None,
        fail_signing: bool = False,
        put_delay: float = 0.0,
    ) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.put_calls: List[str] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.put_failures = put_failures
        self.fail_put_names = set(fail_put_names or ())
        self.fail_delete_keys = set(fail_delete_keys or ())
        self.fail_signing = fail_signing
        self.put_delay = put_delay
        self._lock = threading.Lock()
        self._seq = 0

    def put_object(self, *, bucket: str, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        with self._lock:
            self.put_calls.append(key)
            if self.put_failures > 0:
                self.put_failures -= 1
                raise ConnectionError("storage unavailable")
            if metadata.get("originalname") in self.fail_put_names:
                raise ConnectionError("storage unavailable")
        if self.put_delay:
            time.sleep(self.put_delay)
        with self._lock:
            self._seq += 1
            self.objects[(bucket, key)] = bytes(body)
            return {"key": key, "external_id": f"obj-{self._seq}"}

    def presign_download(self, *, bucket: str, key: str, expires_in: int) -> Dict[str, Any]:
        if self.fail_signing:
            raise ConnectionError("signing backend down")
        with self._lock:
            if (bucket, key) not in self.objects:
                raise ObjectMissing(key)
        return {"url": f"https://fake.storage.local/{bucket}/{key}?ttl={expires_in}", "expires_at": None}

    def presign_upload(self, *, bucket: str, key: str, expires_in: int, content_type: str) -> Dict[str, Any]:
        return {"url": f"https://fake.storage.local/upload/{bucket}/{key}", "headers": {"content-type": content_type}}

    def delete_object(self, *, bucket: str, key: str, external_id: Optional[str] = None) -> None:
        with self._lock:
            self.delete_calls.append((bucket, key))
            if key in self.fail_delete_keys:
                raise ConnectionError("delete rejected")
            if (bucket, key) not in self.objects:
                raise ObjectMissing(key)
            del self.objects[(bucket, key)]

    def keys(self, bucket: Optional[str] = None) -> Set[str]:
        with self._lock:
            return {k for (b, k) in self.objects if bucket is None or b == bucket}


def make_gateway(
    adapter: Optional[FakeStorageAdapter] = None,
    *,
    store: str = "resources",
    bucket: Optional[str] = None,
    timeout_seconds: float = 2.0,
    upload_retries: int = 2,
    sleeps: Optional[List[float]] = None,
) -> StorageGateway:
    """Gateway over a fake adapter that records backoff delays instead of sleeping."""
    recorded = sleeps if sleeps is not None else []
    return StorageGateway(
        store=store,
        adapter=adapter or FakeStorageAdapter(),
        bucket=bucket or store,
        timeout_seconds=timeout_seconds,
        upload_retries=upload_retries,
        sleep=recorded.append,
    )


class RecordingAuditSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.entries: List[Dict[str, Any]] = []
        self.fail = fail

    def record(self, *, actor: str, action: str, entity_type: str, entity_id: str, metadata: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("audit store down")
        self.entries.append(
            {"actor": actor, "action": action, "entity_type": entity_type, "entity_id": entity_id, "metadata": metadata}
        )

    def actions(self) -> List[str]:
        return [e["action"] for e in self.entries]


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.fail = fail

    def notify_graded(self, *, student_email: str, assignment_title: str, grade: float, feedback: Optional[str]):
        self.calls.append(
            {"student_email": student_email, "assignment_title": assignment_title, "grade": grade, "feedback": feedback}
        )
        if self.fail:
            raise RuntimeError("mail api down")
        return True, None


__all__ = ["FakeStorageAdapter", "make_gateway", "RecordingAuditSink", "RecordingNotifier"]
