"""
Supabase adapter — response-shape handling and missing-object mapping.

Uses a duck-typed fake client exposing `.storage.from_(bucket)`; the real
supabase SDK is not contacted.
"""
from __future__ import annotations

import pytest

from backend.storage.ports import ObjectMissing
from backend.storage.supabase_adapter import SupabaseStorageAdapter


class _FakeBucket:
    def __init__(self, name: str, log: list) -> None:
        self.name = name
        self.log = log
        self.stored: dict[str, bytes] = {}

    def upload(self, path, body, file_options):
        self.log.append(("upload", self.name, path, file_options))
        self.stored[path] = body
        return {"Id": "uuid-1", "Key": f"{self.name}/{path}"}

    def create_signed_url(self, path, expires_in):
        if path not in self.stored:
            raise RuntimeError("Object not found")
        return {"signedURL": f"https://sb.local/{self.name}/{path}?e={expires_in}"}

    def create_signed_upload_url(self, path):
        return {"signed_url": f"https://sb.local/upload/{self.name}/{path}", "token": "t"}

    def remove(self, paths):
        removed = [{"name": p} for p in paths if self.stored.pop(p, None) is not None]
        return removed


class _FakeStorage:
    def __init__(self) -> None:
        self.log: list = []
        self.buckets: dict[str, _FakeBucket] = {}

    def from_(self, bucket: str) -> _FakeBucket:
        return self.buckets.setdefault(bucket, _FakeBucket(bucket, self.log))


class _FakeClient:
    def __init__(self) -> None:
        self.storage = _FakeStorage()


def test_put_object_strips_bucket_prefix_and_returns_external_id():
    client = _FakeClient()
    adapter = SupabaseStorageAdapter(client)
    res = adapter.put_object(
        bucket="resources", key="resources/L/R/1-a.pdf", body=b"x", content_type="application/pdf", metadata={"a": "b"}
    )
    assert res == {"key": "L/R/1-a.pdf", "external_id": "uuid-1"}
    op, bucket, path, opts = client.storage.log[0]
    assert (op, bucket, path) == ("upload", "resources", "L/R/1-a.pdf")
    assert opts["content-type"] == "application/pdf"
    assert opts["metadata"] == {"a": "b"}


def test_presign_download_accepts_camel_case_url_field():
    client = _FakeClient()
    adapter = SupabaseStorageAdapter(client)
    adapter.put_object(bucket="submissions", key="A/S/1-x-a.pdf", body=b"x", content_type="application/pdf", metadata={})
    res = adapter.presign_download(bucket="submissions", key="A/S/1-x-a.pdf", expires_in=60)
    assert res["url"] == "https://sb.local/submissions/A/S/1-x-a.pdf?e=60"


def test_presign_download_missing_object_raises_object_missing():
    adapter = SupabaseStorageAdapter(_FakeClient())
    with pytest.raises(ObjectMissing):
        adapter.presign_download(bucket="resources", key="nope", expires_in=60)


def test_presign_upload_returns_url_and_headers():
    adapter = SupabaseStorageAdapter(_FakeClient())
    res = adapter.presign_upload(bucket="submissions", key="A/S/k", expires_in=300, content_type="image/png")
    assert res == {"url": "https://sb.local/upload/submissions/A/S/k", "headers": {"content-type": "image/png"}}


def test_delete_object_missing_when_nothing_removed():
    client = _FakeClient()
    adapter = SupabaseStorageAdapter(client)
    adapter.put_object(bucket="resources", key="k", body=b"x", content_type="text/plain", metadata={})
    adapter.delete_object(bucket="resources", key="k")
    with pytest.raises(ObjectMissing):
        adapter.delete_object(bucket="resources", key="k")


def test_storage3_style_client_without_storage_attribute():
    class _Storage3Client:
        def __init__(self) -> None:
            self._inner = _FakeStorage()

        def from_(self, bucket):
            return self._inner.from_(bucket)

    adapter = SupabaseStorageAdapter(_Storage3Client())
    res = adapter.put_object(bucket="b", key="k", body=b"x", content_type="text/plain", metadata={})
    assert res["key"] == "k"


def test_invalid_client_is_rejected():
    adapter = SupabaseStorageAdapter(object())
    with pytest.raises(RuntimeError):
        adapter.put_object(bucket="b", key="k", body=b"x", content_type="text/plain", metadata={})
