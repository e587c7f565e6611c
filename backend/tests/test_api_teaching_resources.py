"""Teaching API — lesson resources, versions and downloads.

Admins upload files into a lesson and add versions; lecturers of the course see
the history; enrolled students download the live version only.
"""
from __future__ import annotations

from typing import Any

import pytest

from backend.ops.audit import RESOURCE_DELETED, RESOURCE_UPLOADED
from backend.storage.config import StoreKind
from backend.storage.gateway import StorageGateway
from backend.storage.ports import NullStorageAdapter
from backend.web import storage_wiring

pytestmark = pytest.mark.anyio("asyncio")


def _pdf(name: str = "slides.pdf", body: bytes = b"%PDF-1.7 lecture"):
    return {"file": (name, body, "application/pdf")}


async def _upload(client, lesson_id: str, name: str = "slides.pdf", **form: Any):
    return await client.post(f"/api/teaching/lessons/{lesson_id}/resources", files=_pdf(name), data=form)


@pytest.mark.anyio
async def test_admin_uploads_resource_and_versions(api):
    w = api.world
    async with api.client("admin-1", "admin") as admin:
        r1 = await _upload(admin, w.lesson_id, title="Week 1")
        assert r1.status_code == 201
        body = r1.json()
        assert (body["version"], body["title"], body["file_name"]) == (1, "Week 1", "slides.pdf")
        assert body["content_type"] == "file"
        assert r1.headers["Cache-Control"] == "private, no-store"

        r2 = await admin.post(f"/api/teaching/resources/{body['id']}/versions", files=_pdf("slides-v2.pdf"))
        assert r2.status_code == 201
        assert r2.json()["version"] == 2

    async with api.client(w.lecturer_id, "lecturer") as lecturer:
        hist = await lecturer.get(f"/api/teaching/resources/{body['id']}/versions")
    assert hist.status_code == 200
    assert [(v["version"], v["is_latest"], v["file_name"]) for v in hist.json()] == [
        (2, True, "slides-v2.pdf"),
        (1, False, "slides.pdf"),
    ]
    assert api.audit.actions() == [RESOURCE_UPLOADED, RESOURCE_UPLOADED]
    assert len(api.resource_adapter.keys("resources")) == 2


@pytest.mark.anyio
async def test_lecturer_cannot_upload(api):
    async with api.client(api.world.lecturer_id, "lecturer") as lecturer:
        r = await _upload(lecturer, api.world.lesson_id)
    assert r.status_code == 403
    assert api.resource_adapter.put_calls == []


@pytest.mark.anyio
async def test_cross_origin_upload_is_rejected(api):
    async with api.client("admin-1", "admin", origin="https://evil.example") as admin:
        r = await _upload(admin, api.world.lesson_id)
    assert r.status_code == 403
    assert r.json() == {"error": "forbidden", "detail": "csrf_violation"}
    assert api.resource_adapter.put_calls == []


@pytest.mark.anyio
async def test_scheduled_without_reveal_at_is_bad_request(api):
    async with api.client("admin-1", "admin") as admin:
        r = await _upload(admin, api.world.lesson_id, visibility="scheduled")
        bad = await _upload(admin, api.world.lesson_id, visibility="everyone")
    assert r.status_code == 400
    assert r.json() == {"error": "bad_request", "detail": "reveal_at_required"}
    assert bad.status_code == 400
    assert bad.json()["detail"] == "invalid_input"


@pytest.mark.anyio
async def test_unknown_lesson_and_empty_file(api):
    async with api.client("admin-1", "admin") as admin:
        missing = await _upload(admin, "no-such-lesson")
        empty = await admin.post(
            f"/api/teaching/lessons/{api.world.lesson_id}/resources", files={"file": ("e.pdf", b"", "application/pdf")}
        )
    assert missing.status_code == 404
    assert empty.status_code == 400
    assert empty.json()["error"] == "validation_failed"
    assert empty.json()["reason"] == "EmptyFile"


@pytest.mark.anyio
async def test_unconfigured_resource_store_answers_503(api):
    storage_wiring.set_gateway(
        StoreKind.RESOURCES, StorageGateway(store="resources", adapter=NullStorageAdapter(), bucket="resources")
    )
    async with api.client("admin-1", "admin") as admin:
        r = await _upload(admin, api.world.lesson_id)
    assert r.status_code == 503
    assert r.json()["error"] == "storage_adapter_not_configured"


@pytest.mark.anyio
async def test_upload_failure_answers_502_without_provider_detail(api):
    api.resource_adapter.put_failures = 99
    async with api.client("admin-1", "admin") as admin:
        r = await _upload(admin, api.world.lesson_id)
    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "upload_failed"
    assert "storage unavailable" not in str(body)
    assert api.world.repo.resources == {}


@pytest.mark.anyio
async def test_content_resources(api):
    async with api.client("admin-1", "admin") as admin:
        ok = await admin.post(
            f"/api/teaching/lessons/{api.world.lesson_id}/resources/content",
            json={"title": "Reading", "content_type": "link", "content": "https://example.org/paper"},
        )
        rejected = await admin.post(
            f"/api/teaching/lessons/{api.world.lesson_id}/resources/content",
            json={"title": "Nope", "content_type": "file", "content": "x"},
        )
        version_on_link = await admin.post(f"/api/teaching/resources/{ok.json()['id']}/versions", files=_pdf())
    assert ok.status_code == 201
    assert (ok.json()["version"], ok.json()["file_name"]) == (0, None)
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "invalid_content_type"
    assert version_on_link.status_code == 400
    assert version_on_link.json()["error"] == "not_file_resource"


@pytest.mark.anyio
async def test_student_download_rules(api):
    w = api.world
    async with api.client("admin-1", "admin") as admin:
        rid = (await _upload(admin, w.lesson_id)).json()["id"]
        await admin.post(f"/api/teaching/resources/{rid}/versions", files=_pdf("v2.pdf"))
        locked = (await _upload(admin, w.lesson_id, "locked.pdf", downloadable="false")).json()["id"]
        hidden = (await _upload(admin, w.lesson_id, "hidden.pdf", visibility="hidden")).json()["id"]

    async with api.client(w.student_id, "student") as student:
        live = await student.get(f"/api/learning/resources/{rid}/download-url")
        old = await student.get(f"/api/learning/resources/{rid}/download-url", params={"version": 1})
        no_dl = await student.get(f"/api/learning/resources/{locked}/download-url")
        invisible = await student.get(f"/api/learning/resources/{hidden}/download-url")
    assert live.status_code == 200
    assert (live.json()["version"], live.json()["file_name"]) == (2, "v2.pdf")
    assert live.json()["url"].startswith("https://fake.storage.local/resources/")
    assert old.status_code == 403
    assert no_dl.status_code == 403
    assert invisible.status_code == 404

    async with api.client("outsider", "student") as outsider:
        denied = await outsider.get(f"/api/learning/resources/{rid}/download-url")
    assert denied.status_code == 403
    assert denied.json()["error"] == "not_enrolled"

    async with api.client(w.lecturer_id, "lecturer") as lecturer:
        staff_old = await lecturer.get(f"/api/learning/resources/{rid}/download-url", params={"version": 1})
    assert staff_old.status_code == 200
    assert staff_old.json()["file_name"] == "slides.pdf"


@pytest.mark.anyio
async def test_delete_resource_reports_cleanup(api):
    async with api.client("admin-1", "admin") as admin:
        rid = (await _upload(admin, api.world.lesson_id)).json()["id"]
        await admin.post(f"/api/teaching/resources/{rid}/versions", files=_pdf("v2.pdf"))
        r = await admin.delete(f"/api/teaching/resources/{rid}")
        again = await admin.delete(f"/api/teaching/resources/{rid}")
    assert r.status_code == 200
    assert r.json() == {
        "relational_delete_ok": True,
        "files_attempted": 2,
        "files_deleted": 2,
        "files_failed": 0,
        "failures": [],
    }
    assert again.status_code == 404
    assert api.resource_adapter.keys() == set()
    assert api.audit.actions()[-1] == RESOURCE_DELETED


@pytest.mark.anyio
async def test_oversized_resource_is_rejected_before_upload(api, monkeypatch):
    monkeypatch.setenv("RESOURCE_MAX_UPLOAD_BYTES", "16")
    async with api.client("admin-1", "admin") as admin:
        r = await admin.post(
            f"/api/teaching/lessons/{api.world.lesson_id}/resources", files=_pdf(body=b"%PDF" + b"0" * 200_000)
        )
    assert r.status_code == 400
    assert (r.json()["error"], r.json()["reason"]) == ("validation_failed", "TooLarge")
    assert api.resource_adapter.put_calls == []
    assert api.world.repo.resources == {}
