"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
Every test starts from a clean storage/env configuration and a freshly seeded
in-memory world (one course with a lecturer, an enrolled student, a lesson
and an open assignment).
"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the repository root is importable as the `backend` package parent.
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.ops.clock import FixedClock, SystemClock  # noqa: E402
from backend.web.repo_memory import MemoryRepo  # noqa: E402

from utils.storage_fixtures import FakeStorageAdapter, RecordingAuditSink, make_gateway  # noqa: E402

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

_ISOLATED_ENV = (
    "COURSEFILES_ENV",
    "AUTO_CREATE_STORAGE_BUCKETS",
    "RESOURCE_STORE_URL",
    "RESOURCE_STORE_KEY",
    "RESOURCE_STORE_BUCKET",
    "SUBMISSION_STORE_URL",
    "SUBMISSION_STORE_KEY",
    "SUBMISSION_STORE_BUCKET",
    "STORAGE_TIMEOUT_SECONDS",
    "STORAGE_UPLOAD_RETRIES",
    "STORAGE_DELETE_CONCURRENCY",
    "DOWNLOAD_URL_TTL_SECONDS",
    "UPLOAD_URL_TTL_SECONDS",
    "RESOURCE_MAX_UPLOAD_BYTES",
    "NOTIFY_API_URL",
    "NOTIFY_API_KEY",
    "NOTIFY_FROM",
    "COURSEFILES_TRUST_PROXY",
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles that may leak across tests."""
    for var in _ISOLATED_ENV:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def resource_adapter() -> FakeStorageAdapter:
    return FakeStorageAdapter()


@pytest.fixture
def submission_adapter() -> FakeStorageAdapter:
    return FakeStorageAdapter()


@pytest.fixture
def resource_gateway(resource_adapter):
    return make_gateway(resource_adapter, store="resources")


@pytest.fixture
def submission_gateway(submission_adapter):
    return make_gateway(submission_adapter, store="submissions")


@pytest.fixture
def world() -> SimpleNamespace:
    """Seeded in-memory repo: course, lecturer, enrolled student, lesson, assignment."""
    repo = MemoryRepo()
    course_id = repo.add_course("Physics 101")
    repo.add_lecturer(course_id, "lecturer-1")
    repo.enroll(course_id, "student-1", email="student1@example.org")
    module_id = repo.add_module(course_id, "Mechanics")
    lesson_id = repo.add_lesson(module_id, "Newton's laws")
    assignment = repo.add_assignment(
        lesson_id,
        title="Lab report 1",
        due_at=NOW + timedelta(days=1),
        max_points=20,
        allowed_file_types=("pdf", "docx"),
        max_file_size=1024,
        max_files=2,
    )
    return SimpleNamespace(
        repo=repo,
        course_id=course_id,
        module_id=module_id,
        lesson_id=lesson_id,
        assignment=assignment,
        lecturer_id="lecturer-1",
        student_id="student-1",
    )


@pytest.fixture
def api(world, resource_gateway, submission_gateway, resource_adapter, submission_adapter, clock, audit):
    """FastAPI app bound to the seeded world, fake stores and a fixed clock.

    `api.client(sub, *roles)` returns an AsyncClient carrying a fresh session
    cookie and a same-origin `Origin` header.
    """
    import httpx
    from httpx import ASGITransport

    from backend.storage.config import StoreKind
    from backend.web import main
    from backend.web import storage_wiring
    from backend.web.routes import learning as learning_routes
    from backend.web.routes import teaching as teaching_routes

    from utils.storage_fixtures import RecordingNotifier

    notifier = RecordingNotifier()
    for routes in (teaching_routes, learning_routes):
        routes.set_repo(world.repo)
        routes.set_clock(clock)
        routes.set_audit_sink(audit)
    teaching_routes.set_notifier(notifier)
    storage_wiring.set_gateway(StoreKind.RESOURCES, resource_gateway)
    storage_wiring.set_gateway(StoreKind.SUBMISSIONS, submission_gateway)

    def client(sub: str, *roles: str, origin: str = "http://test") -> httpx.AsyncClient:
        rec = main.SESSION_STORE.create(sub=sub, email=f"{sub}@example.org", roles=list(roles))
        return httpx.AsyncClient(
            transport=ASGITransport(app=main.app),
            base_url="http://test",
            headers={"Origin": origin},
            cookies={main.SESSION_COOKIE_NAME: rec.session_id},
        )

    def anonymous() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")

    yield SimpleNamespace(
        app=main.app,
        client=client,
        anonymous=anonymous,
        world=world,
        notifier=notifier,
        audit=audit,
        resource_adapter=resource_adapter,
        submission_adapter=submission_adapter,
        clock=clock,
    )

    for routes in (teaching_routes, learning_routes):
        routes.set_repo(None)
        routes.set_clock(SystemClock())
    teaching_routes.set_notifier(None)
    for kind in StoreKind:
        storage_wiring.set_gateway(kind, None)
