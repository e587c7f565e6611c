"""
Submission workflow — gates, uploads with rollback, resubmission and downloads.

The world fixture's assignment accepts up to 2 pdf/docx files of at most 1 KB,
due one day after the fixed test clock.
"""
from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from backend.errors import (
    AlreadyGraded,
    DeadlinePassed,
    NotEnrolled,
    NotFound,
    Unauthorized,
    UploadFailed,
    ValidationFailed,
)
from backend.identity_access.domain import Actor
from backend.learning.models import SubmissionStatus
from backend.learning.usecases import GradingGate, SubmissionWorkflow, SubmitInput
from backend.ops.audit import ASSIGNMENT_SUBMITTED
from backend.storage.upload_policy import INVALID_TYPE, TOO_LARGE, TOO_MANY_FILES, IncomingFile
from backend.web.repo_memory import DROPPED

from utils.storage_fixtures import FakeStorageAdapter, make_gateway

ADMIN = Actor.of("admin-1", "admin")


def _pdf(name: str = "report.pdf", body: bytes = b"%PDF-1.7 body") -> IncomingFile:
    return IncomingFile(name=name, mime="application/pdf", body=body)


@pytest.fixture
def workflow(world, submission_gateway, clock, audit) -> SubmissionWorkflow:
    return SubmissionWorkflow(repo=world.repo, storage=submission_gateway, clock=clock, audit=audit)


def _submit(workflow, world, *files, content=None, student=None):
    return workflow.submit(
        SubmitInput(
            assignment_id=world.assignment.id,
            student_id=student or world.student_id,
            content=content,
            files=list(files),
        )
    )


def test_single_valid_file_before_deadline_creates_submission(workflow, world, submission_adapter, audit):
    result = _submit(workflow, world, _pdf())
    sub = result.submission
    assert result.is_overdue is False
    assert sub.status == SubmissionStatus.SUBMITTED
    assert sub.max_grade == 20
    assert len(sub.attachments) == 1
    key = sub.attachments[0].store_key
    assert key.startswith(f"submissions/{world.assignment.id}/{world.student_id}/")
    assert key.endswith("-report.pdf")
    assert submission_adapter.keys("submissions") == {key}
    assert audit.actions() == [ASSIGNMENT_SUBMITTED]
    assert audit.entries[0]["metadata"] == {"assignment_id": world.assignment.id, "file_count": 1, "is_late": False}


def test_too_many_files_rejected_before_any_upload(workflow, world, submission_adapter):
    with pytest.raises(ValidationFailed) as ei:
        _submit(workflow, world, _pdf("a.pdf"), _pdf("b.pdf"), _pdf("c.pdf"))
    assert ei.value.reason == TOO_MANY_FILES
    assert submission_adapter.put_calls == []


def test_invalid_type_and_oversized_file_are_rejected(workflow, world, submission_adapter):
    with pytest.raises(ValidationFailed) as bad_type:
        _submit(workflow, world, IncomingFile(name="shell.exe", mime="application/octet-stream", body=b"MZ"))
    assert bad_type.value.reason == INVALID_TYPE
    assert bad_type.value.to_payload()["file_name"] == "shell.exe"
    with pytest.raises(ValidationFailed) as big:
        _submit(workflow, world, _pdf(body=b"x" * 2048))
    assert big.value.reason == TOO_LARGE
    assert "over the 1.0 KB limit" in big.value.message
    assert submission_adapter.put_calls == []


def test_empty_files_are_skipped_but_counted(workflow, world, submission_adapter):
    result = _submit(workflow, world, _pdf("a.pdf"), _pdf("empty.pdf", body=b""))
    assert [a.name for a in result.submission.attachments] == ["a.pdf"]
    with pytest.raises(ValidationFailed) as ei:
        _submit(workflow, world, _pdf("a.pdf"), _pdf("b.pdf"), _pdf("empty.pdf", body=b""))
    assert ei.value.reason == TOO_MANY_FILES


def test_deadline_gate_at_one_second_either_side(workflow, world, clock):
    due = world.assignment.due_at
    clock.set(due - timedelta(seconds=1))
    assert _submit(workflow, world, _pdf()).is_overdue is False
    clock.set(due + timedelta(seconds=1))
    with pytest.raises(DeadlinePassed):
        _submit(workflow, world, _pdf())


def test_late_submission_allowed_when_assignment_permits(world, submission_gateway, clock):
    late = world.repo.add_assignment(
        world.lesson_id, title="Late ok", due_at=clock.now() - timedelta(hours=1), allow_late=True, allowed_file_types=("pdf",)
    )
    workflow = SubmissionWorkflow(repo=world.repo, storage=submission_gateway, clock=clock)
    result = workflow.submit(SubmitInput(assignment_id=late.id, student_id=world.student_id, content="done", files=[_pdf()]))
    assert result.is_overdue is True
    assert result.submission.status == SubmissionStatus.SUBMITTED


def test_unknown_assignment_and_missing_enrollment(workflow, world, submission_adapter):
    with pytest.raises(NotFound):
        workflow.submit(SubmitInput(assignment_id="missing", student_id=world.student_id, content=None))
    with pytest.raises(NotEnrolled):
        _submit(workflow, world, _pdf(), student="stranger")
    world.repo.enroll(world.course_id, "dropped-1", status=DROPPED)
    with pytest.raises(NotEnrolled):
        _submit(workflow, world, _pdf(), student="dropped-1")
    assert submission_adapter.put_calls == []


def test_upload_failure_rolls_back_earlier_uploads(world, clock):
    adapter = FakeStorageAdapter(fail_put_names={"b.pdf"})
    workflow = SubmissionWorkflow(repo=world.repo, storage=make_gateway(adapter, store="submissions"), clock=clock)
    with pytest.raises(UploadFailed) as ei:
        _submit(workflow, world, _pdf("a.pdf"), _pdf("b.pdf"))
    assert ei.value.details == {"file_name": "b.pdf"}
    assert adapter.keys() == set()
    assert world.repo.get_submission_for(world.assignment.id, world.student_id) is None



def test_timed_out_upload_leaves_no_object_behind(world, clock):
    adapter = FakeStorageAdapter(put_delay=0.3)
    gateway = make_gateway(adapter, store="submissions", timeout_seconds=0.05, upload_retries=0)
    workflow = SubmissionWorkflow(repo=world.repo, storage=gateway, clock=clock)
    with pytest.raises(UploadFailed):
        _submit(workflow, world, _pdf("a.pdf"))
    deadline = time.monotonic() + 3.0
    while adapter.put_calls and not adapter.delete_calls and time.monotonic() < deadline:
        time.sleep(0.02)
    assert len(adapter.delete_calls) == 1
    assert adapter.keys() == set()
    assert world.repo.get_submission_for(world.assignment.id, world.student_id) is None


def test_database_failure_rolls_back_all_uploads(workflow, world, submission_adapter, monkeypatch):
    def _boom(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(world.repo, "insert_submission", _boom)
    with pytest.raises(RuntimeError):
        _submit(workflow, world, _pdf("a.pdf"), _pdf("b.docx"))
    assert len(submission_adapter.put_calls) == 2
    assert submission_adapter.keys() == set()


def test_attachment_rows_only_reference_stored_keys(world, clock):
    adapter = FakeStorageAdapter(put_failures=3)
    workflow = SubmissionWorkflow(repo=world.repo, storage=make_gateway(adapter, store="submissions"), clock=clock)
    with pytest.raises(UploadFailed):
        _submit(workflow, world, _pdf())
    result = _submit(workflow, world, _pdf("again.pdf"))
    stored = adapter.keys()
    assert {a.store_key for a in result.submission.attachments} <= stored


def test_resubmission_appends_attachments_and_updates_content(workflow, world, clock):
    first = _submit(workflow, world, _pdf("a.pdf"), content="v1").submission
    clock.set(clock.now() + timedelta(minutes=5))
    second = _submit(workflow, world, _pdf("b.pdf"), content="v2").submission
    assert second.id == first.id
    assert second.content == "v2"
    assert second.submitted_at == clock.now()
    assert [a.name for a in second.attachments] == ["a.pdf", "b.pdf"]
    assert len(world.repo.submissions) == 1


def test_graded_submission_cannot_be_resubmitted(workflow, world, submission_adapter):
    sub = _submit(workflow, world, _pdf()).submission
    GradingGate(repo=world.repo).grade(sub.id, 17, "good", ADMIN)
    uploads_before = len(submission_adapter.put_calls)
    with pytest.raises(AlreadyGraded):
        _submit(workflow, world, _pdf("late-fix.pdf"))
    assert len(submission_adapter.put_calls) == uploads_before
    stored = world.repo.get_submission(sub.id)
    assert stored.status == SubmissionStatus.GRADED
    assert stored.grade == 17


def test_lost_insert_race_continues_as_update(workflow, world, monkeypatch):
    """A stale "no submission yet" read must not surface the unique violation."""
    _submit(workflow, world, _pdf("winner.pdf"))
    real = world.repo.get_submission_for
    calls = {"n": 0}

    def _stale_once(assignment_id, student_id):
        calls["n"] += 1
        return None if calls["n"] == 1 else real(assignment_id, student_id)

    monkeypatch.setattr(world.repo, "get_submission_for", _stale_once)
    result = _submit(workflow, world, _pdf("loser.pdf"))
    assert [a.name for a in result.submission.attachments] == ["winner.pdf", "loser.pdf"]
    assert len(world.repo.submissions) == 1


def test_concurrent_first_submits_create_exactly_one_row(workflow, world):
    barrier = threading.Barrier(4)
    errors: list = []
    results: list = []

    def _go(i: int) -> None:
        barrier.wait()
        try:
            results.append(_submit(workflow, world, _pdf(f"f{i}.pdf")))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_go, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len(results) == 4
    assert len(world.repo.submissions) == 1
    stored = world.repo.get_submission_for(world.assignment.id, world.student_id)
    assert len(stored.attachments) == 4


# --- Context & downloads -------------------------------------------------------------


def test_submission_context_reflects_deadline_and_existing_row(workflow, world, clock):
    ctx = workflow.get_submission_context(world.assignment.id, world.student_id)
    assert (ctx.submission, ctx.can_submit, ctx.is_overdue) == (None, True, False)
    _submit(workflow, world, _pdf())
    clock.set(world.assignment.due_at + timedelta(minutes=1))
    ctx = workflow.get_submission_context(world.assignment.id, world.student_id)
    assert ctx.submission is not None
    assert (ctx.can_submit, ctx.is_overdue) == (False, True)
    assert ctx.to_dict()["assignment"]["title"] == "Lab report 1"
    with pytest.raises(NotEnrolled):
        workflow.get_submission_context(world.assignment.id, "stranger")


def test_attachment_download_permissions(workflow, world):
    sub = _submit(workflow, world, _pdf()).submission
    att = sub.attachments[0]
    owner = Actor.of(world.student_id, "student")
    res = workflow.attachment_download_url(sub.id, att.id, owner)
    assert att.store_key in res["url"]
    assert res["file_name"] == "report.pdf"
    assert workflow.attachment_download_url(sub.id, att.id, Actor.of(world.lecturer_id, "lecturer"))["url"]
    assert workflow.attachment_download_url(sub.id, att.id, ADMIN)["url"]
    with pytest.raises(Unauthorized):
        workflow.attachment_download_url(sub.id, att.id, Actor.of("student-2", "student"))
    with pytest.raises(Unauthorized):
        workflow.attachment_download_url(sub.id, att.id, Actor.of("other-lecturer", "lecturer"))
    with pytest.raises(NotFound):
        workflow.attachment_download_url(sub.id, "missing", owner)
