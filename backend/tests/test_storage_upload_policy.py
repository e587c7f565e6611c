"""
Upload policy — per-file and batch validation.

Covers the reasons surfaced to callers (InvalidType, TooLarge, TooManyFiles)
and the ordering rule: the count check runs before any per-file check.
"""
from __future__ import annotations

import pytest

from backend.errors import ValidationFailed
from backend.storage.upload_policy import (
    INVALID_TYPE,
    TOO_LARGE,
    TOO_MANY_FILES,
    CandidateFile,
    IncomingFile,
    UploadPolicy,
    check_count,
    extension_of,
    resource_policy,
    validate_batch,
    validate_file,
)


def _policy(**kw) -> UploadPolicy:
    base = dict(extensions=("pdf", ".DOCX"), max_size_bytes=1000, max_files=2)
    base.update(kw)
    return UploadPolicy.build(**base)


def test_accepts_allowed_extension_case_insensitive():
    validate_file(CandidateFile("Report.PDF", "application/pdf", 10), _policy())
    validate_file(CandidateFile("notes.docx", "application/octet-stream", 10), _policy())


def test_rejects_unknown_extension_with_invalid_type():
    with pytest.raises(ValidationFailed) as ei:
        validate_file(CandidateFile("virus.exe", "application/x-msdownload", 10), _policy())
    assert ei.value.reason == INVALID_TYPE
    assert ei.value.details["file_name"] == "virus.exe"
    assert "pdf" in ei.value.message


def test_name_without_extension_is_invalid_when_types_are_restricted():
    with pytest.raises(ValidationFailed) as ei:
        validate_file(CandidateFile("README", "text/plain", 1), _policy())
    assert ei.value.reason == INVALID_TYPE


def test_empty_allow_list_accepts_any_type():
    validate_file(CandidateFile("anything.xyz", "x/y", 1), _policy(extensions=()))


def test_mime_allow_list_ignores_parameters():
    policy = UploadPolicy.build(mime_types=("text/plain",), max_size_bytes=100)
    validate_file(CandidateFile("a.txt", "text/plain; charset=utf-8", 1), policy)
    with pytest.raises(ValidationFailed) as ei:
        validate_file(CandidateFile("a.txt", "text/html", 1), policy)
    assert ei.value.reason == INVALID_TYPE


def test_size_limit_is_inclusive():
    validate_file(CandidateFile("a.pdf", "application/pdf", 1000), _policy())
    with pytest.raises(ValidationFailed) as ei:
        validate_file(CandidateFile("a.pdf", "application/pdf", 1001), _policy())
    assert ei.value.reason == TOO_LARGE
    assert ei.value.details["max_size_bytes"] == 1000
    assert '"a.pdf"' in ei.value.message


def test_too_large_message_states_overage():
    policy = UploadPolicy.build(max_size_bytes=1024 * 1024)
    with pytest.raises(ValidationFailed) as ei:
        validate_file(CandidateFile("big.bin", "application/octet-stream", 3 * 1024 * 1024), policy)
    assert "2.0 MB over the 1.0 MB limit" in ei.value.message


def test_count_check_runs_before_file_checks():
    files = [CandidateFile(f"f{i}.exe", "x/y", 10_000) for i in range(3)]
    with pytest.raises(ValidationFailed) as ei:
        validate_batch(files, _policy())
    assert ei.value.reason == TOO_MANY_FILES
    assert ei.value.details == {"reason": TOO_MANY_FILES, "max_files": 2, "count": 3}


def test_count_unbounded_when_max_files_is_none():
    check_count(50, _policy(max_files=None))


def test_first_violation_wins_in_batch():
    files = [CandidateFile("ok.pdf", "application/pdf", 1), CandidateFile("bad.exe", "x/y", 5000)]
    with pytest.raises(ValidationFailed) as ei:
        validate_batch(files, _policy())
    assert ei.value.reason == INVALID_TYPE


def test_validation_failed_is_a_value_error_with_stable_code():
    with pytest.raises(ValueError) as ei:
        validate_file(CandidateFile("x.exe", "x/y", 1), _policy())
    assert str(ei.value) == "validation_failed"
    assert ei.value.to_payload()["error"] == "validation_failed"


def test_extension_of_uses_last_dot():
    assert extension_of("archive.tar.GZ") == "gz"
    assert extension_of("noext") == ""
    assert extension_of("trailing.") == ""


def test_incoming_file_candidate_reports_size():
    f = IncomingFile(name="a.pdf", mime="application/pdf", body=b"12345")
    assert f.candidate() == CandidateFile("a.pdf", "application/pdf", 5)
    assert not f.is_empty
    assert IncomingFile(name="e.pdf", mime="application/pdf", body=b"").is_empty


def test_resource_policy_is_capped_at_50_mib(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RESOURCE_MAX_UPLOAD_BYTES", str(500 * 1024 * 1024))
    assert resource_policy().max_size_bytes == 50 * 1024 * 1024
    monkeypatch.setenv("RESOURCE_MAX_UPLOAD_BYTES", "1024")
    assert resource_policy().max_size_bytes == 1024
    assert resource_policy().max_files == 1
