from __future__ import annotations

import re

from backend.storage.keys import make_resource_key, make_submission_key, sanitize_filename


def test_resource_key_shape_keeps_only_extension():
    key = make_resource_key(
        lesson_id="L1", resource_id="R1", filename="Week 1 Slides.PDF", epoch_ms=1700000000000, uuid_hex="abc123"
    )
    assert key == "resources/L1/R1/1700000000000-abc123.pdf"


def test_submission_key_keeps_sanitized_name():
    key = make_submission_key(
        assignment_id="A1", student_id="stu/../../etc", filename="Lab Report (final).pdf", epoch_ms=1, uuid_hex="ff"
    )
    assert key.startswith("submissions/A1/")
    assert key.split("/")[2] == "stu-..-..-etc"
    assert key.count("/") == 3
    assert key.endswith("-ff-Lab-Report-final.pdf")
    assert re.fullmatch(r"[A-Za-z0-9._/-]+", key)


def test_sanitize_filename_strips_paths_and_non_ascii():
    assert sanitize_filename("../../évil name?.TXT") == "evil-name.txt"
    assert sanitize_filename("") == "file"


def test_keys_are_unique_per_call_inputs():
    a = make_submission_key(assignment_id="A", student_id="S", filename="x.pdf", epoch_ms=1, uuid_hex="aa")
    b = make_submission_key(assignment_id="A", student_id="S", filename="x.pdf", epoch_ms=1, uuid_hex="bb")
    assert a != b
