from __future__ import annotations

import pytest

from se.structured import Edit
from se.tools.validator import EditValidationError, ensure_valid, validate_edits

SNAPSHOT = {"notes.txt": "A\nB\nC\nD", "src/App.tsx": "one\ntwo\nthree"}


def _edit(**fields) -> Edit:
    fields.setdefault("file", "notes.txt")
    fields.setdefault("description", "change")
    return Edit.model_validate(fields)


def test_valid_batch_has_no_errors() -> None:
    batch = [
        _edit(action="replace", startLine=2, endLine=2, content="B2"),
        _edit(action="insert", insertAfterLine=3, content="X"),
        _edit(action="create", file="src/New.tsx", content="new"),
    ]
    assert validate_edits(batch, SNAPSHOT) == []


def test_create_on_existing_path_is_rejected() -> None:
    errors = validate_edits([_edit(action="create", content="again")], SNAPSHOT)
    assert len(errors) == 1
    assert "already exists" in errors[0]


def test_duplicate_create_in_one_batch_is_rejected() -> None:
    batch = [
        _edit(action="create", file="src/New.tsx", content="a"),
        _edit(action="create", file="src/New.tsx", content="b"),
    ]
    errors = validate_edits(batch, SNAPSHOT)
    assert any("more than once" in error for error in errors)


def test_edit_on_missing_file_skips_range_checks() -> None:
    errors = validate_edits(
        [_edit(action="replace", file="missing.txt", startLine=9, endLine=99, content="x")],
        SNAPSHOT,
    )
    assert errors == [
        "Edit 1 (replace missing.txt): file does not exist; cannot apply replace action."
    ]


@pytest.mark.parametrize(
    ("start", "end", "fragment"),
    [
        (0, 1, "invalid startLine 0"),
        (3, 2, "invalid endLine 2"),
        (2, 5, "endLine 5 exceeds file length (4 lines)"),
    ],
)
def test_range_bounds(start: int, end: int, fragment: str) -> None:
    errors = validate_edits([_edit(action="delete", startLine=start, endLine=end)], SNAPSHOT)
    assert any(fragment in error for error in errors)


def test_range_requires_both_lines() -> None:
    errors = validate_edits([_edit(action="replace", startLine=1, content="x")], SNAPSHOT)
    assert errors == ["Edit 1 (replace notes.txt): replace action requires startLine and endLine."]


def test_insert_point_bounds() -> None:
    assert validate_edits([_edit(action="insert", insertAfterLine=0, content="top")], SNAPSHOT) == []
    assert validate_edits([_edit(action="insert", insertAfterLine=4, content="end")], SNAPSHOT) == []
    errors = validate_edits([_edit(action="insert", insertAfterLine=5, content="x")], SNAPSHOT)
    assert any("insertAfterLine 5 exceeds file length" in error for error in errors)


def test_empty_file_has_one_line() -> None:
    snapshot = {"empty.txt": ""}
    batch = [Edit(file="empty.txt", action="replace", start_line=1, end_line=1, content="x", description="fill")]
    assert validate_edits(batch, snapshot) == []


@pytest.mark.parametrize("reverse", [False, True])
def test_overlapping_ranges_rejected_regardless_of_order(reverse: bool) -> None:
    batch = [
        _edit(action="replace", startLine=1, endLine=2, content="x"),
        _edit(action="delete", startLine=2, endLine=3),
    ]
    if reverse:
        batch.reverse()
    errors = validate_edits(batch, SNAPSHOT)
    assert len(errors) == 1
    assert "overlap in notes.txt" in errors[0]


def test_insert_inside_range_overlaps() -> None:
    batch = [
        _edit(action="delete", startLine=2, endLine=3),
        _edit(action="insert", insertAfterLine=3, content="x"),
    ]
    assert any("overlap" in error for error in validate_edits(batch, SNAPSHOT))


def test_insert_just_before_range_does_not_overlap() -> None:
    batch = [
        _edit(action="delete", startLine=2, endLine=3),
        _edit(action="insert", insertAfterLine=1, content="x"),
    ]
    assert validate_edits(batch, SNAPSHOT) == []


def test_two_inserts_at_same_point_overlap() -> None:
    batch = [
        _edit(action="insert", insertAfterLine=2, content="x"),
        _edit(action="insert", insertAfterLine=2, content="y"),
    ]
    assert any("overlap" in error for error in validate_edits(batch, SNAPSHOT))


def test_edits_on_different_files_never_overlap() -> None:
    batch = [
        _edit(action="replace", startLine=1, endLine=2, content="x"),
        _edit(action="replace", file="src/App.tsx", startLine=1, endLine=2, content="y"),
    ]
    assert validate_edits(batch, SNAPSHOT) == []


def test_content_required_except_for_delete() -> None:
    batch = [
        _edit(action="replace", startLine=1, endLine=1, content=""),
        _edit(action="insert", insertAfterLine=4),
        _edit(action="delete", file="src/App.tsx", startLine=1, endLine=1),
    ]
    errors = validate_edits(batch, SNAPSHOT)
    assert errors == [
        "Edit 1 (replace notes.txt): replace action requires non-empty content.",
        "Edit 2 (insert notes.txt): insert action requires non-empty content.",
    ]


def test_all_violations_are_collected() -> None:
    batch = [
        _edit(action="create", content="dup"),
        _edit(action="delete", startLine=7, endLine=8),
        _edit(action="insert", insertAfterLine=1),
    ]
    assert len(validate_edits(batch, SNAPSHOT)) == 3


def test_ensure_valid_raises_with_errors() -> None:
    with pytest.raises(EditValidationError) as excinfo:
        ensure_valid([_edit(action="create", content="dup")], SNAPSHOT)
    assert str(excinfo.value).startswith("Invalid edits: ")
    assert len(excinfo.value.errors) == 1
    assert excinfo.value.details == {"edit_count": 1}


def test_create_on_occupied_path_is_rejected() -> None:
    batch = [_edit(action="create", file="data/seed.json", content="{}")]
    assert validate_edits(batch, SNAPSHOT) == []
    errors = validate_edits(batch, SNAPSHOT, occupied={"data/seed.json"})
    assert len(errors) == 1
    assert "cannot create it" in errors[0]
    with pytest.raises(EditValidationError):
        ensure_valid(batch, SNAPSHOT, occupied={"data/seed.json"})


def test_content_with_unpaired_surrogate_is_rejected() -> None:
    errors = validate_edits([_edit(action="replace", startLine=1, endLine=1, content="ok \ud800")], SNAPSHOT)
    assert errors == ["Edit 1 (replace notes.txt): content is not valid UTF-8 text."]
