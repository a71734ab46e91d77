"""Structural and conflict checks for a batch of proposed line edits."""

from __future__ import annotations

from itertools import combinations
from typing import AbstractSet, Any, Mapping, Sequence

from ..structured import CONTENT_ACTIONS, RANGE_ACTIONS, Edit, is_encodable, line_count

__all__ = ["EditValidationError", "ensure_valid", "validate_edits"]


class EditValidationError(ValueError):
    """Raised when a batch of edits fails validation as a whole."""

    def __init__(self, errors: Sequence[str], *, details: Mapping[str, Any] | None = None) -> None:
        self.errors: tuple[str, ...] = tuple(errors)
        message = "; ".join(self.errors) or "Edit batch failed validation."
        super().__init__(f"Invalid edits: {message}")
        self.details: dict[str, Any] = dict(details or {})


def validate_edits(
    batch: Sequence[Edit],
    snapshot: Mapping[str, str],
    *,
    occupied: AbstractSet[str] = frozenset(),
) -> list[str]:
    """Return every violation found in ``batch``; an empty list means valid.

    ``occupied`` names paths that exist in the project but are not part of
    ``snapshot`` (skipped as binary, oversized or excluded); creating them is
    refused like creating a snapshot file.

    Checks run in a fixed order over the whole batch (existence, replace and
    delete ranges, insert points, overlaps, content) so callers receive a
    complete report rather than the first failure.
    """
    errors: list[str] = []
    errors.extend(_check_existence(batch, snapshot, occupied))
    errors.extend(_check_ranges(batch, snapshot))
    errors.extend(_check_insert_points(batch, snapshot))
    errors.extend(_check_overlaps(batch, snapshot))
    errors.extend(_check_content(batch))
    return errors


def ensure_valid(
    batch: Sequence[Edit],
    snapshot: Mapping[str, str],
    *,
    occupied: AbstractSet[str] = frozenset(),
) -> None:
    """Raise :class:`EditValidationError` when ``batch`` is not valid."""
    errors = validate_edits(batch, snapshot, occupied=occupied)
    if errors:
        raise EditValidationError(errors, details={"edit_count": len(batch)})


def _label(index: int, edit: Edit) -> str:
    return f"Edit {index + 1} ({edit.action} {edit.file})"


def _check_existence(
    batch: Sequence[Edit],
    snapshot: Mapping[str, str],
    occupied: AbstractSet[str],
) -> list[str]:
    errors: list[str] = []
    created: set[str] = set()
    for index, edit in enumerate(batch):
        if edit.action == "create":
            if edit.file in snapshot:
                errors.append(f"{_label(index, edit)}: file already exists; cannot create it.")
            elif edit.file in occupied:
                errors.append(
                    f"{_label(index, edit)}: a file that cannot be edited already exists at this path; "
                    "cannot create it."
                )
            if edit.file in created:
                errors.append(f"{_label(index, edit)}: file is created more than once in this batch.")
            created.add(edit.file)
        elif edit.file not in snapshot:
            errors.append(
                f"{_label(index, edit)}: file does not exist; cannot apply {edit.action} action."
            )
    return errors


def _check_ranges(batch: Sequence[Edit], snapshot: Mapping[str, str]) -> list[str]:
    errors: list[str] = []
    for index, edit in enumerate(batch):
        if edit.action not in RANGE_ACTIONS or edit.file not in snapshot:
            continue
        label = _label(index, edit)
        if edit.start_line is None or edit.end_line is None:
            errors.append(f"{label}: {edit.action} action requires startLine and endLine.")
            continue
        total = line_count(snapshot[edit.file])
        if edit.start_line < 1:
            errors.append(f"{label}: invalid startLine {edit.start_line} (must be >= 1).")
        if edit.end_line < edit.start_line:
            errors.append(
                f"{label}: invalid endLine {edit.end_line} (must be >= startLine {edit.start_line})."
            )
        if edit.end_line > total:
            errors.append(f"{label}: endLine {edit.end_line} exceeds file length ({total} lines).")
        elif edit.start_line > total:
            errors.append(f"{label}: startLine {edit.start_line} exceeds file length ({total} lines).")
    return errors


def _check_insert_points(batch: Sequence[Edit], snapshot: Mapping[str, str]) -> list[str]:
    errors: list[str] = []
    for index, edit in enumerate(batch):
        if edit.action != "insert" or edit.file not in snapshot:
            continue
        label = _label(index, edit)
        if edit.insert_after_line is None:
            errors.append(f"{label}: insert action requires insertAfterLine.")
            continue
        total = line_count(snapshot[edit.file])
        if edit.insert_after_line < 0:
            errors.append(f"{label}: invalid insertAfterLine {edit.insert_after_line} (must be >= 0).")
        elif edit.insert_after_line > total:
            errors.append(
                f"{label}: insertAfterLine {edit.insert_after_line} exceeds file length ({total} lines)."
            )
    return errors


def _span(edit: Edit) -> tuple[int, int] | None:
    """Return the occupied interval of ``edit``; inserts are a single point."""
    if edit.action == "insert":
        if edit.insert_after_line is None:
            return None
        return edit.insert_after_line, edit.insert_after_line
    if edit.action in RANGE_ACTIONS:
        if edit.start_line is None or edit.end_line is None:
            return None
        return edit.start_line, edit.end_line
    return None


def _overlaps(first: Edit, second: Edit) -> bool:
    first_span = _span(first)
    second_span = _span(second)
    if first_span is None or second_span is None:
        return False
    if first.action == "insert" and second.action == "insert":
        return first_span[0] == second_span[0]
    if first.action == "insert":
        point = first_span[0]
        return second_span[0] <= point <= second_span[1]
    if second.action == "insert":
        point = second_span[0]
        return first_span[0] <= point <= first_span[1]
    return first_span[0] <= second_span[1] and second_span[0] <= first_span[1]


def _check_overlaps(batch: Sequence[Edit], snapshot: Mapping[str, str]) -> list[str]:
    errors: list[str] = []
    indices_by_file: dict[str, list[int]] = {}
    for index, edit in enumerate(batch):
        indices_by_file.setdefault(edit.file, []).append(index)
    for path, indices in indices_by_file.items():
        if path not in snapshot:
            continue
        for a, b in combinations(indices, 2):
            if not _overlaps(batch[a], batch[b]):
                continue
            errors.append(
                f"Edits {a + 1} and {b + 1} overlap in {path} "
                f"({batch[a].describe_location()} vs {batch[b].describe_location()})."
            )
    return errors


def _check_content(batch: Sequence[Edit]) -> list[str]:
    errors: list[str] = []
    for index, edit in enumerate(batch):
        if edit.action in CONTENT_ACTIONS and not edit.content:
            errors.append(f"{_label(index, edit)}: {edit.action} action requires non-empty content.")
        elif edit.content and not is_encodable(edit.content):
            errors.append(f"{_label(index, edit)}: content is not valid UTF-8 text.")
    return errors
