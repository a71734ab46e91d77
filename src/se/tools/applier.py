"""Deterministic application of a validated edit batch to a file snapshot."""

from __future__ import annotations

from typing import Mapping, Sequence

from ..structured import Edit, group_by_file, join_lines, split_lines

__all__ = ["apply_edits", "changed_paths", "order_for_application"]


def apply_edits(batch: Sequence[Edit], snapshot: Mapping[str, str]) -> dict[str, str]:
    """Return a new snapshot with ``batch`` applied; ``snapshot`` is left untouched.

    The batch must already have passed :func:`se.tools.validator.validate_edits`.
    Edits are positioned against the original line numbers of each file, so
    they are applied bottom-up: an edit never shifts the lines addressed by
    the edits that are still pending above it.
    """
    updated = dict(snapshot)
    for path, file_edits in group_by_file(batch).items():
        create = next((edit for edit in file_edits if edit.action == "create"), None)
        if create is not None:
            updated[path] = create.content or ""
            continue
        lines = split_lines(snapshot[path])
        for edit in order_for_application(file_edits):
            _apply_single(lines, edit)
        updated[path] = join_lines(lines)
    return updated


def order_for_application(edits: Sequence[Edit]) -> list[Edit]:
    """Sort non-create edits by anchor descending.

    At equal anchors replace/delete come before insert, so an insert "after
    line N" lands after whatever now occupies line N.
    """
    candidates = [edit for edit in edits if edit.action != "create"]
    return sorted(
        candidates,
        key=lambda edit: (edit.anchor, 1 if edit.action != "insert" else 0),
        reverse=True,
    )


def _apply_single(lines: list[str], edit: Edit) -> None:
    if edit.action == "replace":
        start, end = _range(edit)
        lines[start - 1 : end] = split_lines(edit.content or "")
    elif edit.action == "delete":
        start, end = _range(edit)
        del lines[start - 1 : end]
    elif edit.action == "insert":
        index = edit.insert_after_line or 0
        lines[index:index] = split_lines(edit.content or "")


def _range(edit: Edit) -> tuple[int, int]:
    if edit.start_line is None or edit.end_line is None:
        raise ValueError(f"{edit.action} edit for {edit.file} is missing its line range.")
    return edit.start_line, edit.end_line


def changed_paths(before: Mapping[str, str], after: Mapping[str, str]) -> list[str]:
    """Return paths whose content differs between two snapshots, in ``after`` order."""
    return [path for path, content in after.items() if before.get(path) != content]
