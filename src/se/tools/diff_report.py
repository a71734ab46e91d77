"""Human-readable before/after summaries and timing metrics for applied edits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ..structured import Edit, group_by_file, split_lines

__all__ = [
    "DEFAULT_BASELINE_SECONDS",
    "DEFAULT_PREVIEW_LINES",
    "DiffSummary",
    "PerformanceMetrics",
    "render_completion_summary",
    "render_files_summary",
    "summarize",
]

# Typical wall-clock time of regenerating a whole file set.
DEFAULT_BASELINE_SECONDS = 20.0
DEFAULT_PREVIEW_LINES = 10


@dataclass(frozen=True, slots=True)
class PerformanceMetrics:
    """Timing and volume figures for one applied batch."""

    execution_time_sec: float
    files_modified: int
    total_edits: int
    efficiency_vs_full_regen: float
    baseline_seconds: float = DEFAULT_BASELINE_SECONDS

    @property
    def seconds_saved(self) -> float:
        return max(0.0, self.baseline_seconds - self.execution_time_sec)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_time_sec": self.execution_time_sec,
            "files_modified": self.files_modified,
            "total_edits": self.total_edits,
            "efficiency_vs_full_regen": self.efficiency_vs_full_regen,
        }

    def render(self) -> str:
        file_word = "file" if self.files_modified == 1 else "files"
        edit_word = "edit" if self.total_edits == 1 else "edits"
        return "\n".join(
            [
                "---",
                "**Performance:**",
                f"- Modified {self.files_modified} {file_word} with {self.total_edits} precise {edit_word}",
                f"- Completed in {self.execution_time_sec:.2f}s",
                f"- ~{self.seconds_saved:.1f}s faster than full regeneration "
                f"({self.efficiency_vs_full_regen * 100:.0f}% more efficient)",
                "---",
            ]
        )


@dataclass(frozen=True, slots=True)
class DiffSummary:
    """Rendered per-file diff plus the metrics for one batch."""

    per_file_diffs: str
    edit_overview: str
    metrics: PerformanceMetrics


def summarize(
    batch: Sequence[Edit],
    original_snapshot: Mapping[str, str],
    *,
    elapsed_seconds: float,
    baseline_seconds: float = DEFAULT_BASELINE_SECONDS,
    preview_lines: int = DEFAULT_PREVIEW_LINES,
) -> DiffSummary:
    """Summarise ``batch`` against the snapshot it was validated against.

    "Before" lines always come from ``original_snapshot`` so the rendering
    stays accurate when several edits touched the same file.
    """
    grouped = group_by_file(batch)
    sections: list[str] = []
    overview: list[str] = []
    for path, file_edits in grouped.items():
        original = original_snapshot.get(path)
        original_lines = split_lines(original) if original is not None else []
        sections.append(f"### {path}")
        overview.append(f"**{path}**")
        for edit in file_edits:
            sections.extend(_render_edit(edit, original_lines, preview_lines))
            overview.append(f"  - {edit.action.upper()} {edit.describe_location()}: {edit.description}")

    elapsed = max(0.0, float(elapsed_seconds))
    metrics = PerformanceMetrics(
        execution_time_sec=round(elapsed, 3),
        files_modified=len(grouped),
        total_edits=len(batch),
        efficiency_vs_full_regen=_efficiency(elapsed, baseline_seconds),
        baseline_seconds=baseline_seconds,
    )
    return DiffSummary(
        per_file_diffs="\n".join(sections),
        edit_overview="\n".join(overview),
        metrics=metrics,
    )


def _efficiency(actual_seconds: float, baseline_seconds: float) -> float:
    if baseline_seconds <= 0:
        return 0.0
    return max(0.0, baseline_seconds - actual_seconds) / baseline_seconds


def _render_edit(edit: Edit, original_lines: list[str], preview_lines: int) -> list[str]:
    new_lines = split_lines(edit.content or "")
    if edit.action == "create":
        block = [f"**Created new file** ({len(new_lines)} lines)", "```"]
        block.extend(new_lines[:preview_lines])
        if len(new_lines) > preview_lines:
            block.append(f"... ({len(new_lines) - preview_lines} more lines)")
        block.append("```")
        return block
    if edit.action == "insert":
        block = [f"**Inserted after line {edit.insert_after_line}:**", "```diff"]
        block.extend(f"+ {line}" for line in new_lines)
        block.append("```")
        return block

    start = edit.start_line or 1
    end = edit.end_line if edit.end_line is not None else start
    removed = original_lines[start - 1 : end]
    if edit.action == "delete":
        block = [f"**Deleted lines {start}-{end}:**", "```diff"]
        block.extend(f"- {line}" for line in removed)
        block.append("```")
        return block
    block = [f"**Lines {start}-{end}:**", "```diff"]
    block.extend(f"- {line}" for line in removed)
    block.extend(f"+ {line}" for line in new_lines)
    block.append("```")
    return block


def render_files_summary(
    message_to_user: str,
    files: Sequence[tuple[str, str]],
    original_snapshot: Mapping[str, str],
    *,
    elapsed_seconds: float,
) -> str:
    """Summary for a full-file generation: one line per written file."""
    parts = ["**Generation Complete**"]
    if message_to_user.strip():
        parts.append(message_to_user.strip())
    listing = []
    for path, content in files:
        verb = "Rewrote" if path in original_snapshot else "Created"
        listing.append(f"  - {verb} {path} ({len(split_lines(content))} lines)")
    if listing:
        parts.append("**Files:**\n" + "\n".join(listing))
    parts.append(f"Completed in {max(0.0, elapsed_seconds):.2f}s")
    return "\n\n".join(parts)


def render_completion_summary(message_to_user: str, summary: DiffSummary) -> str:
    """Combine the model's message, per-file diff and metrics for display."""
    parts = ["**Surgical Edit Complete**"]
    if message_to_user.strip():
        parts.append(message_to_user.strip())
    if summary.per_file_diffs:
        parts.append(summary.per_file_diffs)
    parts.append(summary.metrics.render())
    if summary.edit_overview:
        parts.append(f"**Summary:**\n{summary.edit_overview}")
    return "\n\n".join(parts)
