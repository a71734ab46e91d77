"""Typed payloads that describe the edits and files emitted by the generate phase."""

from __future__ import annotations

from typing import Dict, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

EditAction = Literal["replace", "insert", "delete", "create"]

# Path -> full text content for every file in a project.
FileSnapshot = Dict[str, str]

CONTENT_ACTIONS: frozenset[str] = frozenset({"replace", "insert", "create"})
RANGE_ACTIONS: frozenset[str] = frozenset({"replace", "delete"})


class WireModel(BaseModel):
    """Base model for JSON exchanged with the model-call collaborator."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class Edit(WireModel):
    """Line-oriented edit instruction proposed by the model."""

    file: str
    action: EditAction
    start_line: Optional[int] = Field(default=None, alias="startLine")
    end_line: Optional[int] = Field(default=None, alias="endLine")
    insert_after_line: Optional[int] = Field(default=None, alias="insertAfterLine")
    content: Optional[str] = None
    description: str

    @property
    def anchor(self) -> int:
        """Return the original line this edit is positioned against."""
        if self.action == "insert":
            return self.insert_after_line or 0
        return self.start_line or 0

    def describe_location(self) -> str:
        if self.action in RANGE_ACTIONS:
            end = self.end_line if self.end_line is not None else self.start_line
            return f"lines {self.start_line}-{end}"
        if self.action == "insert":
            return f"after line {self.insert_after_line}"
        return "new file"


EditBatch = Sequence[Edit]


class FileArtifact(WireModel):
    """Complete file payload, either generated by the model or persisted."""

    path: str
    content: str


class GenerationResponse(WireModel):
    """Structured result returned by the generate phase.

    Surgical responses carry ``edits``; full-file responses carry ``files``.
    Exactly one of the two is expected.
    """

    thought: str = ""
    edits: Optional[List[Edit]] = None
    files: Optional[List[FileArtifact]] = None
    message_to_user: str = Field(default="", alias="messageToUser")
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")

    @property
    def is_surgical(self) -> bool:
        return self.edits is not None


def split_lines(content: str) -> list[str]:
    """Split content into addressable lines; an empty file has one empty line."""
    return content.split("\n")


def join_lines(lines: Sequence[str]) -> str:
    return "\n".join(lines)


def line_count(content: str) -> int:
    return len(split_lines(content))


def is_encodable(content: str) -> bool:
    """False when ``content`` holds unpaired surrogates and so cannot be saved as UTF-8."""
    try:
        content.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def group_by_file(edits: Sequence[Edit]) -> dict[str, list[Edit]]:
    """Group edits per target path, preserving first-seen order."""
    grouped: dict[str, list[Edit]] = {}
    for edit in edits:
        grouped.setdefault(edit.file, []).append(edit)
    return grouped


def snapshot_line_total(snapshot: Mapping[str, str]) -> int:
    return sum(line_count(content) for content in snapshot.values())


__all__ = [
    "CONTENT_ACTIONS",
    "Edit",
    "EditAction",
    "EditBatch",
    "FileArtifact",
    "FileSnapshot",
    "GenerationResponse",
    "RANGE_ACTIONS",
    "group_by_file",
    "is_encodable",
    "join_lines",
    "line_count",
    "snapshot_line_total",
    "split_lines",
]
