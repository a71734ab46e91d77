"""Typed records tracked by the project file store."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


def infer_language(file_path: str) -> str:
    """Best-effort language tag derived from the file extension."""
    suffix = PurePosixPath(file_path).suffix.lstrip(".").lower()
    return suffix or "text"


class ProjectFile(RecordModel):
    """Single file row, unique per ``(project_id, file_path)``."""

    project_id: str
    file_path: str
    content: str = ""
    language: str = "text"
    file_size: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    last_modified_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def build(cls, project_id: str, file_path: str, content: str) -> "ProjectFile":
        return cls(
            project_id=project_id,
            file_path=file_path,
            content=content,
            language=infer_language(file_path),
            file_size=len(content.encode("utf-8")),
        )
