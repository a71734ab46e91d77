"""One generate, validate, apply and persist cycle against a fresh snapshot."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .context_builder import ContextBuilder
from .models.llm_client import LLMClient, LLMClientError
from .phases import generate
from .storage.store import FileStore, PersistenceError, StorageError
from .structured import FileArtifact, GenerationResponse, is_encodable
from .tools.applier import apply_edits, changed_paths
from .tools.diff_report import (
    DEFAULT_BASELINE_SECONDS,
    DEFAULT_PREVIEW_LINES,
    render_completion_summary,
    render_files_summary,
    summarize,
)
from .tools.progress import ProgressBroadcaster, safe_emit
from .tools.validator import EditValidationError, validate_edits

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AttemptContext",
    "ExecutionAttempt",
    "ExecutionResult",
    "FailureKind",
    "PLACEHOLDER_PATTERNS",
    "find_placeholders",
]

PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"// \.\.\."),
    re.compile(r"// rest of", re.IGNORECASE),
    re.compile(r"// existing code", re.IGNORECASE),
    re.compile(r"// unchanged", re.IGNORECASE),
)


class FailureKind(str, Enum):
    """Why an attempt failed; absent on success."""

    VALIDATION = "validation"
    MODEL_CALL = "model_call"
    GENERATION = "generation"
    STORAGE = "storage"


@dataclass(frozen=True, slots=True)
class AttemptContext:
    """Everything one attempt needs; ``started_at`` is a monotonic timestamp."""

    project_id: str
    user_request: str
    attempt_number: int
    started_at: float
    feedback: tuple[str, ...] = ()
    history: tuple[Mapping[str, str], ...] = ()
    framework: str = ""


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of a single attempt."""

    success: bool
    message: str
    files_modified: tuple[FileArtifact, ...] = ()
    duration_ms: int = 0
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    validation_errors: tuple[str, ...] = ()
    persistence_errors: tuple[str, ...] = ()
    summary: str = ""
    mode: Optional[str] = None
    edit_count: int = 0

    @property
    def modified_paths(self) -> list[str]:
        return [artifact.path for artifact in self.files_modified]

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "files_modified": self.modified_paths,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "validation_errors": list(self.validation_errors),
            "persistence_errors": list(self.persistence_errors),
            "mode": self.mode,
            "edit_count": self.edit_count,
        }


def find_placeholders(files: Sequence[FileArtifact]) -> list[str]:
    """Return the paths whose content still contains elision placeholders."""
    flagged: list[str] = []
    for artifact in files:
        if any(pattern.search(artifact.content) for pattern in PLACEHOLDER_PATTERNS):
            flagged.append(artifact.path)
    return flagged


class ExecutionAttempt:
    """Run one attempt: generate, validate, apply and persist.

    The snapshot is read fresh on every run. A batch that fails validation is
    rejected as a whole and nothing is written. Write failures are isolated
    per file: the file is logged, reported in ``persistence_errors`` and left
    out of ``files_modified`` while the rest of the batch is still saved.
    """

    def __init__(
        self,
        *,
        client: LLMClient,
        context_builder: ContextBuilder,
        store: FileStore,
        broadcaster: ProgressBroadcaster | None = None,
        baseline_seconds: float = DEFAULT_BASELINE_SECONDS,
        preview_lines: int = DEFAULT_PREVIEW_LINES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._context_builder = context_builder
        self._store = store
        self._broadcaster = broadcaster
        self._baseline_seconds = baseline_seconds
        self._preview_lines = preview_lines
        self._clock = clock

    def run(self, context: AttemptContext) -> ExecutionResult:
        LOGGER.info(
            "Attempt %d for project %s started", context.attempt_number, context.project_id
        )
        try:
            snapshot = self._store.read(context.project_id)
        except StorageError as error:
            LOGGER.error("Failed to load files for %s: %s", context.project_id, error)
            return self._failure(context, FailureKind.STORAGE, f"Failed to load project files: {error}")

        safe_emit(
            self._broadcaster,
            "generation:surgical_analysis",
            status="analyzing",
            message="Identifying exact lines to modify...",
            progress=55,
            attempt=context.attempt_number,
        )
        request = generate.GenerateRequest(
            project_id=context.project_id,
            user_request=context.user_request,
            attempt_number=context.attempt_number,
            files=dict(snapshot),
            feedback=list(context.feedback),
            history=[dict(turn) for turn in context.history],
            framework=context.framework,
        )
        try:
            response = generate.run(
                request,
                client=self._client,
                context_builder=self._context_builder,
            )
        except LLMClientError as error:
            return self._failure(context, FailureKind.MODEL_CALL, f"Model call failed: {error}")

        if response.is_surgical:
            return self._run_surgical(context, response, snapshot)
        return self._run_files(context, response, snapshot)

    def _run_surgical(
        self,
        context: AttemptContext,
        response: GenerationResponse,
        snapshot: Mapping[str, str],
    ) -> ExecutionResult:
        edits = list(response.edits or [])
        try:
            occupied = self._occupied(
                context.project_id,
                (edit.file for edit in edits if edit.action == "create"),
                snapshot,
            )
        except StorageError as error:
            return self._failure(context, FailureKind.STORAGE, f"Failed to check project files: {error}")
        errors = validate_edits(edits, snapshot, occupied=occupied)
        if errors:
            failure = EditValidationError(errors, details={"edit_count": len(edits)})
            LOGGER.warning("Rejected %d edit(s): %s", len(edits), failure)
            return self._failure(
                context,
                FailureKind.VALIDATION,
                str(failure),
                validation_errors=failure.errors,
                mode="edits",
            )

        safe_emit(
            self._broadcaster,
            "generation:applying_edits",
            status="applying",
            message=f"Making {len(edits)} precise changes...",
            progress=80,
            edits=[
                {"file": edit.file, "action": edit.action, "description": edit.description}
                for edit in edits
            ],
        )
        updated = apply_edits(edits, snapshot)
        saved, persistence_errors = self._persist(context.project_id, snapshot, updated)

        elapsed = self._elapsed(context)
        diff = summarize(
            edits,
            snapshot,
            elapsed_seconds=elapsed,
            baseline_seconds=self._baseline_seconds,
            preview_lines=self._preview_lines,
        )
        summary = render_completion_summary(response.message_to_user, diff)
        message = response.message_to_user.strip() or (
            f"Applied {len(edits)} edit(s) across {diff.metrics.files_modified} file(s)."
        )
        safe_emit(
            self._broadcaster,
            "generation:surgical_complete",
            status="complete",
            message="Changes applied successfully",
            progress=100,
            summary=summary,
            metrics=diff.metrics.to_dict(),
        )
        return ExecutionResult(
            success=True,
            message=message,
            files_modified=tuple(saved),
            duration_ms=int(elapsed * 1000),
            persistence_errors=tuple(persistence_errors),
            summary=summary,
            mode="edits",
            edit_count=len(edits),
        )

    def _run_files(
        self,
        context: AttemptContext,
        response: GenerationResponse,
        snapshot: Mapping[str, str],
    ) -> ExecutionResult:
        files = list(response.files or [])
        flagged = find_placeholders(files)
        if flagged:
            error = (
                f"File {flagged[0]} contains incomplete code with placeholders. "
                "Provide complete file content."
            )
            return self._failure(context, FailureKind.GENERATION, error, mode="files")
        unencodable = [artifact.path for artifact in files if not is_encodable(artifact.content)]
        if unencodable:
            return self._failure(
                context,
                FailureKind.GENERATION,
                f"File {unencodable[0]} content is not valid UTF-8 text.",
                mode="files",
            )
        try:
            occupied = self._occupied(context.project_id, (artifact.path for artifact in files), snapshot)
        except StorageError as error:
            return self._failure(context, FailureKind.STORAGE, f"Failed to check project files: {error}")
        if occupied:
            errors = [
                f"{path}: a file that cannot be edited already exists at this path."
                for path in sorted(occupied)
            ]
            return self._failure(
                context,
                FailureKind.VALIDATION,
                "; ".join(errors),
                validation_errors=errors,
                mode="files",
            )

        updated = dict(snapshot)
        for artifact in files:
            updated[artifact.path] = artifact.content
        saved, persistence_errors = self._persist(context.project_id, snapshot, updated)

        elapsed = self._elapsed(context)
        summary = render_files_summary(
            response.message_to_user,
            [(artifact.path, artifact.content) for artifact in saved],
            snapshot,
            elapsed_seconds=elapsed,
        )
        safe_emit(
            self._broadcaster,
            "generation:files_complete",
            status="complete",
            progress=100,
            files=[artifact.path for artifact in saved],
        )
        return ExecutionResult(
            success=True,
            message=response.message_to_user.strip() or f"Generated {len(saved)} file(s).",
            files_modified=tuple(saved),
            duration_ms=int(elapsed * 1000),
            persistence_errors=tuple(persistence_errors),
            summary=summary,
            mode="files",
        )

    def _persist(
        self,
        project_id: str,
        before: Mapping[str, str],
        after: Mapping[str, str],
    ) -> tuple[list[FileArtifact], list[str]]:
        saved: list[FileArtifact] = []
        errors: list[str] = []
        for path in changed_paths(before, after):
            content = after[path]
            try:
                self._store.write(project_id, path, content, create=path not in before)
            except PersistenceError as error:
                LOGGER.error("Error saving %s: %s", path, error)
                errors.append(f"{path}: {error}")
                continue
            LOGGER.debug("Saved %s", path)
            saved.append(FileArtifact(path=path, content=content))
        return saved, errors

    def _occupied(self, project_id: str, paths: Iterable[str], snapshot: Mapping[str, str]) -> set[str]:
        """Paths outside ``snapshot`` that nonetheless exist in the store."""
        return {path for path in set(paths) if path not in snapshot and self._store.exists(project_id, path)}

    def _elapsed(self, context: AttemptContext) -> float:
        return max(0.0, self._clock() - context.started_at)

    def _failure(
        self,
        context: AttemptContext,
        kind: FailureKind,
        error: str,
        *,
        validation_errors: Sequence[str] = (),
        mode: Optional[str] = None,
    ) -> ExecutionResult:
        safe_emit(
            self._broadcaster,
            "generation:attempt_failed",
            attempt=context.attempt_number,
            failure_kind=kind.value,
            error=error,
        )
        return ExecutionResult(
            success=False,
            message=f"Attempt {context.attempt_number} failed: {error}",
            duration_ms=int(self._elapsed(context) * 1000),
            error=error,
            failure_kind=kind,
            validation_errors=tuple(validation_errors),
            mode=mode,
        )
