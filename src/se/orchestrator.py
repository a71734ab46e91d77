"""Bounded execute/verify loop that turns one user request into an outcome."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from .attempt import AttemptContext, ExecutionAttempt, ExecutionResult
from .context_builder import ContextBuilder
from .models.llm_client import LLMClient
from .storage.store import FileStore, StorageError
from .structured import FileArtifact, snapshot_line_total
from .supervision import SupervisionGate, SupervisionVerdict
from .tools.diff_report import DEFAULT_BASELINE_SECONDS, DEFAULT_PREVIEW_LINES
from .tools.progress import ProgressBroadcaster, safe_emit
from .utils.slug import timestamped_name

LOGGER = logging.getLogger(__name__)

__all__ = [
    "IterationRecord",
    "IterationSettings",
    "IterationState",
    "MAX_ITERATIONS",
    "Orchestrator",
    "ProjectContext",
    "ProjectKnowledge",
    "RequestOutcome",
    "StopReason",
]

MAX_ITERATIONS = 3

USER_SAFE_FAILURE_MESSAGE = (
    "I couldn't load this project's files, so no changes were made. Please try again in a moment."
)
USER_SAFE_INTERNAL_ERROR = "Something went wrong while processing your request. No further changes were made."


class IterationState(str, Enum):
    """States of the request loop."""

    ANALYZING = "analyzing"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    APPROVED = "approved"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class StopReason(str, Enum):
    APPROVED = "approved"
    MAX_ITERATIONS = "max_iterations"
    LOW_CONFIDENCE = "low_confidence"
    REPEATED_ERROR = "repeated_error"
    ANALYSIS_FAILED = "analysis_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True, slots=True)
class ProjectContext:
    """Caller-supplied description of the project a request targets."""

    project_id: str
    history: tuple[Mapping[str, str], ...] = ()
    framework: str = ""


@dataclass(frozen=True, slots=True)
class ProjectKnowledge:
    """Facts gathered once before the first attempt."""

    file_count: int
    total_lines: int


@dataclass(frozen=True, slots=True)
class IterationRecord:
    """Diagnostics for one attempt: what happened and which state followed."""

    attempt_number: int
    execution_result: ExecutionResult
    supervision_verdict: SupervisionVerdict
    transition: IterationState

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "transition": self.transition.value,
            "execution_result": self.execution_result.to_dict(),
            "supervision_verdict": self.supervision_verdict.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """Result handed back to the caller of ``process_request``."""

    success: bool
    message: str
    files_modified: tuple[FileArtifact, ...] = ()
    iteration_history: tuple[IterationRecord, ...] = ()
    approved: bool = False
    state: IterationState = IterationState.FAILED
    summary: str = ""
    stop_reason: Optional[StopReason] = None
    artifact_path: Optional[Path] = None


@dataclass(slots=True)
class IterationSettings:
    """Runtime configuration for the request loop."""

    backoff_seconds: float = 0.0
    baseline_seconds: float = DEFAULT_BASELINE_SECONDS
    preview_lines: int = DEFAULT_PREVIEW_LINES
    write_artifacts: bool = True


_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _number(value: Any, kind: type = float) -> Any:
    if value is None or isinstance(value, bool):
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any) -> bool | None:
    if isinstance(value, str):
        word = value.strip().lower()
        return True if word in _TRUTHY else False if word in _FALSY else None
    if isinstance(value, (bool, int, float)):
        return bool(value)
    return None


def resolve_iteration_settings(config: Mapping[str, Any]) -> IterationSettings:
    """Loop settings from ``iteration``/``reporting`` config, then ``SE_*`` environment overrides."""
    iteration = config.get("iteration") if isinstance(config.get("iteration"), Mapping) else {}
    reporting = config.get("reporting") if isinstance(config.get("reporting"), Mapping) else {}
    settings = IterationSettings()

    backoff = _number(iteration.get("backoff_seconds"))
    env_backoff_ms = _number(os.getenv("SE_BACKOFF_MS"))
    if env_backoff_ms is not None:
        backoff = env_backoff_ms / 1000.0
    if backoff is not None:
        settings.backoff_seconds = max(backoff, 0.0)

    for baseline in (_number(reporting.get("baseline_seconds")), _number(os.getenv("SE_BASELINE_SECONDS"))):
        if baseline is not None and baseline > 0:
            settings.baseline_seconds = baseline

    preview = _number(reporting.get("preview_lines"), int)
    if preview is not None:
        settings.preview_lines = max(preview, 1)

    write_artifacts = _flag(reporting.get("write_iteration_artifacts"))
    if write_artifacts is not None:
        settings.write_artifacts = write_artifacts
    return settings


class Orchestrator:
    """Coordinator running attempts until one is approved or the budget is spent.

    ``verifier_client`` defaults to ``client``; pass a different client to
    have an independent model review each attempt.
    """

    def __init__(
        self,
        *,
        client: LLMClient,
        store: FileStore,
        config: Mapping[str, Any] | None = None,
        context_builder: ContextBuilder | None = None,
        verifier_client: LLMClient | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        project_root: Path | str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = dict(config or {})
        self._store = store
        self._broadcaster = broadcaster
        self._sleep = sleep
        self._clock = clock
        root = Path(project_root) if project_root else None
        self._context_builder = context_builder or ContextBuilder.from_config(self._config, project_root=root)
        self._settings = resolve_iteration_settings(self._config)
        self._attempt = ExecutionAttempt(
            client=client,
            context_builder=self._context_builder,
            store=store,
            broadcaster=broadcaster,
            baseline_seconds=self._settings.baseline_seconds,
            preview_lines=self._settings.preview_lines,
            clock=clock,
        )
        self._gate = SupervisionGate(
            client=verifier_client or client,
            context_builder=self._context_builder,
            broadcaster=broadcaster,
        )

    @property
    def settings(self) -> IterationSettings:
        return self._settings

    def process_request(self, user_request: str, project: ProjectContext) -> RequestOutcome:
        """Run the bounded loop for ``user_request``; never raises."""
        safe_emit(
            self._broadcaster,
            "generation:started",
            project_id=project.project_id,
            request=user_request,
        )
        try:
            with self._store.edit_session(project.project_id):
                outcome = self._run(user_request, project)
        except StorageError as error:
            LOGGER.error("Project knowledge load failed for %s: %s", project.project_id, error)
            outcome = RequestOutcome(
                success=False,
                message=USER_SAFE_FAILURE_MESSAGE,
                state=IterationState.FAILED,
                stop_reason=StopReason.ANALYSIS_FAILED,
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unexpected failure while processing request for %s", project.project_id)
            outcome = RequestOutcome(
                success=False,
                message=USER_SAFE_INTERNAL_ERROR,
                state=IterationState.FAILED,
                stop_reason=StopReason.INTERNAL_ERROR,
            )

        safe_emit(
            self._broadcaster,
            "generation:complete",
            project_id=project.project_id,
            success=outcome.success,
            approved=outcome.approved,
            state=outcome.state.value,
            attempts=len(outcome.iteration_history),
            files=[artifact.path for artifact in outcome.files_modified],
        )
        return outcome

    def _analyze(self, project: ProjectContext) -> ProjectKnowledge:
        safe_emit(self._broadcaster, "generation:analyzing", project_id=project.project_id)
        snapshot = self._store.read(project.project_id)
        knowledge = ProjectKnowledge(file_count=len(snapshot), total_lines=snapshot_line_total(snapshot))
        LOGGER.info(
            "Project %s: %d files, %d lines",
            project.project_id,
            knowledge.file_count,
            knowledge.total_lines,
        )
        return knowledge

    def _run(self, user_request: str, project: ProjectContext) -> RequestOutcome:
        self._analyze(project)

        feedback: list[str] = []
        records: list[IterationRecord] = []
        previous_error: Optional[str] = None
        attempt_number = 1
        while True:
            context = AttemptContext(
                project_id=project.project_id,
                user_request=user_request,
                attempt_number=attempt_number,
                started_at=self._clock(),
                feedback=tuple(feedback),
                history=tuple(project.history),
                framework=project.framework,
            )
            result = self._attempt.run(context)
            verdict = self._gate.verify(
                user_request,
                result,
                attempt_number,
                tuple(feedback),
                project_id=project.project_id,
            )
            transition, stop_reason = self._next_state(result, verdict, attempt_number, previous_error)
            records.append(
                IterationRecord(
                    attempt_number=attempt_number,
                    execution_result=result,
                    supervision_verdict=verdict,
                    transition=transition,
                )
            )
            safe_emit(
                self._broadcaster,
                "generation:iteration",
                attempt=attempt_number,
                transition=transition.value,
                approved=verdict.approved,
                confidence=verdict.confidence,
            )
            if transition is not IterationState.RETRYING:
                break

            note = verdict.feedback or "\n".join(verdict.issues)
            if note:
                feedback.append(note)
            previous_error = None if result.success else result.error
            attempt_number += 1
            if self._settings.backoff_seconds > 0:
                self._sleep(self._settings.backoff_seconds)

        outcome = self._build_outcome(records, stop_reason)
        artifact_path = self._write_iteration_artifact(project, user_request, outcome)
        if artifact_path is not None:
            outcome = replace(outcome, artifact_path=artifact_path)
        return outcome

    @staticmethod
    def _next_state(
        result: ExecutionResult,
        verdict: SupervisionVerdict,
        attempt_number: int,
        previous_error: Optional[str],
    ) -> tuple[IterationState, Optional[StopReason]]:
        if verdict.approved:
            return IterationState.APPROVED, StopReason.APPROVED
        if attempt_number >= MAX_ITERATIONS:
            return IterationState.EXHAUSTED, StopReason.MAX_ITERATIONS
        if not verdict.requires_iteration:
            return IterationState.EXHAUSTED, StopReason.LOW_CONFIDENCE
        if not result.success and previous_error is not None and result.error == previous_error:
            return IterationState.EXHAUSTED, StopReason.REPEATED_ERROR
        return IterationState.RETRYING, None

    @staticmethod
    def _build_outcome(records: Sequence[IterationRecord], stop_reason: Optional[StopReason]) -> RequestOutcome:
        last = records[-1]
        result = last.execution_result
        verdict = last.supervision_verdict
        approved = last.transition is IterationState.APPROVED
        message = result.message
        if not approved:
            attempts = len(records)
            caveat = (
                f"Note: this result was not approved by the reviewer after {attempts} "
                f"attempt{'s' if attempts != 1 else ''}."
            )
            if verdict.issues:
                caveat = f"{caveat} Outstanding: {verdict.issues[0]}"
            message = f"{message}\n\n{caveat}"
        return RequestOutcome(
            success=result.success,
            message=message,
            files_modified=result.files_modified,
            iteration_history=tuple(records),
            approved=approved,
            state=last.transition,
            summary=result.summary,
            stop_reason=stop_reason,
        )

    def _write_iteration_artifact(
        self,
        project: ProjectContext,
        user_request: str,
        outcome: RequestOutcome,
    ) -> Path | None:
        if not self._settings.write_artifacts:
            return None
        artifact_root = self._context_builder.logs_root / "iterations"
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "project_id": project.project_id,
            "request": user_request,
            "approved": outcome.approved,
            "success": outcome.success,
            "state": outcome.state.value,
            "stop_reason": outcome.stop_reason.value if outcome.stop_reason else None,
            "iterations": [record.to_dict() for record in outcome.iteration_history],
        }
        try:
            artifact_root.mkdir(parents=True, exist_ok=True)
            artifact_path = artifact_root / timestamped_name(project.project_id or "project", "iteration")
            artifact_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to write iteration artifact: %s", error)
            return None
        return artifact_path
