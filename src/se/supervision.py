"""Verifier gate that approves an attempt or explains what to fix."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

from .attempt import ExecutionResult, FailureKind
from .context_builder import ContextBuilder
from .models.llm_client import LLMClient, LLMClientError
from .phases import verify
from .tools.progress import ProgressBroadcaster, safe_emit

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CONFIDENCE_FLOOR",
    "DEFAULT_CONFIDENCE",
    "FAILED_ATTEMPT_CONFIDENCE",
    "SupervisionGate",
    "SupervisionVerdict",
    "build_feedback",
    "clamp_confidence",
]

# Below this, a rejection is not trusted enough to drive another attempt.
CONFIDENCE_FLOOR = 0.3
DEFAULT_CONFIDENCE = 0.5
FAILED_ATTEMPT_CONFIDENCE = 0.95

_FAILURE_SUGGESTIONS = {
    FailureKind.VALIDATION: (
        "Recompute line numbers against the numbered file listing before emitting edits.",
        "Make sure edits on the same file do not overlap and only create files that do not exist yet.",
    ),
    FailureKind.GENERATION: (
        "Return complete file content without placeholders such as '// ... rest of code'.",
    ),
    FailureKind.MODEL_CALL: (
        "Return a single JSON object with either an 'edits' or a 'files' list.",
    ),
    FailureKind.STORAGE: (),
}


@dataclass(frozen=True, slots=True)
class SupervisionVerdict:
    """Verifier judgement for one attempt."""

    approved: bool
    confidence: float
    issues: tuple[str, ...] = ()
    feedback: Optional[str] = None
    requires_iteration: bool = False
    suggestions: tuple[str, ...] = ()
    reasoning: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "approved": self.approved,
            "confidence": self.confidence,
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "feedback": self.feedback,
            "requires_iteration": self.requires_iteration,
            "reasoning": self.reasoning,
        }


def clamp_confidence(value: float | None) -> float:
    if value is None or math.isnan(value):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def build_feedback(issues: Sequence[str], suggestions: Sequence[str]) -> Optional[str]:
    """Render issues and suggestions as numbered lists; ``None`` when both are empty."""
    blocks: list[str] = []
    if issues:
        numbered = "\n".join(f"{index}. {issue}" for index, issue in enumerate(issues, start=1))
        blocks.append(f"**Issues Found:**\n{numbered}")
    if suggestions:
        numbered = "\n".join(f"{index}. {item}" for index, item in enumerate(suggestions, start=1))
        blocks.append(f"**Suggestions:**\n{numbered}")
    return "\n\n".join(blocks) or None


class SupervisionGate:
    """Decide whether an attempt is approved, worth retrying, or should stop."""

    def __init__(
        self,
        *,
        client: LLMClient,
        context_builder: ContextBuilder,
        broadcaster: ProgressBroadcaster | None = None,
    ) -> None:
        self._client = client
        self._context_builder = context_builder
        self._broadcaster = broadcaster

    def verify(
        self,
        user_request: str,
        attempt_result: ExecutionResult,
        attempt_number: int,
        prior_feedback: Sequence[str] = (),
        *,
        project_id: str = "",
    ) -> SupervisionVerdict:
        safe_emit(
            self._broadcaster,
            "generation:verifying",
            status="verifying",
            attempt=attempt_number,
        )
        if not attempt_result.success:
            verdict = self._reject_failed(attempt_result)
        else:
            verdict = self._verify_with_model(
                user_request, attempt_result, attempt_number, prior_feedback, project_id
            )
        LOGGER.info(
            "Attempt %d verdict: approved=%s confidence=%.2f requires_iteration=%s",
            attempt_number,
            verdict.approved,
            verdict.confidence,
            verdict.requires_iteration,
        )
        return verdict

    def _reject_failed(self, result: ExecutionResult) -> SupervisionVerdict:
        issues = list(result.validation_errors) or [result.error or "Execution failed."]
        suggestions = list(_FAILURE_SUGGESTIONS.get(result.failure_kind, ())) if result.failure_kind else []
        return SupervisionVerdict(
            approved=False,
            confidence=FAILED_ATTEMPT_CONFIDENCE,
            issues=tuple(issues),
            suggestions=tuple(suggestions),
            feedback=build_feedback(issues, suggestions),
            requires_iteration=True,
            reasoning=f"Execution failed: {result.error or 'unknown error'}",
        )

    def _verify_with_model(
        self,
        user_request: str,
        result: ExecutionResult,
        attempt_number: int,
        prior_feedback: Sequence[str],
        project_id: str,
    ) -> SupervisionVerdict:
        request = verify.VerifyRequest(
            project_id=project_id,
            user_request=user_request,
            attempt_number=attempt_number,
            success=result.success,
            message=result.message,
            files_modified=result.modified_paths,
            change_summary=result.summary,
            error=result.error or "",
            prior_feedback=list(prior_feedback),
        )
        try:
            response = verify.run(
                request,
                client=self._client,
                context_builder=self._context_builder,
            )
        except LLMClientError as error:
            LOGGER.warning("Verification call failed: %s", error)
            return SupervisionVerdict(
                approved=False,
                confidence=0.0,
                issues=(f"Verification failed: {error}",),
                requires_iteration=True,
                reasoning="The verifier could not produce a verdict.",
            )

        confidence = clamp_confidence(response.confidence)
        issues = tuple(item.strip() for item in response.issues if item.strip())
        suggestions = tuple(item.strip() for item in response.suggestions if item.strip())
        if response.approved:
            requires_iteration = False
        else:
            requires_iteration = confidence >= CONFIDENCE_FLOOR
        return SupervisionVerdict(
            approved=response.approved,
            confidence=confidence,
            issues=issues,
            suggestions=suggestions,
            feedback=build_feedback(issues, suggestions),
            requires_iteration=requires_iteration,
            reasoning=response.reasoning or "Verification completed.",
        )
